"""
Transaction module for BeanTalk
Handles bank alert emails, merchant categories and the beancount ledger
"""

from .category_store import CategoryStore
from .email_parser import EmailParserFactory, DBSEmailParser
from .inbox import EmailInbox
from .ledger import BeancountLedger
from .transaction_processor import IngestionService

__all__ = [
    'CategoryStore',
    'EmailParserFactory',
    'DBSEmailParser',
    'EmailInbox',
    'BeancountLedger',
    'IngestionService',
]
