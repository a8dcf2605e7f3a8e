from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from events.event_types import Amount


@dataclass(frozen=True)
class Email:
    id: str
    subject: str
    sender: str
    body: str
    to: str = ""
    date: Optional[str] = None


@dataclass
class Entry:
    """A single posting of a transaction"""
    account: str
    amount: Amount
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Transaction:
    date: datetime
    description: str
    entries: List[Entry]
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ParsedTransaction:
    """Fields pulled out of a bank alert before a category is known"""
    merchant: str
    amount: Amount
    date: datetime
    card_info: str = ""
