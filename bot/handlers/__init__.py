"""
Telegram bot command handlers
Each handler module manages a specific command or set of related commands
"""

from .categorization import setup_categorization_handlers

__all__ = ['setup_categorization_handlers']
