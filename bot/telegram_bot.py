from .base_bot import BaseTelegramBot
from .handlers import setup_categorization_handlers


class TelegramBot(BaseTelegramBot):
    """
    Main Telegram bot class that integrates all command handlers
    """

    def setup_handlers(self):
        """Setup all command and message handlers"""
        # Categorization prompts, /add bills and the related commands
        setup_categorization_handlers(self.application, self.services)
