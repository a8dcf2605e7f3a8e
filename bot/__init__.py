from .telegram_bot import TelegramBot

__all__ = ['TelegramBot']
