import asyncio
import logging
import os
from datetime import timedelta
from typing import Optional, Sequence

from telegram import InlineKeyboardButton, InlineKeyboardMarkup
from telegram.constants import ParseMode
from telegram.error import BadRequest, NetworkError, RetryAfter

from events.prompts import Notifier, PromptOption

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """A Telegram message was rejected or could not be delivered after all retries"""


def build_keyboard(options: Sequence[PromptOption]) -> Optional[InlineKeyboardMarkup]:
    if not options:
        return None
    keyboard = [[InlineKeyboardButton(option.label, callback_data=option.data)] for option in options]
    return InlineKeyboardMarkup(keyboard)


class TelegramNotifier(Notifier):
    """Sends HTML messages and inline keyboards through the bot, retrying transient failures"""

    def __init__(self, bot, retries: Optional[int] = None, backoff: Optional[float] = None):
        self.bot = bot
        self.retries = retries if retries is not None else int(os.getenv("TELEGRAM_SEND_RETRIES", 3))
        self.backoff = backoff if backoff is not None else float(os.getenv("TELEGRAM_SEND_BACKOFF", 2))

    async def send_message(self, chat_id: str, text: str) -> None:
        await self._send(chat_id, text, None)

    async def send_prompt(self, chat_id: str, text: str, options: Sequence[PromptOption] = ()) -> None:
        await self._send(chat_id, text, build_keyboard(options))

    async def _send(self, chat_id: str, text: str, reply_markup: Optional[InlineKeyboardMarkup]) -> None:
        attempts = max(1, self.retries)
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            try:
                await self.bot.send_message(
                    chat_id=chat_id,
                    text=text,
                    parse_mode=ParseMode.HTML,
                    reply_markup=reply_markup,
                )
                return
            except BadRequest as e:
                # NetworkError subclass; must stay above it so it is never retried
                logger.error(f"❌ Telegram rejected message to chat {chat_id}: {e}")
                raise NotificationError(f"Telegram rejected message to chat {chat_id}: {e}") from e
            except RetryAfter as e:
                last_error = e
                delay = e.retry_after
                if isinstance(delay, timedelta):
                    delay = delay.total_seconds()
                logger.warning(f"⚠️ Telegram flood control, retrying in {delay}s ({attempt}/{attempts})")
            except NetworkError as e:
                last_error = e
                delay = self.backoff
                logger.warning(f"⚠️ Telegram send failed: {e} ({attempt}/{attempts})")

            if attempt < attempts:
                await asyncio.sleep(delay)

        logger.error(f"❌ Giving up sending message to chat {chat_id}: {last_error}")
        raise NotificationError(f"Failed to send message to chat {chat_id}: {last_error}") from last_error
