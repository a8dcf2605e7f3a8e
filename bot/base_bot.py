import os
import asyncio
import logging
from typing import Optional

from telegram.ext import Application, ContextTypes

from bootstrap import Services, build_services
from .notifier import TelegramNotifier

logger = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL = 1800


class BaseTelegramBot:
    def __init__(self, services: Optional[Services] = None):
        """Initialize Telegram bot and the services it drives"""
        self.token = os.getenv("TELEGRAM_BOT_TOKEN")
        if not self.token:
            raise ValueError("TELEGRAM_BOT_TOKEN must be set")

        self.check_interval = int(os.getenv("CHECK_INTERVAL_SECONDS", DEFAULT_CHECK_INTERVAL))
        self.application = Application.builder().token(self.token).post_init(self._post_init).build()
        self.services = services or build_services(notifier=TelegramNotifier(self.application.bot))

        # Setup handlers
        self.setup_handlers()

    def setup_handlers(self):
        """Setup all command and message handlers - to be overridden by subclasses"""
        pass

    async def _post_init(self, application: Application):
        # The whole pipeline lives on this loop from now on
        self.services.loop = asyncio.get_running_loop()

        if application.job_queue is None:
            logger.warning("⚠️ Job queue unavailable, periodic bill checks disabled")
            return

        application.job_queue.run_repeating(
            self._scheduled_check,
            interval=self.check_interval,
            first=10,
            name="scheduled_bill_check",
        )
        logger.info(f"⏰ Bill check scheduled every {self.check_interval}s")

    async def _scheduled_check(self, context: ContextTypes.DEFAULT_TYPE):
        try:
            await self.services.ingestion.scheduled_check()
        except Exception:
            logger.exception("❌ Error in scheduled check")

    def run_sync(self):
        """Run the bot synchronously (for use in threads)"""
        # A thread has no event loop of its own
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

        logger.info("=" * 50)
        logger.info("🤖 Telegram Bot Started")
        logger.info("=" * 50)

        # Signal handlers only work in the main thread
        self.application.run_polling(
            allowed_updates=None,
            stop_signals=None,
        )
