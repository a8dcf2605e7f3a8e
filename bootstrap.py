"""
Explicit wiring of the BeanTalk services

Everything that runs on the bot's event loop is built here once and handed
to the Telegram handlers and the Flask routes.
"""

import asyncio
import logging
import os
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Optional

from events import CategorizationCoordinator, EventBus, SequentialTaskQueue
from events.prompts import Notifier
from transaction import BeancountLedger, CategoryStore, EmailInbox, EmailParserFactory, IngestionService
from transaction.category_suggester import CategorySuggester

logger = logging.getLogger(__name__)


@dataclass
class Services:
    event_bus: EventBus
    queue: SequentialTaskQueue
    store: CategoryStore
    inbox: EmailInbox
    ledger: BeancountLedger
    ingestion: IngestionService
    coordinator: CategorizationCoordinator
    loop: Optional[asyncio.AbstractEventLoop] = None

    def submit(self, coro: Coroutine[Any, Any, Any]) -> Future:
        """Run a coroutine on the bot's event loop from another thread"""
        if self.loop is None or self.loop.is_closed():
            coro.close()
            raise RuntimeError("Event loop is not running yet")
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def call(self, fn: Callable[..., Any], *args, timeout: float = 10) -> Any:
        """Call a plain function on the event loop and wait for its result"""
        if self.loop is None or not self.loop.is_running():
            # Nothing else touches the pipeline before the bot starts
            return fn(*args)

        async def _run():
            return fn(*args)

        return self.submit(_run()).result(timeout=timeout)


def build_services(
    notifier: Optional[Notifier] = None,
    suggester: Optional[CategorySuggester] = None,
    chat_id: Optional[str] = None,
    store: Optional[CategoryStore] = None,
    ledger: Optional[BeancountLedger] = None,
) -> Services:
    """
    Construct the categorization pipeline

    Missing collaborators are built from the environment.
    """
    chat_id = chat_id or os.getenv("TELEGRAM_CHAT_ID")
    if not chat_id:
        logger.warning("⚠️ TELEGRAM_CHAT_ID is not set, categorization prompts cannot be sent")

    event_bus = EventBus()
    queue = SequentialTaskQueue(event_bus)
    store = store or CategoryStore()
    inbox = EmailInbox()
    ledger = ledger or BeancountLedger()

    ingestion = IngestionService(
        inbox=inbox,
        parser_factory=EmailParserFactory(),
        store=store,
        ledger=ledger,
        event_bus=event_bus,
        notifier=notifier,
        chat_id=chat_id,
    )
    coordinator = CategorizationCoordinator(
        event_bus=event_bus,
        queue=queue,
        store=store,
        notifier=notifier,
        suggester=suggester or CategorySuggester(),
        chat_id=chat_id,
        bill_recorder=ingestion.record_manual_bill,
    )

    # An empty queue means every merchant was answered or skipped, look again
    queue.on_drain = ingestion.request_scan

    return Services(
        event_bus=event_bus,
        queue=queue,
        store=store,
        inbox=inbox,
        ledger=ledger,
        ingestion=ingestion,
        coordinator=coordinator,
    )
