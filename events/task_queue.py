import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Set

from .event_bus import EventBus
from .event_types import queue_event_name

logger = logging.getLogger(__name__)


@dataclass
class QueueItem:
    event_name: str
    payload: Any
    task_id: str
    timestamp: float = field(default_factory=time.time)


class SequentialTaskQueue:
    """
    Ordered single-consumer work queue on top of the event bus.

    At most one item is in flight. When an item reaches the head it is
    re-emitted on the queue variant of its event name and stays in flight
    until ``complete_task`` is called for its task id. A failing handler does
    not advance the queue.

    Not thread-safe: every call must happen on the loop that owns the queue.
    """

    def __init__(self, event_bus: EventBus, on_drain: Optional[Callable[[], Any]] = None):
        self.event_bus = event_bus
        self.on_drain = on_drain
        self._items: List[QueueItem] = []
        self._in_flight: Optional[QueueItem] = None
        self._background: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._items)

    @property
    def is_processing(self) -> bool:
        return self._in_flight is not None

    @property
    def in_flight(self) -> Optional[QueueItem]:
        return self._in_flight

    def pending(self) -> List[QueueItem]:
        """Items waiting behind the in-flight one, in processing order"""
        return [item for item in self._items if item is not self._in_flight]

    def contains(self, task_id: str) -> bool:
        return any(item.task_id == task_id for item in self._items)

    def enqueue(self, event_name: str, payload: Any, task_id: str) -> bool:
        """
        Append a task unless one with the same id is already queued or in flight

        Returns:
            bool: True if the task was added
        """
        if self.contains(task_id):
            logger.debug(f"Task {task_id} already queued, ignoring duplicate")
            return False

        self._items.append(QueueItem(event_name=event_name, payload=payload, task_id=task_id))
        logger.debug(f"Enqueued event: {event_name} ({task_id}), queue length: {len(self._items)}")

        if not self.is_processing:
            self._process_head()
        return True

    def complete_task(self, task_id: str) -> bool:
        """
        Remove the task with the given id and move on to the next one

        Unknown ids are ignored. Completing a task that is not in flight only
        removes it. Emptying the queue fires the drain hook.

        Returns:
            bool: True if a task was removed
        """
        index = next((i for i, item in enumerate(self._items) if item.task_id == task_id), None)
        if index is None:
            logger.debug(f"Task {task_id} not in queue, nothing to complete")
            return False

        item = self._items.pop(index)
        logger.debug(f"Task completed with ID: {task_id}, remaining: {len(self._items)}")

        if item is not self._in_flight:
            return True

        self._in_flight = None
        if self._items:
            self._process_head()
        else:
            logger.info("📭 Categorization queue drained")
            self._fire_drain()
        return True

    def clear_tasks_by_merchant(self, merchant: str) -> int:
        """
        Drop queued tasks for a merchant that have not started yet

        The in-flight task is never removed here.

        Returns:
            int: number of tasks removed
        """
        kept = []
        removed = 0
        for item in self._items:
            if item is not self._in_flight and getattr(item.payload, "merchant", None) == merchant:
                removed += 1
                continue
            kept.append(item)

        if removed:
            self._items = kept
            logger.debug(f"Cleared {removed} queued task(s) for merchant: {merchant}")
        return removed

    def _process_head(self) -> None:
        if self._in_flight is not None or not self._items:
            return

        # Raises outside a running loop, before anything is marked in flight
        loop = asyncio.get_running_loop()

        item = self._items[0]
        self._in_flight = item
        task = loop.create_task(self._dispatch(item))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _dispatch(self, item: QueueItem) -> None:
        # Completed or cleared before the loop got to it
        if self._in_flight is not item:
            return

        event_name = queue_event_name(item.event_name)
        logger.debug(f"Processing event: {event_name} ({item.task_id}), queue length: {len(self._items)}")

        try:
            await self.event_bus.emit_and_wait(event_name, item.payload)
            logger.debug(f"Successfully processed event: {event_name} ({item.task_id})")
        except Exception as e:
            logger.error(f"❌ Error processing event {event_name} ({item.task_id}): {e}")

    def _fire_drain(self) -> None:
        if self.on_drain is None:
            return

        try:
            result = self.on_drain()
        except Exception:
            logger.exception("❌ Queue drain hook failed")
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._background.add(task)

            def _done(fut):
                self._background.discard(fut)
                if not fut.cancelled() and fut.exception() is not None:
                    logger.error("❌ Queue drain hook failed", exc_info=fut.exception())

            task.add_done_callback(_done)
