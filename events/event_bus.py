import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Set, Tuple

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]


class EventDispatchError(Exception):
    """One or more subscribers failed while an event was awaited"""

    def __init__(self, event_name: str, errors: List[Tuple[Handler, BaseException]]):
        self.event_name = event_name
        self.errors = errors
        names = ", ".join(_handler_name(handler) for handler, _ in errors)
        super().__init__(f"{len(errors)} handler(s) failed for '{event_name}': {names}")


def _handler_name(handler: Handler) -> str:
    return getattr(handler, "__qualname__", repr(handler))


class EventBus:
    """
    In-process publish/subscribe channel keyed by event name.

    Handlers run in subscription order. A failing handler is logged and never
    stops the others. Handlers may be coroutine functions: ``emit`` schedules
    them on the running loop without waiting, ``emit_and_wait`` awaits them.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = {}
        self._background: Set[asyncio.Future] = set()

    def on(self, event_name: str, handler: Handler) -> None:
        self._handlers.setdefault(event_name, []).append(handler)
        logger.debug(f"Subscribed {_handler_name(handler)} to '{event_name}'")

    def off(self, event_name: str, handler: Handler) -> None:
        handlers = self._handlers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    def listeners(self, event_name: str) -> List[Handler]:
        return list(self._handlers.get(event_name, []))

    def emit(self, event_name: str, payload: Any = None) -> int:
        """
        Fire an event to every subscriber without waiting for async ones

        Returns:
            int: number of subscribers notified
        """
        handlers = self.listeners(event_name)
        if not handlers:
            logger.debug(f"No subscribers for '{event_name}'")

        for handler in handlers:
            try:
                result = handler(payload)
            except Exception:
                logger.exception(f"❌ Handler {_handler_name(handler)} failed for '{event_name}'")
                continue

            if inspect.isawaitable(result):
                self._schedule(event_name, handler, result)

        return len(handlers)

    async def emit_and_wait(self, event_name: str, payload: Any = None) -> int:
        """
        Fire an event and wait until every subscriber has finished

        Raises:
            EventDispatchError: after all subscribers ran, if any of them failed
        """
        handlers = self.listeners(event_name)
        errors: List[Tuple[Handler, BaseException]] = []

        for handler in handlers:
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception(f"❌ Handler {_handler_name(handler)} failed for '{event_name}'")
                errors.append((handler, e))

        if errors:
            raise EventDispatchError(event_name, errors)

        return len(handlers)

    def _schedule(self, event_name: str, handler: Handler, awaitable) -> None:
        future = asyncio.ensure_future(awaitable)
        self._background.add(future)

        def _done(fut: asyncio.Future):
            self._background.discard(fut)
            if fut.cancelled():
                return
            error = fut.exception()
            if error is not None:
                logger.error(
                    f"❌ Async handler {_handler_name(handler)} failed for '{event_name}': {error}",
                    exc_info=error,
                )

        future.add_done_callback(_done)
