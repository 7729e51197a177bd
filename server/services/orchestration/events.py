"""In-process lifecycle event bus.

The orchestrator emits events without knowing who listens. Handlers may be
plain functions or coroutines; coroutine handlers are scheduled as tasks so
emit never waits on a subscriber. A failing handler is logged and does not
affect other handlers or the emitter.
"""

import asyncio
import inspect
from typing import Any, Callable, Dict, List, Set

from core.logging import get_logger

logger = get_logger(__name__)

EventHandler = Callable[[str, Dict[str, Any]], Any]

WILDCARD = "*"


class EventBus:
    """Minimal publish/subscribe for orchestration lifecycle events."""

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, event: str, handler: EventHandler) -> Callable[[], None]:
        """Register a handler for an event name, or "*" for all events.

        Returns:
            Function that removes the subscription
        """
        self._handlers.setdefault(event, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def emit(self, event: str, payload: Dict[str, Any]) -> int:
        """Dispatch an event to its handlers and wildcard handlers.

        Returns:
            Number of handlers invoked
        """
        handlers = list(self._handlers.get(event, [])) + list(self._handlers.get(WILDCARD, []))
        for handler in handlers:
            try:
                result = handler(event, payload)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._on_handler_done)
            except Exception as e:
                logger.warning("Event handler failed", event_name=event, error=str(e))
        return len(handlers)

    def _on_handler_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Async event handler failed", error=str(task.exception()))

    async def drain(self) -> None:
        """Wait for scheduled async handlers to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))
