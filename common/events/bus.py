"""
In-process event bus for a single asyncio event loop.

Handlers are plain callables or coroutine functions. Plain handlers run
inline during ``emit``; coroutine handlers are scheduled as tasks on the
running loop and can be awaited with ``drain()``. A failing handler is
logged and never affects other handlers or the emitter.

Example:
    bus = EventBus()
    unsubscribe = bus.on("session_expired", lambda reason: print(reason))
    bus.emit("session_expired", "refresh_failed")
    unsubscribe()
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Set

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]
Unsubscribe = Callable[[], None]


class EventBus:
    """Named-event pub/sub with isolated handler failures."""

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = {}
        self._pending: Set[asyncio.Task] = set()

    def on(self, event: str, handler: Handler) -> Unsubscribe:
        """
        Register a handler for an event.

        Args:
            event: Event name
            handler: Callable or coroutine function receiving the emit args

        Returns:
            A function that removes exactly this registration
        """
        if not callable(handler):
            raise ValueError("handler must be callable")

        self._handlers.setdefault(event, []).append(handler)

        def unsubscribe() -> None:
            self.off(event, handler)

        return unsubscribe

    def off(self, event: str, handler: Handler) -> None:
        """Remove a handler. Unknown handlers are ignored."""
        handlers = self._handlers.get(event)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            del self._handlers[event]

    def emit(self, event: str, *args: Any) -> int:
        """
        Deliver an event to every current handler.

        Returns:
            Number of handlers the event was delivered to
        """
        # Copy so handlers may unsubscribe while being called
        handlers = list(self._handlers.get(event, ()))
        for handler in handlers:
            try:
                result = handler(*args)
            except Exception:
                logger.exception(f"Event handler for '{event}' failed")
                continue

            if inspect.isawaitable(result):
                self._schedule(event, result)

        return len(handlers)

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))

    async def drain(self) -> None:
        """Wait for every coroutine handler scheduled so far to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def clear(self) -> None:
        """Drop all handlers and cancel pending coroutine handlers."""
        self._handlers.clear()
        for task in list(self._pending):
            task.cancel()
        self._pending.clear()

    def _schedule(self, event: str, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No running loop to execute the coroutine on
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            logger.warning(f"Dropped async handler for '{event}': no running event loop")
            return

        task = asyncio.ensure_future(awaitable, loop=loop)
        self._pending.add(task)
        task.add_done_callback(lambda t: self._on_task_done(event, t))

    def _on_task_done(self, event: str, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Async event handler for '{event}' failed: {error!r}")
