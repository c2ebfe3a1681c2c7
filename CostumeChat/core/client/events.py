"""
Small publish/subscribe table keyed by event name.

Used for the observer notifications of the connection manager and for
change notifications from the stores and trackers.
"""

from typing import Any, Callable, Dict, List, Tuple

from CostumeChat.core.logging import get_logger

logger = get_logger(__name__)

Handler = Callable[..., Any]


class EventBus:
    """Ordered handler lists per event name."""

    def __init__(self):
        self._handlers: Dict[str, List[Tuple[int, Handler]]] = {}

    def on(self, event: str, handler: Handler, priority: int = 100) -> None:
        """
        Register a handler for an event.

        Args:
            event: Event name
            handler: Callable invoked with the emitted arguments
            priority: Lower numbers run first
        """
        handlers = self._handlers.setdefault(event, [])
        handlers.append((priority, handler))
        handlers.sort(key=lambda x: x[0])

    def off(self, event: str, handler: Handler) -> bool:
        """Unregister a handler. Returns True if it was registered."""
        handlers = self._handlers.get(event)
        if not handlers:
            return False
        for i, (_, h) in enumerate(handlers):
            if h == handler:
                handlers.pop(i)
                return True
        return False

    def has_handlers(self, event: str) -> bool:
        return bool(self._handlers.get(event))

    def emit(self, event: str, *args: Any, **kwargs: Any) -> int:
        """
        Call every handler registered for ``event``.

        A handler that raises is logged and skipped; the remaining handlers
        still run. Returns the number of handlers that completed.
        """
        completed = 0
        for _, handler in list(self._handlers.get(event, ())):
            try:
                handler(*args, **kwargs)
                completed += 1
            except Exception:
                logger.exception("Handler %r for event '%s' failed", handler, event)
        return completed

    def clear(self) -> None:
        self._handlers.clear()
