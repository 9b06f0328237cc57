"""
Synchronous event bus for sync service notifications.

Handlers run in subscription order inside ``emit``, so an event is fully
delivered before the emitting code continues (e.g. ``stateChange`` with
``dirty=True`` is observed before the push it announces starts).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from .protocol import SyncEventName

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], None]


class EventBus:
    """Observer registry keyed by event name.

    Example:
        >>> bus = EventBus()
        >>> bus.on(SyncEventName.SAVE, lambda payload: print("saved"))
        >>> bus.emit(SyncEventName.SAVE, None)
        saved
    """

    def __init__(self) -> None:
        self._handlers: dict[SyncEventName, list[EventHandler]] = {}

    def on(self, event: SyncEventName | str, handler: EventHandler) -> EventBus:
        """Subscribe a handler to an event."""
        self._handlers.setdefault(SyncEventName(event), []).append(handler)
        return self

    def off(self, event: SyncEventName | str, handler: EventHandler | None = None) -> EventBus:
        """Unsubscribe a handler, or every handler of the event if none is given."""
        name = SyncEventName(event)
        if handler is None:
            self._handlers.pop(name, None)
            return self

        handlers = self._handlers.get(name, [])
        if handler in handlers:
            handlers.remove(handler)
        return self

    def emit(self, event: SyncEventName | str, payload: Any = None) -> None:
        """Deliver a payload to every current subscriber of the event.

        Handlers subscribed while delivering are not invoked for this emit.
        A failing handler is logged and does not stop delivery.
        """
        name = SyncEventName(event)
        for handler in list(self._handlers.get(name, [])):
            try:
                handler(payload)
            except Exception:
                logger.exception(f"Event handler for '{name.value}' failed")

    def handler_count(self, event: SyncEventName | str) -> int:
        return len(self._handlers.get(SyncEventName(event), []))

    def clear(self) -> None:
        """Remove all handlers."""
        self._handlers.clear()
