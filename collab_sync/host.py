"""
Capabilities supplied by the hosting editor.

The sync core never talks to a UI toolkit directly. Whether the editor
is in the foreground and how transient notices reach the user are
injected through these small interfaces.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable

logger = logging.getLogger(__name__)

VisibilityListener = Callable[[bool], None]


class VisibilityProvider(ABC):
    """Reports whether the editor is currently hidden (backgrounded)."""

    @abstractmethod
    def is_hidden(self) -> bool:
        """Return True while the editor is not visible to the user."""
        pass

    @abstractmethod
    def add_listener(self, listener: VisibilityListener) -> None:
        """Register a callback invoked with the new hidden flag on change."""
        pass

    @abstractmethod
    def remove_listener(self, listener: VisibilityListener) -> None:
        """Unregister a previously added callback."""
        pass


class AlwaysVisible(VisibilityProvider):
    """Provider for hosts without a notion of visibility."""

    def is_hidden(self) -> bool:
        return False

    def add_listener(self, listener: VisibilityListener) -> None:
        pass

    def remove_listener(self, listener: VisibilityListener) -> None:
        pass


class VisibilitySignal(VisibilityProvider):
    """In-process visibility provider driven by the host via ``set_hidden``."""

    def __init__(self, hidden: bool = False) -> None:
        self._hidden = hidden
        self._listeners: list[VisibilityListener] = []

    def is_hidden(self) -> bool:
        return self._hidden

    def add_listener(self, listener: VisibilityListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: VisibilityListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def set_hidden(self, hidden: bool) -> None:
        """Update the visibility state, notifying listeners on an actual change."""
        if hidden == self._hidden:
            return
        self._hidden = hidden
        for listener in list(self._listeners):
            listener(hidden)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)


class Notifier(ABC):
    """Shows short-lived notices to the user."""

    @abstractmethod
    def show_temporary(self, message: str) -> None:
        pass


class LoggingNotifier(Notifier):
    """Default notifier that only records notices in the log."""

    def show_temporary(self, message: str) -> None:
        logger.info(f"Notice: {message}")
