"""Observer registries for sync engine signals.

This module provides:
- Signal: Registry for payload-less notifications (index changed, ...)
- EventEmitter: Registry for notifications carrying a value

Delivery is synchronous and in registration order. A callback that raises
is logged and skipped; the remaining subscribers still receive the event.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Unsubscribe = Callable[[], None]


class EventEmitter(Generic[T]):
    """Registry of callbacks receiving a value of type T."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._subscribers: list[Callable[[T], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[T], None]) -> Unsubscribe:
        """Register a callback.

        Returns:
            Function removing the callback again (safe to call twice).
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, value: T) -> None:
        """Deliver value to every subscriber."""
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(value)
            except Exception:
                logger.exception(f"Subscriber of {self.name} failed")

    def __len__(self) -> int:
        return len(self._subscribers)


class Signal:
    """Registry of callbacks taking no arguments."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._emitter: EventEmitter[None] = EventEmitter(name)

    def subscribe(self, callback: Callable[[], None]) -> Unsubscribe:
        """Register a callback and return its unsubscribe function."""
        return self._emitter.subscribe(lambda _value: callback())

    def emit(self) -> None:
        """Notify every subscriber."""
        self._emitter.emit(None)

    def __len__(self) -> int:
        return len(self._emitter)
