"""Snapshot cells and a fault bus for read-only observers."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Generic, List, TypeVar

from models import Fault

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SnapshotCell(Generic[T]):
    """Holds one immutable value and notifies subscribers when it changes.

    Observers only ever see whole values; ``get`` never returns a value that
    is halfway through an update.
    """

    def __init__(self, initial: T) -> None:
        self._value = initial
        self._lock = threading.Lock()
        self._subscribers: List[Callable[[T], None]] = []

    def get(self) -> T:
        with self._lock:
            return self._value

    def set(self, value: T) -> bool:
        with self._lock:
            if value == self._value:
                return False
            self._value = value
            subscribers = list(self._subscribers)
        for callback in subscribers:
            _notify(callback, value)
        return True

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe


class FaultBus:
    """Fan-out of Fault events; keeps a bounded history for late readers."""

    def __init__(self, history: int = 50) -> None:
        self._lock = threading.Lock()
        self._subscribers: List[Callable[[Fault], None]] = []
        self._history: List[Fault] = []
        self._max_history = history

    def publish(self, fault: Fault) -> None:
        with self._lock:
            self._history.append(fault)
            del self._history[: -self._max_history]
            subscribers = list(self._subscribers)
        for callback in subscribers:
            _notify(callback, fault)

    def subscribe(self, callback: Callable[[Fault], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def history(self) -> List[Fault]:
        with self._lock:
            return list(self._history)


def _notify(callback: Callable, value: object) -> None:
    try:
        callback(value)
    except Exception:
        logger.exception("observer callback failed")
