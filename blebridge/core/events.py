"""Listener registry used by the links and the coordinator."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Generic, TypeVar

T = TypeVar("T")
LOGGER = logging.getLogger(__name__)

Unsubscribe = Callable[[], None]


class Listeners(Generic[T]):
    """Ordered set of callbacks fed with one value per emission.

    A failing callback is logged and does not prevent the others from running.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._callbacks: list[Callable[[T], None]] = []

    def __len__(self) -> int:
        return len(self._callbacks)

    def add(self, callback: Callable[[T], None]) -> Unsubscribe:
        self._callbacks.append(callback)

        def _remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _remove

    def emit(self, value: T) -> None:
        # Copy so callbacks may unsubscribe while being notified.
        for callback in list(self._callbacks):
            try:
                callback(value)
            except Exception:
                LOGGER.exception("Error in %s listener", self._name)

    def clear(self) -> None:
        self._callbacks.clear()
