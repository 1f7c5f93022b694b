from __future__ import annotations

import itertools
import logging
from typing import Callable, Dict, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[T], None]


class SubscriberRegistry(Generic[T]):
    """Ordered listeners with unsubscribe handles."""

    def __init__(self) -> None:
        self._listeners: Dict[int, Listener[T]] = {}
        self._tokens = itertools.count()

    def __len__(self) -> int:
        return len(self._listeners)

    def add(self, listener: Listener[T]) -> Callable[[], None]:
        token = next(self._tokens)
        self._listeners[token] = listener

        def unsubscribe() -> None:
            self._listeners.pop(token, None)

        return unsubscribe

    def notify(self, value: T) -> None:
        # copy so listeners may unsubscribe while being notified
        for listener in list(self._listeners.values()):
            self.deliver(listener, value)

    def deliver(self, listener: Listener[T], value: T) -> None:
        try:
            listener(value)
        except Exception:  # noqa: BLE001
            logger.exception("Catalog listener %r failed", listener)

    def clear(self) -> None:
        self._listeners.clear()
