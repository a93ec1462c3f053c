from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class StoreMetrics:
    sets: int = 0
    notifications: int = 0
    listener_failures: int = 0
    subscriptions: int = 0


class KeyedStateStore(Generic[T]):
    def __init__(self, default_factory: Callable[[str], T] | None = None):
        self._values: dict[str, T] = {}
        self._listeners: dict[str, list[Callable[[str, T], None]]] = defaultdict(
            list
        )
        self._default_factory = default_factory
        self.metrics = StoreMetrics()

    def get(self, key: str) -> T | None:
        if key in self._values:
            return self._values[key]
        if self._default_factory is None:
            return None
        value = self._default_factory(key)
        self._values[key] = value
        return value

    def require(self, key: str) -> T:
        value = self.get(key)
        if value is None:
            raise KeyError(key)
        return value

    def set(self, key: str, value: T) -> None:
        self._values[key] = value
        self.metrics.sets += 1
        self._notify(key, value)

    def update(self, key: str, fn: Callable[[T | None], T]) -> T:
        value = fn(self.get(key))
        self.set(key, value)
        return value

    def has(self, key: str) -> bool:
        return key in self._values

    def keys(self) -> list[str]:
        return list(self._values.keys())

    def subscribe(
        self, key: str, listener: Callable[[str, T], None]
    ) -> Callable[[], None]:
        self._listeners[key].append(listener)
        self.metrics.subscriptions += 1
        released = False

        def unsubscribe() -> None:
            nonlocal released
            if released:
                return
            released = True
            listeners = self._listeners.get(key, [])
            if listener in listeners:
                listeners.remove(listener)
            if not listeners:
                self._listeners.pop(key, None)

        return unsubscribe

    def _notify(self, key: str, value: T) -> None:
        for listener in list(self._listeners.get(key, [])):
            try:
                listener(key, value)
                self.metrics.notifications += 1
            except Exception:
                self.metrics.listener_failures += 1
                logger.exception("State listener failed key=%s", key)
