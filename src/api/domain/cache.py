from __future__ import annotations

import time
from threading import RLock
from typing import Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

V = TypeVar("V")


class TTLCache(Generic[V]):
    """Small key/value cache with a fixed time-to-live.

    Owned by whoever creates it (the app state) and handed to the code that
    reads through it; invalidation is always an explicit call. A ttl of 0
    disables caching entirely.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = max(0.0, float(ttl_seconds))
        self._clock = clock
        self._items: Dict[Hashable, Tuple[float, V]] = {}
        self._lock = RLock()

    def get(self, key: Hashable) -> Optional[V]:
        with self._lock:
            entry = self._items.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self._clock() - stored_at >= self.ttl_seconds:
                self._items.pop(key, None)
                return None
            return value

    def set(self, key: Hashable, value: V) -> None:
        if self.ttl_seconds <= 0:
            return
        with self._lock:
            self._items[key] = (self._clock(), value)

    def get_or_load(self, key: Hashable, loader: Callable[[], V]) -> V:
        with self._lock:
            cached = self.get(key)
            if cached is not None:
                return cached
        value = loader()
        if value is not None:
            self.set(key, value)
        return value

    def invalidate(self, key: Optional[Hashable] = None) -> None:
        """Drop one key, or everything when key is None."""
        with self._lock:
            if key is None:
                self._items.clear()
            else:
                self._items.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
