from __future__ import annotations

import time
from collections import OrderedDict
from threading import Lock
from typing import Callable, Generic, Hashable, TypeVar


K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class TTLCache(Generic[K, V]):
    """Bounded LRU cache whose entries expire ``ttl_seconds`` after insertion.

    ``ttl_seconds <= 0`` disables caching entirely.

    Readers that load a value outside the cache take ``generation(key)``
    first and pass it to ``put``; the write is dropped if the key was
    invalidated in between, so a slow reader cannot re-cache a stale value.
    """

    def __init__(
        self,
        *,
        capacity: int,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = int(capacity)
        self._ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._entries: OrderedDict[K, tuple[float, V]] = OrderedDict()
        self._lock = Lock()
        self._hits = 0
        self._misses = 0
        self._epoch = 0
        self._cleared_at = 0
        self._invalidated_at: dict[K, int] = {}

    @property
    def capacity(self) -> int:
        return self._capacity

    def get(self, key: K) -> V | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                self._misses += 1
                return None
            self._entries.move_to_end(key)
            self._hits += 1
            return value

    def generation(self, key: K) -> int:
        with self._lock:
            return max(self._cleared_at, self._invalidated_at.get(key, 0))

    def put(self, key: K, value: V, *, generation: int | None = None) -> bool:
        if self._ttl_seconds <= 0:
            return False
        with self._lock:
            if generation is not None and generation != max(self._cleared_at, self._invalidated_at.get(key, 0)):
                return False
            self._entries[key] = (self._clock() + self._ttl_seconds, value)
            self._entries.move_to_end(key)
            while len(self._entries) > self._capacity:
                self._entries.popitem(last=False)
            return True

    def invalidate(self, key: K) -> bool:
        with self._lock:
            self._epoch += 1
            self._invalidated_at[key] = self._epoch
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._epoch += 1
            self._cleared_at = self._epoch
            self._invalidated_at.clear()
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "size": len(self._entries),
                "capacity": self._capacity,
                "hits": self._hits,
                "misses": self._misses,
            }
