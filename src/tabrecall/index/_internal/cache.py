"""Bounded memo with hybrid recency/frequency eviction.

Entries live in an OrderedDict kept in access order (oldest first). When
full, the oldest few entries are scored by

    log(frequency + 1) * 1 / (1 + minutes_since_access)

and the lowest score is evicted, so a hot entry that happens to sit at the
tail survives a cold neighbour that was touched slightly later.
"""

from __future__ import annotations

import math
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from tabrecall.config.constants import CACHE_DEFAULT_CAPACITY, CACHE_EVICTION_WINDOW

K = TypeVar("K")
V = TypeVar("V")


@dataclass(slots=True)
class CacheEntry(Generic[V]):
    value: V
    frequency: int
    last_access: float  # seconds, from the cache clock


class EvictionCache(Generic[K, V]):
    """LRU map whose eviction victim is chosen by recency and frequency."""

    def __init__(
        self,
        capacity: int,
        *,
        window: int = CACHE_EVICTION_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.capacity = capacity if capacity > 0 else CACHE_DEFAULT_CAPACITY
        self._window = max(1, window)
        self._clock = clock
        self._entries: OrderedDict[K, CacheEntry[V]] = OrderedDict()

    def get(self, key: K) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        entry.frequency += 1
        entry.last_access = self._clock()
        self._entries.move_to_end(key)
        return entry.value

    def set(self, key: K, value: V) -> None:
        entry = self._entries.get(key)
        if entry is not None:
            # Keep accumulated frequency on overwrite
            entry.value = value
            entry.last_access = self._clock()
            self._entries.move_to_end(key)
            return
        if len(self._entries) >= self.capacity:
            self._evict()
        self._entries[key] = CacheEntry(value=value, frequency=1, last_access=self._clock())

    def has(self, key: K) -> bool:
        """Membership test that does not count as an access."""
        return key in self._entries

    def delete(self, key: K) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def keys(self) -> list[K]:
        """Keys from least to most recently used."""
        return list(self._entries)

    def stats(self) -> dict[str, Any]:
        size = len(self._entries)
        return {
            "size": size,
            "capacity": self.capacity,
            "usage": size / self.capacity,
        }

    def _score(self, entry: CacheEntry[V], now: float) -> float:
        minutes = max(0.0, now - entry.last_access) / 60.0
        return math.log(entry.frequency + 1) * (1.0 / (1.0 + minutes))

    def _evict(self) -> None:
        if not self._entries:
            return
        now = self._clock()
        victim: K | None = None
        lowest = math.inf
        for i, (key, entry) in enumerate(self._entries.items()):
            if i >= self._window:
                break
            score = self._score(entry, now)
            # Strict < keeps the older entry on ties
            if score < lowest:
                lowest = score
                victim = key
        if victim is not None:
            del self._entries[victim]
