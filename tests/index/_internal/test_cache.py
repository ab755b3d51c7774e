"""Tests for EvictionCache."""

from __future__ import annotations

from tabrecall.index._internal.cache import EvictionCache


class FakeClock:
    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestEvictionCache:
    """Hybrid recency/frequency eviction."""

    def test_given_accessed_entry_when_full_then_cold_entry_evicted(self) -> None:
        """set(a); set(b); get(a); set(c) evicts b, not a."""
        # Given
        cache: EvictionCache[str, int] = EvictionCache(2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")

        # When
        cache.set("c", 3)

        # Then
        assert "b" not in cache
        assert cache.get("a") == 1
        assert cache.get("c") == 3

    def test_given_hot_tail_entry_when_full_then_hot_entry_survives(self) -> None:
        """A frequently used entry outlives a colder one touched more recently."""
        # Given
        clock = FakeClock()
        cache: EvictionCache[str, int] = EvictionCache(3, clock=clock)
        cache.set("hot", 1)
        for _ in range(10):
            cache.get("hot")
        clock.advance(60)
        cache.set("cold", 2)
        cache.set("warm", 3)
        # "hot" is now least recently used but far more frequent
        clock.advance(1)

        # When
        cache.set("new", 4)

        # Then
        assert "hot" in cache
        assert "cold" not in cache

    def test_equal_scores_evict_older_entry(self) -> None:
        clock = FakeClock()
        cache: EvictionCache[str, int] = EvictionCache(2, clock=clock)
        cache.set("first", 1)
        cache.set("second", 2)

        cache.set("third", 3)

        assert cache.keys() == ["second", "third"]

    def test_eviction_only_scans_window(self) -> None:
        """Entries beyond the scan window are never chosen."""
        clock = FakeClock()
        cache: EvictionCache[int, int] = EvictionCache(4, window=2, clock=clock)
        # Two hot entries end up least recently used, two cold ones most recent
        for key in (0, 1):
            cache.set(key, key)
            for _ in range(5):
                cache.get(key)
        cache.set(2, 2)
        cache.set(3, 3)

        cache.set(99, 99)

        assert len(cache) == 4
        assert 0 not in cache
        assert {1, 2, 3, 99} <= set(cache.keys())

    def test_set_existing_key_keeps_frequency(self) -> None:
        cache: EvictionCache[str, int] = EvictionCache(2)
        cache.set("a", 1)
        cache.get("a")
        cache.get("a")

        cache.set("a", 10)

        assert cache._entries["a"].frequency == 3
        assert cache.get("a") == 10

    def test_non_positive_capacity_falls_back_to_default(self) -> None:
        assert EvictionCache(0).capacity == 100
        assert EvictionCache(-3).capacity == 100

    def test_has_does_not_count_as_access(self) -> None:
        cache: EvictionCache[str, int] = EvictionCache(2)
        cache.set("a", 1)

        assert cache.has("a")
        assert cache._entries["a"].frequency == 1

    def test_delete_and_clear(self) -> None:
        cache: EvictionCache[str, int] = EvictionCache(3)
        cache.set("a", 1)
        cache.set("b", 2)

        assert cache.delete("a") is True
        assert cache.delete("a") is False
        cache.clear()
        assert len(cache) == 0

    def test_stats(self) -> None:
        cache: EvictionCache[str, int] = EvictionCache(4)
        cache.set("a", 1)

        assert cache.stats() == {"size": 1, "capacity": 4, "usage": 0.25}

    def test_missing_key_returns_none(self) -> None:
        assert EvictionCache(2).get("nope") is None
