"""Tests for the TTL cache."""
from unittest.mock import MagicMock

from app.utils.cache import TTLCache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestTTLCache:
    def test_entry_expires(self):
        clock = FakeClock()
        cache = TTLCache(ttl_seconds=10, clock=clock)
        cache.set("k", 1)
        clock.now = 9.9
        assert cache.get("k") == 1
        clock.now = 10.0
        assert cache.get("k") is None

    def test_per_entry_ttl(self):
        clock = FakeClock()
        cache = TTLCache(ttl_seconds=10, clock=clock)
        cache.set("k", 1, ttl_seconds=60)
        clock.now = 30
        assert cache.get("k") == 1

    def test_get_or_set_calls_factory_once(self):
        cache = TTLCache(ttl_seconds=10, clock=FakeClock())
        factory = MagicMock(return_value=[1, 2])
        assert cache.get_or_set("k", factory) == [1, 2]
        assert cache.get_or_set("k", factory) == [1, 2]
        factory.assert_called_once()

    def test_falsy_values_are_cached(self):
        cache = TTLCache(ttl_seconds=10, clock=FakeClock())
        factory = MagicMock(return_value=[])
        cache.get_or_set("k", factory)
        cache.get_or_set("k", factory)
        factory.assert_called_once()

    def test_max_entries_evicts_oldest(self):
        cache = TTLCache(ttl_seconds=10, max_entries=2, clock=FakeClock())
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3)
        assert cache.get("a") is None
        assert len(cache) == 2

    def test_invalidate(self):
        cache = TTLCache(ttl_seconds=10, clock=FakeClock())
        cache.set("a", 1)
        cache.set("b", 2)
        cache.invalidate("a")
        assert cache.get("a") is None and cache.get("b") == 2
        cache.invalidate()
        assert len(cache) == 0
