"""Tests for the TTL result cache and daily quota."""

import datetime

from partwise_mcp.cache import DailyQuota, TTLCache


class TestTTLCache:
    def test_get_set(self, clock):
        cache = TTLCache(clock=clock)
        cache.set("key", "value", ttl_hours=1)
        assert cache.get("key") == "value"

    def test_get_miss(self, clock):
        cache = TTLCache(clock=clock)
        assert cache.get("missing") is None

    def test_zero_ttl_is_gone_on_next_get(self, clock):
        cache = TTLCache(clock=clock)
        cache.set("key", "value", ttl_hours=0)
        assert cache.get("key") is None
        assert len(cache) == 0

    def test_available_one_hour_into_24h_ttl(self, clock):
        cache = TTLCache(clock=clock)
        cache.set("key", [1, 2], ttl_hours=24)
        clock.advance(3600)
        assert cache.get("key") == [1, 2]

    def test_expires_after_ttl(self, clock):
        cache = TTLCache(clock=clock)
        cache.set("key", "value", ttl_hours=24)
        clock.advance(24 * 3600)
        assert cache.get("key") is None

    def test_per_entry_ttl(self, clock):
        cache = TTLCache(clock=clock)
        cache.set("catalog", 1, ttl_hours=24)
        cache.set("personal", 2, ttl_hours=6)
        clock.advance(7 * 3600)
        assert cache.get("catalog") == 1
        assert cache.get("personal") is None

    def test_last_write_wins(self, clock):
        cache = TTLCache(clock=clock)
        cache.set("key", "old", ttl_hours=1)
        cache.set("key", "new", ttl_hours=1)
        assert cache.get("key") == "new"
        assert len(cache) == 1

    def test_max_size_lru_eviction(self, clock):
        cache = TTLCache(max_size=3, clock=clock)
        cache.set("a", 1, ttl_hours=1)
        cache.set("b", 2, ttl_hours=1)
        cache.set("c", 3, ttl_hours=1)
        cache.get("a")  # a is now most recently used
        cache.set("d", 4, ttl_hours=1)
        assert cache.get("b") is None
        assert cache.get("a") == 1
        assert cache.get("d") == 4
        assert len(cache) == 3

    def test_eviction_drops_expired_first(self, clock):
        cache = TTLCache(max_size=2, clock=clock)
        cache.set("short", 1, ttl_hours=1)
        cache.set("long", 2, ttl_hours=24)
        clock.advance(2 * 3600)
        cache.set("new", 3, ttl_hours=24)
        assert cache.get("long") == 2
        assert cache.get("new") == 3

    def test_delete_and_clear(self, clock):
        cache = TTLCache(clock=clock)
        cache.set("a", 1, ttl_hours=1)
        cache.set("b", 2, ttl_hours=1)
        cache.delete("a")
        cache.delete("missing")
        assert cache.get("a") is None
        cache.clear()
        assert len(cache) == 0

    def test_stats(self, clock):
        cache = TTLCache(max_size=10, clock=clock)
        cache.set("a", 1, ttl_hours=1)
        cache.get("a")
        cache.get("b")
        assert cache.stats() == {"size": 1, "max_size": 10, "hits": 1, "misses": 1}


class TestDailyQuota:
    def test_within_limit(self):
        quota = DailyQuota("AI service", 2)
        assert quota.check() is None
        assert quota.check() is None
        assert quota.remaining == 0

    def test_over_limit(self):
        quota = DailyQuota("AI service", 1)
        quota.check()
        error = quota.check()
        assert error is not None
        assert "AI service" in error
        assert "1 requests/day" in error

    def test_resets_on_new_day(self):
        day = [datetime.date(2024, 1, 1)]
        quota = DailyQuota("AI service", 1, today=lambda: day[0])
        quota.check()
        assert quota.check() is not None
        day[0] = datetime.date(2024, 1, 2)
        assert quota.remaining == 1
        assert quota.check() is None
