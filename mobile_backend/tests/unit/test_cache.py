"""
Unit tests for the in-process MemoryCache.

Tests TTL expiry, LRU eviction and the bulk helpers.
"""

from datetime import datetime, timedelta

import pytest
from freezegun import freeze_time

from mobile_backend.src.utils.cache import MemoryCache, get_cache, init_cache


class TestMemoryCacheBasics:
    """Tests for get / set / delete."""

    def test_get_returns_stored_value(self):
        cache = MemoryCache()
        cache.set("device:abc", {"device_id": "abc"})
        assert cache.get("device:abc") == {"device_id": "abc"}

    def test_get_miss_returns_none(self):
        assert MemoryCache().get("missing") is None

    def test_setting_none_removes_entry(self):
        cache = MemoryCache()
        cache.set("key", 1)
        cache.set("key", None)
        assert cache.get("key") is None
        assert cache.get_stats()["entries"] == 0

    def test_delete_reports_presence(self):
        cache = MemoryCache()
        cache.set("key", 1)
        assert cache.delete("key") is True
        assert cache.delete("key") is False

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            MemoryCache(max_entries=0)


class TestMemoryCacheExpiry:
    """Tests for per-entry TTL."""

    def test_entry_expires_after_ttl(self):
        cache = MemoryCache()
        with freeze_time("2026-01-01 12:00:00") as frozen:
            cache.set("processed_task:tsk_1", 1, ttl_seconds=60)
            frozen.tick(timedelta(seconds=59))
            assert cache.get("processed_task:tsk_1") == 1
            frozen.tick(timedelta(seconds=2))
            assert cache.get("processed_task:tsk_1") is None

    def test_entry_without_ttl_never_expires(self):
        cache = MemoryCache()
        with freeze_time("2026-01-01 12:00:00") as frozen:
            cache.set("key", "value")
            frozen.move_to(datetime(2027, 1, 1))
            assert cache.get("key") == "value"


class TestMemoryCacheEviction:
    """Tests for least-recently-used eviction."""

    def test_evicts_least_recently_used(self):
        cache = MemoryCache(max_entries=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        assert cache.get("a") == 1
        assert cache.get("b") is None
        assert cache.get("c") == 3


class TestMemoryCacheBulk:
    """Tests for get_many / set_many / delete_many / clear."""

    def test_get_many_returns_only_hits(self):
        cache = MemoryCache()
        cache.set_many({"a": 1, "b": 2})
        assert cache.get_many(["a", "b", "c"]) == {"a": 1, "b": 2}

    def test_delete_many_counts_present_keys(self):
        cache = MemoryCache()
        cache.set_many({"a": 1, "b": 2})
        assert cache.delete_many(["a", "b", "c"]) == 2

    def test_clear(self):
        cache = MemoryCache()
        cache.set_many({"a": 1, "b": 2})
        assert cache.clear() == 2
        assert cache.get("a") is None


class TestGlobalCache:
    """Tests for the process-wide instance."""

    def test_init_cache_replaces_shared_instance(self):
        cache = init_cache(max_entries=5)
        assert get_cache() is cache
        assert cache.get_stats()["max_entries"] == 5
