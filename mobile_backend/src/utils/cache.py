"""
In-process cache with TTL expiry.

Provides a thread-safe key/value cache used in front of the database for
device subscriptions, the backend configuration row and processed-task
markers. The cache is never authoritative: writers update the database
first and the cache second, and any entry may disappear at any time
(TTL expiry or eviction once ``max_entries`` is reached).

Eviction is least-recently-used.
"""

import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Hashable, Iterable, Optional


@dataclass
class CachedValue:
    """
    A cached value with its expiry metadata.

    Attributes:
        value: The cached object
        cached_at: When the value was stored
        ttl_seconds: Time-to-live in seconds (None = no expiry)
    """
    value: Any
    cached_at: datetime
    ttl_seconds: Optional[int] = None

    def is_expired(self) -> bool:
        """Check if the entry has outlived its TTL."""
        if self.ttl_seconds is None:
            return False
        return datetime.utcnow() > self.cached_at + timedelta(seconds=self.ttl_seconds)


class MemoryCache:
    """
    Thread-safe LRU cache with optional per-entry TTL.

    Usage:
        >>> cache = MemoryCache(max_entries=1000)
        >>> cache.set("device:abc", record, ttl_seconds=60)
        >>> cache.get("device:abc")
        >>> cache.get_many(["a", "b"])  # only hits are returned
    """

    def __init__(self, max_entries: int = 10000):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._max_entries = max_entries
        self._entries: "OrderedDict[Hashable, CachedValue]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[Any]:
        """
        Return the cached value, or None on a miss or expired entry.
        """
        with self._lock:
            return self._get_locked(key)

    def get_many(self, keys: Iterable[Hashable]) -> Dict[Hashable, Any]:
        """Return a mapping of the keys that are present and unexpired."""
        found = {}
        with self._lock:
            for key in keys:
                value = self._get_locked(key)
                if value is not None:
                    found[key] = value
        return found

    def set(self, key: Hashable, value: Any, ttl_seconds: Optional[int] = None) -> None:
        """Store a value, evicting the least recently used entry when full."""
        if value is None:
            self.delete(key)
            return
        with self._lock:
            self._entries[key] = CachedValue(
                value=value,
                cached_at=datetime.utcnow(),
                ttl_seconds=ttl_seconds,
            )
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def set_many(self, values: Dict[Hashable, Any], ttl_seconds: Optional[int] = None) -> None:
        for key, value in values.items():
            self.set(key, value, ttl_seconds=ttl_seconds)

    def delete(self, key: Hashable) -> bool:
        """Remove an entry. Returns True if it was present."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def delete_many(self, keys: Iterable[Hashable]) -> int:
        """Remove entries. Returns the number that were present."""
        removed = 0
        with self._lock:
            for key in keys:
                if self._entries.pop(key, None) is not None:
                    removed += 1
        return removed

    def clear(self) -> int:
        """Remove every entry. Returns the number removed."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "max_entries": self._max_entries,
            }

    def _get_locked(self, key: Hashable) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired():
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return entry.value


# Global cache instance (initialized in main.py lifespan)
_cache: Optional[MemoryCache] = None


def get_cache() -> MemoryCache:
    """
    Get the process-wide cache, creating a default one on first use.

    Returns:
        MemoryCache: Shared cache instance
    """
    global _cache
    if _cache is None:
        _cache = MemoryCache()
    return _cache


def init_cache(max_entries: int = 10000) -> MemoryCache:
    """
    Replace the process-wide cache (called on application startup).

    Args:
        max_entries: Cache capacity

    Returns:
        MemoryCache: The new shared instance
    """
    global _cache
    _cache = MemoryCache(max_entries=max_entries)
    return _cache
