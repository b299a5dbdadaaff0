"""
TTL cache for the rating engine.

Holds two kinds of derived state:
- identity:<session_key>  persisted client identities (30-day expiry)
- stats:<subject_id>      last published statistics snapshot per subject

Backends:
- LocalCache: In-memory cache for single-instance deployments
- RedisCache: Shared cache using Redis for multi-instance

Usage:
    from scaling import get_cache

    cache = get_cache()
    cache.set("stats:subject-1", stats.to_dict(), ttl=None)
    snapshot = cache.get("stats:subject-1")
"""

import json
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


@dataclass
class CacheEntry:
    """A cache entry with value and expiration."""
    value: Any
    expires_at: float | None = None

    def is_expired(self, now: float) -> bool:
        if self.expires_at is None:
            return False
        return now >= self.expires_at


class Cache(ABC):
    """
    Abstract base class for cache backends.

    Values must be JSON-serializable so both backends behave the same.
    """

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a value from the cache.

        Args:
            key: Cache key
            default: Value to return if key not found or expired

        Returns:
            Cached value or default
        """

    @abstractmethod
    def set(self, key: str, value: Any, ttl: float | None = None) -> bool:
        """
        Set a value in the cache.

        Args:
            key: Cache key
            value: Value to cache (must be JSON-serializable)
            ttl: Time-to-live in seconds (None = no expiration)

        Returns:
            True if successful
        """

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete a key. Returns True if it existed."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check if a live key exists in the cache."""

    def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix. Returns the number removed."""
        return 0

    def clear(self) -> None:
        """Clear all cached values."""

    def get_stats(self) -> dict[str, Any]:
        return {}


class LocalCache(Cache):
    """
    In-memory cache for single-instance deployments.

    Thread-safe with periodic expiration cleanup and FIFO eviction once
    max_size is reached. The clock is injectable so expiry can be tested.
    """

    def __init__(
        self,
        max_size: int = 10000,
        cleanup_interval: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self._cache: dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._max_size = max_size
        self._hits = 0
        self._misses = 0
        self._clock = clock
        self._cleanup_interval = cleanup_interval
        self._last_cleanup = clock()

    def _maybe_cleanup(self, now: float) -> None:
        if now - self._last_cleanup < self._cleanup_interval:
            return

        self._last_cleanup = now
        expired = [k for k, v in self._cache.items() if v.is_expired(now)]
        for key in expired:
            self._cache.pop(key, None)

    def _evict_if_needed(self, now: float) -> None:
        if len(self._cache) < self._max_size:
            return

        self._maybe_cleanup(now)

        while len(self._cache) >= self._max_size:
            try:
                oldest = next(iter(self._cache))
                del self._cache[oldest]
            except (StopIteration, KeyError):
                break

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            now = self._clock()
            self._maybe_cleanup(now)
            entry = self._cache.get(key)

            if entry is None:
                self._misses += 1
                return default

            if entry.is_expired(now):
                del self._cache[key]
                self._misses += 1
                return default

            self._hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl: float | None = None) -> bool:
        with self._lock:
            now = self._clock()
            if key not in self._cache:
                self._evict_if_needed(now)

            expires_at = now + ttl if ttl is not None else None
            self._cache[key] = CacheEntry(value=value, expires_at=expires_at)
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def exists(self, key: str) -> bool:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return False
            if entry.is_expired(self._clock()):
                del self._cache[key]
                return False
            return True

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [k for k in self._cache if k.startswith(prefix)]
            for key in keys:
                del self._cache[key]
            return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "type": "LocalCache",
                "size": len(self._cache),
                "max_size": self._max_size,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / total if total > 0 else 0,
            }


class RedisCache(Cache):
    """
    Shared cache using Redis.

    Values are stored as JSON strings under a key prefix.
    Requires redis package: pip install redis
    """

    def __init__(self, redis_url: str, key_prefix: str = "ratings:cache:"):
        try:
            import redis
        except ImportError:
            raise ImportError("redis package required: pip install redis")

        self._redis = redis.from_url(redis_url)
        self._key_prefix = key_prefix

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    def get(self, key: str, default: Any = None) -> Any:
        data = self._redis.get(self._key(key))
        if data is None:
            return default
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        try:
            return json.loads(data)
        except (json.JSONDecodeError, TypeError):
            return default

    def set(self, key: str, value: Any, ttl: float | None = None) -> bool:
        try:
            data = json.dumps(value)
        except (TypeError, ValueError):
            return False

        if ttl:
            self._redis.setex(self._key(key), max(1, int(ttl)), data)
        else:
            self._redis.set(self._key(key), data)
        return True

    def delete(self, key: str) -> bool:
        return self._redis.delete(self._key(key)) > 0

    def exists(self, key: str) -> bool:
        return self._redis.exists(self._key(key)) > 0

    def delete_prefix(self, prefix: str) -> int:
        removed = 0
        cursor = 0
        while True:
            cursor, keys = self._redis.scan(cursor, match=f"{self._key(prefix)}*", count=100)
            if keys:
                removed += self._redis.delete(*keys)
            if cursor == 0:
                return removed

    def clear(self) -> None:
        self.delete_prefix("")

    def get_stats(self) -> dict[str, Any]:
        info = self._redis.info("stats")
        return {
            "type": "RedisCache",
            "hits": info.get("keyspace_hits", 0),
            "misses": info.get("keyspace_misses", 0),
            "connected": self._redis.ping(),
        }

    def close(self):
        self._redis.close()
