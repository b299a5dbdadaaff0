"""
Shared-state infrastructure for the rating engine.

This package provides the pieces that let several API workers share one
view of the world:
- Keyed locking for rate-limit counters and the rating critical section
- Cache abstraction for identities and statistics snapshots

Usage:
    from scaling import get_lock_manager, get_cache

    lock_manager = get_lock_manager()
    with lock_manager.lock("rating:abc:subject-1", timeout=0.5):
        commit()

    cache = get_cache()
    cache.set("stats:subject-1", snapshot)
"""

import logging
import os
from typing import TYPE_CHECKING

from scaling.cache import Cache, LocalCache
from scaling.locking import LocalLockManager, LockManager

if TYPE_CHECKING:
    from scaling.cache import RedisCache
    from scaling.locking import RedisLockManager

logger = logging.getLogger(__name__)

__all__ = [
    "LockManager",
    "LocalLockManager",
    "Cache",
    "LocalCache",
    "get_lock_manager",
    "get_cache",
    "reset_scaling",
]

# Singleton instances
_lock_manager: LockManager | None = None
_cache: Cache | None = None


def get_lock_manager() -> LockManager:
    """
    Get the configured lock manager.

    Uses Redis for distributed locking if REDIS_URL is set,
    otherwise falls back to local threading locks.
    """
    global _lock_manager
    if _lock_manager is None:
        redis_url = os.getenv("REDIS_URL")
        if redis_url:
            try:
                from scaling.locking import RedisLockManager
                _lock_manager = RedisLockManager(redis_url)
            except ImportError:
                logger.warning("REDIS_URL set but redis package missing; using local locks")
                _lock_manager = LocalLockManager()
        else:
            _lock_manager = LocalLockManager()
    return _lock_manager


def get_cache() -> Cache:
    """
    Get the configured cache backend.

    Uses Redis if REDIS_URL is set, otherwise uses local in-memory cache.
    """
    global _cache
    if _cache is None:
        redis_url = os.getenv("REDIS_URL")
        if redis_url:
            try:
                from scaling.cache import RedisCache
                _cache = RedisCache(redis_url)
            except ImportError:
                logger.warning("REDIS_URL set but redis package missing; using local cache")
                _cache = LocalCache()
        else:
            _cache = LocalCache()
    return _cache


def reset_scaling() -> None:
    """Drop the singletons (tests and reconfiguration)."""
    global _lock_manager, _cache
    _lock_manager = None
    _cache = None
