"""
Keyed locking for the rating engine.

Provides lock managers that serialize work per key:
- LocalLockManager: Thread-based locks for single-instance deployments
- RedisLockManager: Distributed locks using Redis for multi-instance

The engine uses two families of keys:
    ratelimit:<key>                  one writer per rate-limit counter
    rating:<identity>:<subject_id>   duplicate check -> write -> aggregate

Usage:
    from scaling import get_lock_manager

    lock_manager = get_lock_manager()

    with lock_manager.lock("rating:abc:subject-1", timeout=0.5):
        commit()
"""

import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass


@dataclass
class LockInfo:
    """Information about a held lock."""

    name: str
    holder_id: str
    acquired_at: float
    ttl: float | None = None
    expires_at: float | None = None


class LockManager(ABC):
    """
    Abstract base class for lock managers.

    Callers must treat a failed acquire as a denial of the guarded
    operation, never as permission to proceed unguarded.
    """

    @abstractmethod
    def acquire(self, name: str, timeout: float = 1.0, ttl: float = 10.0) -> bool:
        """
        Acquire a named lock.

        Args:
            name: Lock identifier
            timeout: Maximum time to wait for lock (seconds)
            ttl: Lock time-to-live (distributed backends auto-release after this)

        Returns:
            True if lock acquired, False on timeout
        """

    @abstractmethod
    def release(self, name: str) -> bool:
        """Release a named lock. Returns False if it was not held."""

    @abstractmethod
    def is_locked(self, name: str) -> bool:
        """Check if a lock is currently held."""

    @contextmanager
    def lock(self, name: str, timeout: float = 1.0, ttl: float = 10.0):
        """
        Context manager for acquiring a lock.

        Raises:
            TimeoutError: If lock cannot be acquired within timeout
        """
        if not self.acquire(name, timeout=timeout, ttl=ttl):
            raise TimeoutError(f"Could not acquire lock '{name}' within {timeout}s")
        try:
            yield
        finally:
            self.release(name)


class _KeyedLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class LocalLockManager(LockManager):
    """
    Thread-based lock manager for single-instance deployments.

    Locks are created on demand and discarded once no thread holds or
    waits for them, so per-pair keys do not accumulate.
    """

    def __init__(self):
        self._locks: dict[str, _KeyedLock] = {}
        self._lock_info: dict[str, LockInfo] = {}
        self._meta_lock = threading.Lock()
        self._instance_id = str(uuid.uuid4())[:8]

    def _checkout(self, name: str) -> _KeyedLock:
        with self._meta_lock:
            keyed = self._locks.get(name)
            if keyed is None:
                keyed = self._locks[name] = _KeyedLock()
            keyed.users += 1
            return keyed

    def _checkin(self, name: str, keyed: _KeyedLock) -> None:
        with self._meta_lock:
            keyed.users -= 1
            if keyed.users <= 0 and self._locks.get(name) is keyed:
                del self._locks[name]

    def acquire(self, name: str, timeout: float = 1.0, ttl: float = 10.0) -> bool:
        keyed = self._checkout(name)
        acquired = keyed.lock.acquire(timeout=max(0.0, timeout))

        if not acquired:
            self._checkin(name, keyed)
            return False

        now = time.time()
        self._lock_info[name] = LockInfo(
            name=name,
            holder_id=f"{self._instance_id}:{threading.current_thread().name}",
            acquired_at=now,
            ttl=ttl,
            expires_at=now + ttl if ttl else None,
        )
        return True

    def release(self, name: str) -> bool:
        with self._meta_lock:
            keyed = self._locks.get(name)
        if keyed is None:
            return False
        try:
            keyed.lock.release()
        except RuntimeError:
            return False
        self._lock_info.pop(name, None)
        self._checkin(name, keyed)
        return True

    def is_locked(self, name: str) -> bool:
        return name in self._lock_info

    def tracked_keys(self) -> int:
        """Number of lock objects currently alive (held or awaited)."""
        with self._meta_lock:
            return len(self._locks)


class RedisLockManager(LockManager):
    """
    Distributed lock manager using Redis.

    Uses SET NX PX for acquisition and a compare-and-delete script for
    release. Requires redis package: pip install redis
    """

    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    def __init__(self, redis_url: str, key_prefix: str = "ratings:lock:"):
        try:
            import redis
        except ImportError:
            raise ImportError("redis package required: pip install redis")

        self._redis = redis.from_url(redis_url)
        self._key_prefix = key_prefix
        self._instance_id = str(uuid.uuid4())
        self._held_locks: dict[str, str] = {}

    def _key(self, name: str) -> str:
        return f"{self._key_prefix}{name}"

    def acquire(self, name: str, timeout: float = 1.0, ttl: float = 10.0) -> bool:
        key = self._key(name)
        lock_value = f"{self._instance_id}:{time.time()}"
        ttl_ms = int(ttl * 1000)

        deadline = time.time() + timeout
        retry_delay = 0.01

        while True:
            if self._redis.set(key, lock_value, nx=True, px=ttl_ms):
                self._held_locks[name] = lock_value
                return True
            if time.time() >= deadline:
                return False
            time.sleep(retry_delay)
            retry_delay = min(retry_delay * 2, 0.1)

    def release(self, name: str) -> bool:
        lock_value = self._held_locks.get(name)
        if not lock_value:
            return False

        result = self._redis.eval(self.RELEASE_SCRIPT, 1, self._key(name), lock_value)
        if result:
            self._held_locks.pop(name, None)
            return True
        return False

    def is_locked(self, name: str) -> bool:
        return self._redis.exists(self._key(name)) > 0

    def close(self):
        self._redis.close()
