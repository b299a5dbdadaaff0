"""
Tests for the scaling module: keyed locks and TTL caches.
"""

import os
import sys
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from conftest import FakeClock

import scaling
from scaling.cache import LocalCache, RedisCache
from scaling.locking import LocalLockManager


class TestLocalLockManager:
    def test_acquire_release(self):
        locks = LocalLockManager()
        assert locks.acquire("rating:a:s1", timeout=0.1)
        assert locks.is_locked("rating:a:s1")
        assert locks.release("rating:a:s1")
        assert not locks.is_locked("rating:a:s1")

    def test_release_unknown(self):
        assert not LocalLockManager().release("missing")

    def test_context_manager_times_out(self):
        locks = LocalLockManager()
        locks.acquire("busy", timeout=0.1)

        errors = []

        def contender():
            try:
                with locks.lock("busy", timeout=0.05):
                    pass
            except TimeoutError as e:
                errors.append(e)

        thread = threading.Thread(target=contender)
        thread.start()
        thread.join()

        assert len(errors) == 1
        assert "busy" in str(errors[0])
        locks.release("busy")

    def test_independent_keys_do_not_block(self):
        locks = LocalLockManager()
        with locks.lock("rating:a:s1", timeout=0.1):
            with locks.lock("rating:b:s1", timeout=0.1):
                assert locks.is_locked("rating:b:s1")

    def test_unused_keys_are_discarded(self):
        locks = LocalLockManager()
        for i in range(50):
            with locks.lock(f"rating:{i}:s", timeout=0.1):
                pass
        assert locks.tracked_keys() == 0

    def test_mutual_exclusion(self):
        locks = LocalLockManager()
        counter = {"value": 0}

        def worker():
            for _ in range(200):
                with locks.lock("counter", timeout=5):
                    current = counter["value"]
                    time.sleep(0)
                    counter["value"] = current + 1

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert counter["value"] == 800


class TestLocalCache:
    def test_set_get(self):
        cache = LocalCache()
        cache.set("stats:s1", {"count": 1})
        assert cache.get("stats:s1") == {"count": 1}
        assert cache.get("missing", "default") == "default"

    def test_ttl_expiry(self):
        clock = FakeClock()
        cache = LocalCache(clock=clock)
        cache.set("identity:k", {"digest": "d"}, ttl=10)
        clock.advance(9)
        assert cache.exists("identity:k")
        clock.advance(1)
        assert cache.get("identity:k") is None
        assert not cache.exists("identity:k")

    def test_eviction(self):
        cache = LocalCache(max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3)
        assert cache.get("a") is None
        assert cache.get("c") == 3

    def test_delete_prefix(self):
        cache = LocalCache()
        cache.set("stats:a", 1)
        cache.set("stats:b", 2)
        cache.set("identity:a", 3)
        assert cache.delete_prefix("stats:") == 2
        assert cache.get("identity:a") == 3

    def test_stats(self):
        cache = LocalCache()
        cache.set("a", 1)
        cache.get("a")
        cache.get("b")
        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1


class TestRedisCache:
    @pytest.fixture(autouse=True)
    def _require_redis(self):
        pytest.importorskip("redis")

    def test_set_uses_setex_with_ttl(self):
        fake_redis = MagicMock()
        with patch("redis.from_url", return_value=fake_redis):
            cache = RedisCache("redis://localhost:6379/0")
        cache.set("stats:s1", {"count": 2}, ttl=30)
        args = fake_redis.setex.call_args[0]
        assert args[0] == "ratings:cache:stats:s1"
        assert args[1] == 30

    def test_get_decodes_json(self):
        fake_redis = MagicMock()
        fake_redis.get.return_value = b'{"count": 2}'
        with patch("redis.from_url", return_value=fake_redis):
            cache = RedisCache("redis://localhost:6379/0")
        assert cache.get("stats:s1") == {"count": 2}


@pytest.fixture
def no_redis_env(monkeypatch):
    monkeypatch.delenv("REDIS_URL", raising=False)
    scaling.reset_scaling()
    yield
    scaling.reset_scaling()


def test_factories_default_to_local(no_redis_env):
    assert isinstance(scaling.get_lock_manager(), LocalLockManager)
    assert isinstance(scaling.get_cache(), LocalCache)
    assert scaling.get_cache() is scaling.get_cache()
