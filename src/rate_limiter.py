"""
Rating Engine - Rate Limiting

Fixed-window rate limiting with temporary blocks:
- Per-identity and global counters per action type
- Both counters evaluated before either is incremented (a denial never
  consumes quota)
- A key that reaches its limit is blocked for block_seconds; once the
  block expires the key starts a fresh window
- Per-key mutual exclusion via the scaling lock manager; a lock timeout
  or store failure denies (fail closed)
- Redis-backed state for multi-instance deployments
- Rate limit headers (X-RateLimit-*)

Usage:
    from rate_limiter import RateLimiter, RateLimitConfig

    limiter = RateLimiter(RateLimitConfig.from_env())

    decision = limiter.check_and_record(identity, "rating_submission")
    if not decision.allowed:
        return 429, {"retry_after": decision.retry_after}

Environment Variables:
    RATE_LIMIT_BACKEND=memory|redis
    RATE_LIMIT_SUBMISSIONS=10
    RATE_LIMIT_WINDOW=3600
    RATE_LIMIT_BLOCK_SECONDS=300
    RATE_LIMIT_GLOBAL_MULTIPLIER=10
    RATE_LIMIT_CHECK_TIMEOUT=0.5
    RATE_LIMIT_REDIS_URL=redis://localhost:6379/0
    RATE_LIMIT_REDIS_PREFIX=ratings:ratelimit:
"""

import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from contextlib import ExitStack
from dataclasses import asdict, dataclass
from typing import Any

from scaling.locking import LocalLockManager, LockManager

logger = logging.getLogger(__name__)

RATING_SUBMISSION = "rating_submission"
SUBJECT_CREATION = "subject_creation"

GLOBAL_SCOPE = "global"
IDENTITY_SCOPE = "identity"

# Short retry hint when the limiter itself could not decide
UNAVAILABLE_RETRY_AFTER = 1.0


@dataclass(frozen=True)
class ActionLimit:
    """Limits for one action type."""

    limit: int
    window_seconds: float
    block_seconds: float
    global_multiplier: int = 10

    @property
    def global_limit(self) -> int:
        return self.limit * self.global_multiplier


@dataclass
class RateLimitConfig:
    """Configuration for rate limiting."""

    backend: str = "memory"

    submissions_per_window: int = 10
    window_seconds: float = 3600.0
    block_seconds: float = 300.0
    global_multiplier: int = 10
    subject_creations_per_window: int = 3

    lock_timeout: float = 0.5

    redis_url: str = "redis://localhost:6379/0"
    redis_prefix: str = "ratings:ratelimit:"
    redis_timeout: float = 1.0

    @classmethod
    def from_env(cls) -> "RateLimitConfig":
        """Create configuration from environment variables."""
        return cls(
            backend=os.getenv("RATE_LIMIT_BACKEND", "memory"),
            submissions_per_window=int(os.getenv("RATE_LIMIT_SUBMISSIONS", "10")),
            window_seconds=float(os.getenv("RATE_LIMIT_WINDOW", "3600")),
            block_seconds=float(os.getenv("RATE_LIMIT_BLOCK_SECONDS", "300")),
            global_multiplier=int(os.getenv("RATE_LIMIT_GLOBAL_MULTIPLIER", "10")),
            subject_creations_per_window=int(os.getenv("RATE_LIMIT_SUBJECT_CREATIONS", "3")),
            lock_timeout=float(os.getenv("RATE_LIMIT_CHECK_TIMEOUT", "0.5")),
            redis_url=os.getenv("RATE_LIMIT_REDIS_URL", "redis://localhost:6379/0"),
            redis_prefix=os.getenv("RATE_LIMIT_REDIS_PREFIX", "ratings:ratelimit:"),
            redis_timeout=float(os.getenv("RATE_LIMIT_REDIS_TIMEOUT", "1.0")),
        )

    def action_limits(self) -> dict[str, ActionLimit]:
        return {
            RATING_SUBMISSION: ActionLimit(
                limit=self.submissions_per_window,
                window_seconds=self.window_seconds,
                block_seconds=self.block_seconds,
                global_multiplier=self.global_multiplier,
            ),
            SUBJECT_CREATION: ActionLimit(
                limit=self.subject_creations_per_window,
                window_seconds=self.window_seconds,
                block_seconds=self.block_seconds,
                global_multiplier=self.global_multiplier,
            ),
        }


@dataclass
class RateLimitState:
    """Counter state for one key."""

    count: int = 0
    window_start: float = 0.0
    reset_at: float = 0.0
    blocked: bool = False
    blocked_until: float | None = None

    @classmethod
    def fresh(cls, now: float, window_seconds: float) -> "RateLimitState":
        return cls(count=0, window_start=now, reset_at=now + window_seconds)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RateLimitState":
        return cls(
            count=int(data.get("count", 0)),
            window_start=float(data.get("window_start", 0.0)),
            reset_at=float(data.get("reset_at", 0.0)),
            blocked=bool(data.get("blocked", False)),
            blocked_until=data.get("blocked_until"),
        )


@dataclass
class RateLimitDecision:
    """Result of a rate limit check."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: float = 0.0  # Seconds until retry allowed (0 if allowed)
    scope: str | None = None  # Which counter denied: identity or global
    reason: str | None = None  # limit_exceeded, blocked, unavailable

    def to_headers(self) -> dict[str, str]:
        """Convert to rate limit response headers."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(max(1, int(round(self.retry_after))))
        return headers


class RateLimitStore(ABC):
    """Abstract base class for rate limit state storage."""

    @abstractmethod
    def get(self, key: str) -> RateLimitState | None:
        """Get the state for key, or None if absent or expired."""

    @abstractmethod
    def put(self, key: str, state: RateLimitState, ttl: float) -> None:
        """Store state for key; it may be discarded after ttl seconds."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete state for key."""

    @abstractmethod
    def clear(self, prefix: str = "") -> int:
        """Delete all state whose key starts with prefix."""

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the store is available."""


class MemoryRateLimitStore(RateLimitStore):
    """In-memory rate limit storage (single instance only)."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._store: dict[str, tuple[RateLimitState, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get(self, key: str) -> RateLimitState | None:
        with self._lock:
            item = self._store.get(key)
            if item is None:
                return None
            state, expires_at = item
            if self._clock() >= expires_at:
                del self._store[key]
                return None
            return RateLimitState(**asdict(state))

    def put(self, key: str, state: RateLimitState, ttl: float) -> None:
        with self._lock:
            self._store[key] = (RateLimitState(**asdict(state)), self._clock() + ttl)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._store.pop(key, None) is not None

    def clear(self, prefix: str = "") -> int:
        with self._lock:
            keys = [k for k in self._store if k.startswith(prefix)]
            for k in keys:
                del self._store[k]
            return len(keys)

    def is_available(self) -> bool:
        """Memory store is always available."""
        return True

    def cleanup_expired(self) -> int:
        """Remove expired entries to prevent memory growth."""
        now = self._clock()
        with self._lock:
            expired_keys = [k for k, (_, expires_at) in self._store.items() if now >= expires_at]
            for k in expired_keys:
                del self._store[k]
            return len(expired_keys)

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)


class RedisRateLimitStore(RateLimitStore):
    """Redis-backed rate limit storage for distributed deployments."""

    def __init__(self, url: str, prefix: str = "", timeout: float = 1.0):
        self.url = url
        self.prefix = prefix
        self.timeout = timeout
        self._client = None

    def _get_client(self):
        """Get or create Redis client."""
        if self._client is None:
            try:
                import redis
            except ImportError:
                raise ConnectionError("redis package not installed. Install with: pip install redis")

            self._client = redis.from_url(
                self.url,
                socket_timeout=self.timeout,
                socket_connect_timeout=self.timeout,
                decode_responses=True,
            )
            logger.info(f"Rate limiter using Redis at {self.url}")

        return self._client

    def _full_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get(self, key: str) -> RateLimitState | None:
        raw = self._get_client().get(self._full_key(key))
        if not raw:
            return None
        return RateLimitState.from_dict(json.loads(raw))

    def put(self, key: str, state: RateLimitState, ttl: float) -> None:
        self._get_client().set(
            self._full_key(key), json.dumps(state.to_dict()), ex=max(1, int(ttl + 0.999))
        )

    def delete(self, key: str) -> bool:
        return self._get_client().delete(self._full_key(key)) > 0

    def clear(self, prefix: str = "") -> int:
        client = self._get_client()
        removed = 0
        for full_key in client.scan_iter(match=f"{self._full_key(prefix)}*", count=100):
            removed += client.delete(full_key)
        return removed

    def is_available(self) -> bool:
        try:
            return bool(self._get_client().ping())
        except Exception as e:
            logger.warning(f"Redis rate limit store unavailable: {e}")
            return False


def _evaluate(
    state: RateLimitState | None, limit: int, action: ActionLimit, now: float
) -> tuple[RateLimitState, float | None, str | None]:
    """
    Bring state up to date at now and decide without incrementing.

    Returns (state, retry_after, reason); retry_after is None when allowed.
    """
    if state is None:
        return RateLimitState.fresh(now, action.window_seconds), None, None

    if state.blocked:
        if state.blocked_until is not None and now < state.blocked_until:
            return state, state.blocked_until - now, "blocked"
        state = RateLimitState.fresh(now, action.window_seconds)

    if now >= state.reset_at:
        state = RateLimitState.fresh(now, action.window_seconds)

    if state.count >= limit:
        state.blocked = True
        state.blocked_until = now + action.block_seconds
        return state, action.block_seconds, "limit_exceeded"

    return state, None, None


class RateLimiter:
    """
    Identity and global rate limiter for rating actions.

    State lives in a RateLimitStore (memory or Redis); read-modify-write
    of each key happens under a named lock from the lock manager.
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        store: RateLimitStore | None = None,
        lock_manager: LockManager | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or RateLimitConfig.from_env()
        self._clock = clock
        self._limits = self.config.action_limits()
        self._store = store or self._create_store()
        self._locks = lock_manager or LocalLockManager()

    def _create_store(self) -> RateLimitStore:
        if self.config.backend.lower() == "redis":
            logger.info("Rate limiter: Redis backend")
            return RedisRateLimitStore(
                url=self.config.redis_url,
                prefix=self.config.redis_prefix,
                timeout=self.config.redis_timeout,
            )
        logger.info("Rate limiter: Memory backend")
        return MemoryRateLimitStore(clock=self._clock)

    @property
    def store(self) -> RateLimitStore:
        return self._store

    def action_limit(self, action_type: str) -> ActionLimit:
        try:
            return self._limits[action_type]
        except KeyError:
            raise ValueError(f"Unknown action type: {action_type}") from None

    @staticmethod
    def identity_key(key: str, action_type: str) -> str:
        return f"{action_type}:{IDENTITY_SCOPE}:{key}"

    @staticmethod
    def global_key(action_type: str) -> str:
        return f"{action_type}:{GLOBAL_SCOPE}"

    def check_and_record(
        self, key: str, action_type: str = RATING_SUBMISSION, now: float | None = None
    ) -> RateLimitDecision:
        """
        Check both counters for key and, if both allow, count one action.

        Args:
            key: Identity (or other client key) performing the action
            action_type: Configured action type
            now: Evaluation time (defaults to the limiter clock)

        Returns:
            RateLimitDecision; never raises for store or lock failures
        """
        action = self.action_limit(action_type)
        now = self._clock() if now is None else now
        identity_key = self.identity_key(key, action_type)
        global_key = self.global_key(action_type)
        ttl = action.window_seconds + action.block_seconds

        try:
            with ExitStack() as stack:
                # Fixed order (identity, then global) on every path
                for store_key in (identity_key, global_key):
                    stack.enter_context(
                        self._locks.lock(f"ratelimit:{store_key}", timeout=self.config.lock_timeout)
                    )

                ident_state, ident_retry, ident_reason = _evaluate(
                    self._store.get(identity_key), action.limit, action, now
                )
                if ident_retry is not None:
                    self._store.put(identity_key, ident_state, ttl)
                    return self._deny(action.limit, ident_state, ident_retry, IDENTITY_SCOPE, ident_reason)

                glob_state, glob_retry, glob_reason = _evaluate(
                    self._store.get(global_key), action.global_limit, action, now
                )
                if glob_retry is not None:
                    self._store.put(global_key, glob_state, ttl)
                    return self._deny(action.global_limit, glob_state, glob_retry, GLOBAL_SCOPE, glob_reason)

                ident_state.count += 1
                glob_state.count += 1
                self._store.put(identity_key, ident_state, ttl)
                self._store.put(global_key, glob_state, ttl)

        except TimeoutError as e:
            logger.warning(f"Rate limit lock timeout for {action_type}: {e}")
            return self._unavailable(action, now)
        except Exception as e:
            logger.error(f"Rate limit check failed for {action_type}: {e}")
            return self._unavailable(action, now)

        return RateLimitDecision(
            allowed=True,
            limit=action.limit,
            remaining=max(0, action.limit - ident_state.count),
            reset_at=ident_state.reset_at,
        )

    def _deny(
        self, limit: int, state: RateLimitState, retry_after: float, scope: str, reason: str | None
    ) -> RateLimitDecision:
        logger.info(f"Rate limit denied ({scope}, {reason}); retry after {retry_after:.0f}s")
        return RateLimitDecision(
            allowed=False,
            limit=limit,
            remaining=0,
            reset_at=state.blocked_until or state.reset_at,
            retry_after=retry_after,
            scope=scope,
            reason=reason,
        )

    def _unavailable(self, action: ActionLimit, now: float) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=False,
            limit=action.limit,
            remaining=0,
            reset_at=now + UNAVAILABLE_RETRY_AFTER,
            retry_after=UNAVAILABLE_RETRY_AFTER,
            reason="unavailable",
        )

    def status(self, key: str, action_type: str = RATING_SUBMISSION, now: float | None = None) -> dict[str, Any]:
        """
        Get current rate limit status for key without counting an action.

        Returns:
            Dict with used, limit, remaining, reset_at, blocked and blocked_until
        """
        action = self.action_limit(action_type)
        now = self._clock() if now is None else now
        state = self._store.get(self.identity_key(key, action_type))

        blocked = bool(state and state.blocked and state.blocked_until and now < state.blocked_until)
        if state is None or (not blocked and (state.blocked or now >= state.reset_at)):
            state = RateLimitState.fresh(now, action.window_seconds)

        return {
            "action_type": action_type,
            "used": state.count,
            "limit": action.limit,
            "remaining": 0 if blocked else max(0, action.limit - state.count),
            "window_seconds": action.window_seconds,
            "reset_at": state.reset_at,
            "blocked": blocked,
            "blocked_until": state.blocked_until if blocked else None,
        }

    def clear(self, key: str | None = None, action_type: str | None = None) -> int:
        """
        Clear rate limit state.

        Args:
            key: Clear only this identity's counters (all identities and the
                 global counter when None)
            action_type: Restrict to one action type

        Returns:
            Number of entries removed
        """
        action_types = [action_type] if action_type else list(self._limits)
        removed = 0
        for action in action_types:
            if key is None:
                removed += self._store.clear(f"{action}:")
            elif self._store.delete(self.identity_key(key, action)):
                removed += 1
        return removed

    def is_healthy(self) -> dict[str, Any]:
        return {
            "backend": self.config.backend,
            "available": self._store.is_available(),
        }

