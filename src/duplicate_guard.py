"""
Rating Engine - Duplicate Guard

Decides whether an identity may create, update or not yet touch its
rating for a subject:

    no active rating              -> NEW
    active rating, cooldown over  -> UPDATE_ALLOWED (update in place)
    active rating, in cooldown    -> DENIED with the remaining wait

The cooldown runs from the active record's accepted_at, so every accepted
update restarts it. Lookups run on a worker thread with a timeout; a
timeout or storage error is a denial flagged as unavailable.
"""

import logging
import os
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from enum import Enum

from rating_models import RatingRecord
from storage.base import RatingStore, StorageError

logger = logging.getLogger(__name__)


class ResolutionKind(Enum):
    NEW = "new"
    UPDATE_ALLOWED = "update_allowed"
    DENIED = "denied"


@dataclass
class DuplicateResolution:
    """Outcome of a duplicate lookup."""

    kind: ResolutionKind
    existing: RatingRecord | None = None
    retry_after: float | None = None
    unavailable: bool = False

    @property
    def existing_id(self) -> str | None:
        return self.existing.id if self.existing else None

    @property
    def previous_score(self) -> int | None:
        return self.existing.score if self.existing else None

    @property
    def allowed(self) -> bool:
        return self.kind != ResolutionKind.DENIED


@dataclass
class DuplicateGuardConfig:
    cooldown_seconds: float = 86400.0
    lookup_timeout: float = 0.5
    max_workers: int = 4

    @classmethod
    def from_env(cls) -> "DuplicateGuardConfig":
        return cls(
            cooldown_seconds=float(os.getenv("RATING_COOLDOWN_SECONDS", "86400")),
            lookup_timeout=float(os.getenv("DUPLICATE_CHECK_TIMEOUT", "0.5")),
        )


class DuplicateGuard:
    """One active rating per (identity, subject), with a re-rate cooldown."""

    def __init__(
        self,
        store: RatingStore,
        config: DuplicateGuardConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.config = config or DuplicateGuardConfig()
        self._clock = clock
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="duplicate-lookup"
        )

    def _lookup(self, identity: str, subject_id: str) -> RatingRecord | None:
        future = self._executor.submit(self.store.find_active, identity, subject_id)
        return future.result(timeout=self.config.lookup_timeout)

    def resolve(self, identity: str, subject_id: str, now: float | None = None) -> DuplicateResolution:
        """Resolve the (identity, subject) pair at now. Never raises."""
        now = self._clock() if now is None else now

        try:
            existing = self._lookup(identity, subject_id)
        except FuturesTimeoutError:
            logger.error(f"Duplicate lookup timed out for subject {subject_id}")
            return DuplicateResolution(ResolutionKind.DENIED, unavailable=True)
        except StorageError as e:
            logger.error(f"Duplicate lookup failed for subject {subject_id}: {e}")
            return DuplicateResolution(ResolutionKind.DENIED, unavailable=True)
        except RuntimeError as e:
            # Executor already shut down
            logger.error(f"Duplicate lookup unavailable: {e}")
            return DuplicateResolution(ResolutionKind.DENIED, unavailable=True)

        if existing is None:
            return DuplicateResolution(ResolutionKind.NEW)

        elapsed = now - existing.accepted_at
        if elapsed < self.config.cooldown_seconds:
            return DuplicateResolution(
                ResolutionKind.DENIED,
                existing=existing,
                retry_after=self.config.cooldown_seconds - elapsed,
            )

        return DuplicateResolution(ResolutionKind.UPDATE_ALLOWED, existing=existing)

    def can_rate(self, identity: str, subject_id: str, now: float | None = None) -> bool:
        return self.resolve(identity, subject_id, now).allowed

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
