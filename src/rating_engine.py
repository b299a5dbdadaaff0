"""
Rating Engine - Facade

Wires the pipeline together and exposes the operations used by the HTTP
API, the CLI and embedding applications:

    engine = RatingEngine()
    identity = engine.get_client_identity(signals)
    result = engine.submit_rating("cafe-1", 5, identity=identity.digest)
    if result.accepted:
        print(result.record.id, result.statistics.mean)
    else:
        print(result.rejection.kind, result.rejection.retry_after)

Accepted ratings are written to storage (bounded retries behind the
"storage" circuit breaker), applied to the aggregation engine inside the
same critical section. The aggregation engine queues each new snapshot
for subscribers before releasing its subject lock.
"""

import dataclasses
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from aggregation import STATS_CACHE_PREFIX, AggregationConfig, AggregationEngine
from broadcaster import UpdateBroadcaster, WebhookSecurityForwarder
from duplicate_guard import DuplicateGuard, DuplicateGuardConfig
from fingerprint import IdentityService
from monitoring.metrics import metrics
from monitoring.middleware import timed
from rate_limiter import RATING_SUBMISSION, SUBJECT_CREATION, RateLimitConfig, RateLimiter
from rating_models import (
    ClientIdentity,
    ClientMeta,
    ErrorKind,
    RatingRecord,
    RatingRejection,
    RatingSubmission,
    SecurityEvent,
    SubjectStatistics,
)
from rating_validator import AcceptInstruction, RatingValidator, ValidatorConfig
from retry import CircuitState, RetryConfig, get_circuit_breaker, retry_call
from scaling import get_cache, get_lock_manager
from scaling.cache import Cache
from scaling.locking import LockManager
from storage import get_storage_backend
from storage.base import (
    RatingStore,
    StorageConnectionError,
    StorageError,
    StorageIntegrityError,
    StorageReadError,
    StorageWriteError,
)
from suspicious_activity import SuspiciousActivityConfig, SuspiciousActivityDetector

logger = logging.getLogger(__name__)

STORAGE_CIRCUIT = "storage"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class EngineConfig:
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    duplicate: DuplicateGuardConfig = field(default_factory=DuplicateGuardConfig)
    suspicious: SuspiciousActivityConfig = field(default_factory=SuspiciousActivityConfig)
    validator: ValidatorConfig = field(default_factory=ValidatorConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    identity_ttl_days: float = 30.0
    asynchronous_broadcast: bool = True
    rebuild_on_start: bool = True
    forward_security_events: bool = True

    @classmethod
    def from_env(cls) -> "EngineConfig":
        return cls(
            rate_limit=RateLimitConfig.from_env(),
            duplicate=DuplicateGuardConfig.from_env(),
            suspicious=SuspiciousActivityConfig.from_env(),
            validator=ValidatorConfig.from_env(),
            aggregation=AggregationConfig.from_env(),
            retry=RetryConfig.from_env(),
            identity_ttl_days=float(os.getenv("IDENTITY_TTL_DAYS", "30")),
            asynchronous_broadcast=_env_bool("BROADCAST_ASYNC", "true"),
            rebuild_on_start=_env_bool("REBUILD_ON_START", "true"),
        )


@dataclass
class SubmissionResult:
    """Either an accepted record (with the new statistics) or a rejection."""

    accepted: bool
    record: RatingRecord | None = None
    rejection: RatingRejection | None = None
    statistics: SubjectStatistics | None = None
    mode: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.accepted:
            return {
                "accepted": True,
                "mode": self.mode,
                "record": self.record.to_public_dict(),
                "statistics": self.statistics.to_dict() if self.statistics else None,
            }
        return {"accepted": False, "error": self.rejection.to_dict()}


@dataclass
class SubjectRegistration:
    accepted: bool
    subject_id: str | None = None
    created_at: float | None = None
    rejection: RatingRejection | None = None


class RatingEngine:
    """Rating integrity and aggregation engine."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        store: RatingStore | None = None,
        lock_manager: LockManager | None = None,
        cache: Cache | None = None,
        broadcaster: UpdateBroadcaster | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or EngineConfig.from_env()
        self._clock = clock
        self.store = store if store is not None else get_storage_backend()
        self.locks = lock_manager or get_lock_manager()
        self.cache = cache if cache is not None else get_cache()

        self.broadcaster = broadcaster or UpdateBroadcaster(asynchronous=self.config.asynchronous_broadcast)
        self.rate_limiter = RateLimiter(self.config.rate_limit, lock_manager=self.locks, clock=clock)
        self.duplicate_guard = DuplicateGuard(self.store, self.config.duplicate, clock=clock)
        self.detector = SuspiciousActivityDetector(
            self.config.suspicious,
            subject_created_at=self._subject_created_at,
            event_sink=self.broadcaster.publish_security,
            clock=clock,
        )
        self.validator = RatingValidator(
            self.rate_limiter,
            self.duplicate_guard,
            self.detector,
            lock_manager=self.locks,
            config=self.config.validator,
            clock=clock,
        )
        self.aggregator = AggregationEngine(
            self.config.aggregation,
            cache=self.cache,
            clock=clock,
            on_publish=lambda stats: self.broadcaster.publish(stats.subject_id, stats),
        )
        self.identities = IdentityService(cache=self.cache, ttl_days=self.config.identity_ttl_days, clock=clock)

        self._retry_config = dataclasses.replace(
            self.config.retry,
            retryable_exceptions=(StorageConnectionError, StorageWriteError, ConnectionError, TimeoutError),
            non_retryable_exceptions=(StorageIntegrityError,),
        )

        self._forwarder = None
        if self.config.forward_security_events:
            self._forwarder = WebhookSecurityForwarder.from_env()
            if self._forwarder:
                self.broadcaster.subscribe_security(self._forwarder)
                logger.info(f"Forwarding security events to {self._forwarder.url}")

        if self.config.rebuild_on_start:
            self.rebuild_all()

        self.broadcaster.start()

    # Submission path

    def submit_rating(
        self,
        subject_id: str,
        score: int,
        comment: str | None = None,
        photo_refs: list[str] | None = None,
        *,
        identity: str | ClientIdentity | None,
        aspects: dict[str, float] | None = None,
        submitted_at: float | None = None,
        client: ClientMeta | dict[str, Any] | None = None,
    ) -> SubmissionResult:
        """
        Validate and, if accepted, persist and aggregate one rating.

        Returns:
            SubmissionResult; pipeline failures are never raised
        """
        metrics.increment("ratings_submitted_total")
        with metrics.timer("rating_submission_duration_ms"):
            submission = RatingSubmission(
                subject_id=subject_id,
                identity=identity,
                score=score,
                comment=comment,
                photo_refs=() if photo_refs is None else photo_refs,
                submitted_at=submitted_at,
                aspects=aspects,
            )
            client_meta = client if isinstance(client, ClientMeta) else ClientMeta.from_dict(client)
            now = self._clock()

            outcome = self.validator.validate(
                submission,
                commit=lambda instruction: self._commit(submission, instruction, now),
                client_meta=client_meta,
                now=now,
            )

        if not outcome.accepted:
            metrics.increment("ratings_rejected_total", labels={"kind": outcome.rejection.kind.value})
            return SubmissionResult(accepted=False, rejection=outcome.rejection)

        record, stats = outcome.result
        mode = outcome.instruction.mode
        metrics.increment("ratings_accepted_total", labels={"mode": mode})
        logger.info(
            f"Rating accepted ({mode})",
            extra={"subject_id": record.subject_id, "identity": record.identity, "revision": record.revision},
        )
        return SubmissionResult(accepted=True, record=record, statistics=stats, mode=mode)

    def _commit(
        self, submission: RatingSubmission, instruction: AcceptInstruction, now: float
    ) -> tuple[RatingRecord, SubjectStatistics]:
        photo_refs = tuple(submission.photo_refs or ())
        aspects = dict(submission.aspects or {})

        if instruction.is_update:
            existing = self.store.get(instruction.existing_id)
            if existing is None:
                raise StorageReadError(f"Active rating {instruction.existing_id} disappeared")
            record = dataclasses.replace(
                existing,
                score=submission.score,
                comment=submission.comment,
                photo_refs=photo_refs,
                aspects=aspects,
                submitted_at=instruction.submitted_at,
                accepted_at=now,
                revision=existing.revision + 1,
            )
            self._write(self.store.update, record)
        else:
            record = RatingRecord(
                subject_id=instruction.subject_id,
                identity=instruction.identity,
                score=submission.score,
                submitted_at=instruction.submitted_at,
                accepted_at=now,
                comment=submission.comment,
                photo_refs=photo_refs,
                aspects=aspects,
            )
            self._write(self.store.insert, record)

        stats = self.aggregator.apply(
            record.subject_id,
            record.score,
            instruction.previous_score if instruction.is_update else None,
            record_id=record.id,
            revision=record.revision,
            accepted_at=record.accepted_at,
        )
        return record, stats

    def _write(self, operation: Callable[[RatingRecord], None], record: RatingRecord) -> None:
        def on_retry(attempt: int, error: Exception, delay: float) -> None:
            metrics.increment("storage_retries_total")

        retry_call(
            operation,
            args=(record,),
            config=self._retry_config,
            circuit_breaker_name=STORAGE_CIRCUIT,
            on_retry=on_retry,
        )

    # Identity

    def get_client_identity(
        self,
        signals: Any,
        session_key: str | None = None,
        display_name: str | None = None,
    ) -> ClientIdentity:
        return self.identities.get_client_identity(signals, session_key=session_key, display_name=display_name)

    def can_rate(self, subject_id: str, identity: str | ClientIdentity | None) -> bool:
        if isinstance(identity, ClientIdentity):
            identity = identity.digest if identity.is_available else None
        if not identity or not isinstance(subject_id, str) or not subject_id:
            return False
        return self.duplicate_guard.can_rate(identity, subject_id, self._clock())

    # Subjects

    def _subject_created_at(self, subject_id: str) -> float | None:
        try:
            return self.store.subject_created_at(subject_id)
        except StorageError as e:
            logger.warning(f"Could not read creation time for {subject_id}: {e}")
            return None

    def register_subject(
        self,
        subject_id: str,
        created_at: float | None = None,
        identity: str | None = None,
    ) -> SubjectRegistration:
        """
        Record a subject's creation time (the first registration wins).

        When identity is given the registration counts against the
        subject_creation rate limit.

        Raises:
            ValueError: If subject_id is not a 1-100 character string
        """
        if not isinstance(subject_id, str) or not subject_id.strip() or len(subject_id) > 100:
            raise ValueError("subject_id must be 1-100 characters")
        now = self._clock()

        if identity:
            decision = self.rate_limiter.check_and_record(identity, SUBJECT_CREATION, now)
            if not decision.allowed:
                rejection = RatingRejection(
                    kind=ErrorKind.RATE_LIMITED,
                    message="Too many new subjects. Please try again later.",
                    retry_after=decision.retry_after,
                    stage="rate_limit",
                )
                return SubjectRegistration(accepted=False, rejection=rejection)

        self.store.register_subject(subject_id, now if created_at is None else created_at)
        return SubjectRegistration(
            accepted=True,
            subject_id=subject_id,
            created_at=self.store.subject_created_at(subject_id),
        )

    # Statistics

    def get_statistics(self, subject_id: str) -> SubjectStatistics:
        """Last published snapshot, shared through the statistics cache."""
        cached = self.cache.get(STATS_CACHE_PREFIX + subject_id)
        if cached:
            try:
                return SubjectStatistics.from_dict(cached)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Ignoring malformed statistics cache entry for {subject_id}: {e}")
        return self.aggregator.snapshot(subject_id)

    def rebuild_statistics(self, subject_id: str) -> SubjectStatistics:
        records = self.store.list_for_subject(subject_id)
        return self.aggregator.rebuild(subject_id, records)

    @timed("statistics_rebuild_ms")
    def rebuild_all(self) -> int:
        """Rebuild every subject known to storage; returns the subject count."""
        subjects = self.store.list_subjects()
        for subject_id in subjects:
            self.rebuild_statistics(subject_id)
        if subjects:
            logger.info(f"Rebuilt statistics for {len(subjects)} subjects")
        return len(subjects)

    def on_statistics_changed(
        self, callback: Callable[[SubjectStatistics], None], subject_id: str | None = None
    ) -> Callable[[], None]:
        return self.broadcaster.subscribe(callback, subject_id=subject_id)

    def on_security_event(self, callback: Callable[[SecurityEvent], None]) -> Callable[[], None]:
        return self.broadcaster.subscribe_security(callback)

    # Administration

    def security_events(self, limit: int | None = None) -> list[SecurityEvent]:
        return self.detector.recent_events(limit)

    def validation_stats(self) -> dict[str, Any]:
        return self.validator.validation_stats()

    def rate_limit_status(self, identity: str) -> dict[str, Any]:
        now = self._clock()
        return {
            action: self.rate_limiter.status(identity, action, now)
            for action in (RATING_SUBMISSION, SUBJECT_CREATION)
        }

    def clear_rate_limits(self, identity: str | None = None) -> int:
        removed = self.rate_limiter.clear(identity)
        logger.info(f"Cleared {removed} rate limit entries")
        return removed

    def health(self) -> dict[str, Any]:
        storage_ok = self.store.is_available()
        circuit = get_circuit_breaker(STORAGE_CIRCUIT).state
        limiter = self.rate_limiter.is_healthy()
        healthy = storage_ok and circuit != CircuitState.OPEN and limiter["available"]
        return {
            "status": "healthy" if healthy else "degraded",
            "storage": {"available": storage_ok, "circuit": circuit.value, **self.store.get_info()},
            "rate_limiter": limiter,
            "broadcaster": self.broadcaster.get_stats(),
            "subjects_tracked": len(self.aggregator.subjects()),
        }

    def close(self) -> None:
        self.broadcaster.stop()
        self.duplicate_guard.close()
        if self._forwarder:
            self._forwarder.close()
        self.store.close()
