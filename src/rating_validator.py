"""
Rating Engine - Rating Validator

Runs a submission through the ordered pipeline and either hands an
AcceptInstruction to the commit callback or returns one typed rejection:

    format_check        -> InvalidFormat / IdentityUnavailable
    rate_limit          -> RateLimited
    duplicate_resolve   -> DuplicateActive
    suspicious_activity -> SuspiciousActivity
    business_rules      -> InvalidFormat (rule name in detail)
    commit              -> StorageFailure

format_check and rate_limit run outside any lock. Everything from
duplicate_resolve through the commit callback runs while holding the
rating:<identity>:<subject> lock, so two concurrent submissions for the
same pair cannot both resolve as NEW.

Usage:
    validator = RatingValidator(rate_limiter, duplicate_guard, detector)
    outcome = validator.validate(submission, commit=persist, client_meta=meta)
    if outcome.accepted:
        record = outcome.result
"""

import logging
import math
import os
import re
import threading
import time
from collections import Counter, deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from duplicate_guard import DuplicateGuard, ResolutionKind
from rate_limiter import RATING_SUBMISSION, RateLimiter
from rating_models import (
    ASPECT_NAMES,
    GENERIC_MESSAGES,
    SCORE_MAX,
    SCORE_MIN,
    ClientIdentity,
    ClientMeta,
    ErrorKind,
    RatingRejection,
    RatingSubmission,
    SecurityEvent,
)
from scaling.locking import LocalLockManager, LockManager
from storage.base import StorageError
from suspicious_activity import SuspiciousActivityDetector

logger = logging.getLogger(__name__)

STAGE_FORMAT = "format_check"
STAGE_RATE_LIMIT = "rate_limit"
STAGE_DUPLICATE = "duplicate_resolve"
STAGE_SUSPICIOUS = "suspicious_activity"
STAGE_BUSINESS_RULES = "business_rules"
STAGE_COMMIT = "commit"

STAGES = (STAGE_FORMAT, STAGE_RATE_LIMIT, STAGE_DUPLICATE, STAGE_SUSPICIOUS, STAGE_BUSINESS_RULES)

MODE_CREATE = "create"
MODE_UPDATE = "update"

REPEATED_CHARS = re.compile(r"(.)\1{5,}")
ALL_CAPS = re.compile(r"^[A-Z\s]+$")
URL_PATTERN = re.compile(r"(?:https?://|www\.)\S+", re.IGNORECASE)


@dataclass
class ValidatorConfig:
    max_future_skew: float = 60.0
    max_age: float = 30 * 86400.0
    comment_max: int = 500
    max_photos: int = 2
    subject_id_max: int = 100
    max_quality_gap: float = 2.0
    lock_timeout: float = 0.5
    lock_ttl: float = 10.0
    history_size: int = 1000

    @classmethod
    def from_env(cls) -> "ValidatorConfig":
        return cls(
            max_future_skew=float(os.getenv("RATING_MAX_FUTURE_SKEW", "60")),
            max_age=float(os.getenv("RATING_MAX_AGE", str(30 * 86400))),
            comment_max=int(os.getenv("RATING_COMMENT_MAX", "500")),
            max_photos=int(os.getenv("RATING_MAX_PHOTOS", "2")),
            lock_timeout=float(os.getenv("RATING_LOCK_TIMEOUT", "0.5")),
        )


@dataclass
class AcceptInstruction:
    """What the commit callback must do with an accepted submission."""

    mode: str
    identity: str
    subject_id: str
    submitted_at: float
    existing_id: str | None = None
    previous_score: int | None = None

    @property
    def is_update(self) -> bool:
        return self.mode == MODE_UPDATE


@dataclass
class ValidationOutcome:
    accepted: bool
    stage: str
    rejection: RatingRejection | None = None
    instruction: AcceptInstruction | None = None
    result: Any = None
    security_event: SecurityEvent | None = None


class FormatError(ValueError):
    """A submission field violates its format constraint."""

    def __init__(self, field_name: str, message: str):
        super().__init__(message)
        self.field_name = field_name


class IdentityMissing(Exception):
    pass


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return isinstance(value, int) or math.isfinite(value)


def _is_timestamp(value: Any) -> bool:
    if not _is_number(value):
        return False
    try:
        return math.isfinite(float(value))
    except OverflowError:
        return False


def resolve_identity(value: Any) -> str:
    """
    Return the identity digest carried by a submission.

    Raises:
        IdentityMissing: No usable identity
        FormatError: Identity of the wrong type
    """
    if isinstance(value, ClientIdentity):
        if not value.is_available:
            raise IdentityMissing()
        return value.digest
    if value is None or value == "":
        raise IdentityMissing()
    if not isinstance(value, str):
        raise FormatError("identity", "identity must be a string")
    return value


def check_format(submission: RatingSubmission, config: ValidatorConfig) -> None:
    """
    Validate field types and ranges.

    Raises:
        FormatError: For the first offending field
    """
    subject_id = submission.subject_id
    if not isinstance(subject_id, str) or not subject_id.strip():
        raise FormatError("subject_id", "subject_id is required")
    if len(subject_id) > config.subject_id_max:
        raise FormatError("subject_id", f"subject_id must be at most {config.subject_id_max} characters")

    score = submission.score
    if isinstance(score, bool) or not isinstance(score, int):
        raise FormatError("score", f"score must be a whole number from {SCORE_MIN} to {SCORE_MAX}")
    if not SCORE_MIN <= score <= SCORE_MAX:
        raise FormatError("score", f"score must be a whole number from {SCORE_MIN} to {SCORE_MAX}")

    comment = submission.comment
    if comment is not None:
        if not isinstance(comment, str):
            raise FormatError("comment", "comment must be text")
        if len(comment) > config.comment_max:
            raise FormatError("comment", f"comment must be at most {config.comment_max} characters")

    photo_refs = submission.photo_refs
    if photo_refs is not None:
        if not isinstance(photo_refs, (list, tuple)):
            raise FormatError("photo_refs", "photo_refs must be a list")
        if len(photo_refs) > config.max_photos:
            raise FormatError("photo_refs", f"at most {config.max_photos} photos may be attached")
        if not all(isinstance(ref, str) and ref for ref in photo_refs):
            raise FormatError("photo_refs", "photo_refs must be non-empty strings")

    aspects = submission.aspects
    if aspects is not None:
        if not isinstance(aspects, dict):
            raise FormatError("aspects", "aspects must be an object")
        for name, value in aspects.items():
            if name not in ASPECT_NAMES:
                raise FormatError("aspects", f"unknown aspect '{name}'")
            if not _is_number(value) or not 0 <= value <= SCORE_MAX:
                raise FormatError("aspects", f"aspect '{name}' must be a number from 0 to {SCORE_MAX}")
        quality = aspects.get("quality")
        if quality is not None and abs(score - quality) > config.max_quality_gap:
            raise FormatError("aspects", "overall score is inconsistent with the quality rating")

    if submission.submitted_at is not None and not _is_timestamp(submission.submitted_at):
        raise FormatError("submitted_at", "submitted_at must be a timestamp")


# Business rules: (name, check) where check returns an error message or None


def _not_in_future(submission: RatingSubmission, submitted_at: float, now: float, config: ValidatorConfig):
    if submitted_at > now + config.max_future_skew:
        return "submission time is in the future"
    return None


def _not_stale(submission: RatingSubmission, submitted_at: float, now: float, config: ValidatorConfig):
    if submitted_at < now - config.max_age:
        return "submission is too old"
    return None


def _comment_content(submission: RatingSubmission, submitted_at: float, now: float, config: ValidatorConfig):
    comment = (submission.comment or "").strip()
    if not comment:
        return None
    if REPEATED_CHARS.search(comment):
        return "comment contains repeated characters"
    if ALL_CAPS.match(comment) and any(c.isalpha() for c in comment):
        return "comment should not be written in all capitals"
    if URL_PATTERN.search(comment):
        return "comment must not contain links"
    return None


BUSINESS_RULES: tuple[tuple[str, Callable[..., str | None]], ...] = (
    ("not_in_future", _not_in_future),
    ("not_stale", _not_stale),
    ("comment_content", _comment_content),
)


class RatingValidator:
    """Orchestrates the validation stages and the accept critical section."""

    def __init__(
        self,
        rate_limiter: RateLimiter,
        duplicate_guard: DuplicateGuard,
        detector: SuspiciousActivityDetector,
        lock_manager: LockManager | None = None,
        config: ValidatorConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.rate_limiter = rate_limiter
        self.duplicate_guard = duplicate_guard
        self.detector = detector
        self.locks = lock_manager or LocalLockManager()
        self.config = config or ValidatorConfig()
        self._clock = clock
        self._history: deque[dict[str, Any]] = deque(maxlen=self.config.history_size)
        self._totals: Counter = Counter()
        self._last_validation: float | None = None
        self._stats_lock = threading.Lock()

    def validate(
        self,
        submission: RatingSubmission,
        commit: Callable[[AcceptInstruction], Any],
        client_meta: ClientMeta | None = None,
        now: float | None = None,
    ) -> ValidationOutcome:
        """
        Validate a submission and, if every stage passes, call commit.

        commit runs inside the per-(identity, subject) critical section and
        should persist the record and apply it to the statistics. A
        StorageError or ConnectionError raised by commit becomes a
        StorageFailure rejection. Never raises for pipeline failures.
        """
        now = self._clock() if now is None else now
        outcome = self._run(submission, commit, client_meta or ClientMeta(), now)
        self._record(outcome, now)
        return outcome

    def _run(
        self,
        submission: RatingSubmission,
        commit: Callable[[AcceptInstruction], Any],
        client_meta: ClientMeta,
        now: float,
    ) -> ValidationOutcome:
        # format_check
        try:
            identity = resolve_identity(submission.identity)
            check_format(submission, self.config)
        except IdentityMissing:
            return self._reject(STAGE_FORMAT, ErrorKind.IDENTITY_UNAVAILABLE)
        except FormatError as e:
            return self._reject(STAGE_FORMAT, ErrorKind.INVALID_FORMAT, str(e), detail=e.field_name)

        submission.identity = identity

        # rate_limit
        decision = self.rate_limiter.check_and_record(identity, RATING_SUBMISSION, now)
        if not decision.allowed:
            if decision.reason == "unavailable":
                return self._reject(STAGE_RATE_LIMIT, ErrorKind.STORAGE_FAILURE, retry_after=decision.retry_after)
            minutes = max(1, int(round(decision.retry_after / 60)))
            return self._reject(
                STAGE_RATE_LIMIT,
                ErrorKind.RATE_LIMITED,
                f"Too many ratings. Please try again in {minutes} minute{'s' if minutes != 1 else ''}.",
                retry_after=decision.retry_after,
            )

        lock_name = f"rating:{identity}:{submission.subject_id}"
        try:
            with self.locks.lock(lock_name, timeout=self.config.lock_timeout, ttl=self.config.lock_ttl):
                return self._critical_section(submission, identity, commit, client_meta, now)
        except TimeoutError as e:
            logger.warning(f"Rating lock unavailable for subject {submission.subject_id}: {e}")
            return self._reject(STAGE_DUPLICATE, ErrorKind.STORAGE_FAILURE, retry_after=1.0)

    def _critical_section(
        self,
        submission: RatingSubmission,
        identity: str,
        commit: Callable[[AcceptInstruction], Any],
        client_meta: ClientMeta,
        now: float,
    ) -> ValidationOutcome:
        # duplicate_resolve
        resolution = self.duplicate_guard.resolve(identity, submission.subject_id, now)
        if resolution.kind == ResolutionKind.DENIED:
            if resolution.unavailable:
                return self._reject(STAGE_DUPLICATE, ErrorKind.STORAGE_FAILURE, retry_after=1.0)
            hours = max(1, int(round(resolution.retry_after / 3600)))
            return self._reject(
                STAGE_DUPLICATE,
                ErrorKind.DUPLICATE_ACTIVE,
                f"You already rated this recently. You can update your rating in {hours} hour{'s' if hours != 1 else ''}.",
                retry_after=resolution.retry_after,
            )

        # suspicious_activity
        verdict = self.detector.evaluate(submission, client_meta, now)
        if verdict.flagged:
            outcome = self._reject(STAGE_SUSPICIOUS, ErrorKind.SUSPICIOUS_ACTIVITY)
            outcome.security_event = verdict.event
            return outcome

        # business_rules
        submitted_at = now if submission.submitted_at is None else float(submission.submitted_at)
        for name, rule in BUSINESS_RULES:
            error = rule(submission, submitted_at, now, self.config)
            if error:
                return self._reject(STAGE_BUSINESS_RULES, ErrorKind.INVALID_FORMAT, error.capitalize() + ".", detail=name)

        instruction = AcceptInstruction(
            mode=MODE_UPDATE if resolution.kind == ResolutionKind.UPDATE_ALLOWED else MODE_CREATE,
            identity=identity,
            subject_id=submission.subject_id,
            submitted_at=submitted_at,
            existing_id=resolution.existing_id,
            previous_score=resolution.previous_score,
        )

        try:
            result = commit(instruction)
        except (StorageError, ConnectionError) as e:
            logger.error(f"Commit failed for subject {submission.subject_id}: {e}")
            return self._reject(STAGE_COMMIT, ErrorKind.STORAGE_FAILURE, retry_after=1.0)

        return ValidationOutcome(accepted=True, stage=STAGE_COMMIT, instruction=instruction, result=result)

    def _reject(
        self,
        stage: str,
        kind: ErrorKind,
        message: str | None = None,
        retry_after: float | None = None,
        detail: str | None = None,
    ) -> ValidationOutcome:
        rejection = RatingRejection(
            kind=kind,
            message=message or GENERIC_MESSAGES[kind],
            retry_after=retry_after,
            stage=stage,
            detail=detail,
        )
        return ValidationOutcome(accepted=False, stage=stage, rejection=rejection)

    def _record(self, outcome: ValidationOutcome, now: float) -> None:
        entry = {
            "timestamp": now,
            "accepted": outcome.accepted,
            "stage": outcome.stage,
            "kind": outcome.rejection.kind.value if outcome.rejection else None,
        }
        with self._stats_lock:
            self._history.append(entry)
            self._totals["total"] += 1
            self._totals["accepted" if outcome.accepted else "rejected"] += 1
            if outcome.rejection:
                self._totals[f"kind:{outcome.rejection.kind.value}"] += 1
            self._last_validation = now

        if outcome.rejection:
            logger.info(f"Submission rejected at {outcome.stage}: {outcome.rejection.kind.value}")

    def validation_stats(self) -> dict[str, Any]:
        """Summary counters over all validations since start."""
        with self._stats_lock:
            by_kind = {
                key.split(":", 1)[1]: count for key, count in self._totals.items() if key.startswith("kind:")
            }
            recent = list(self._history)
            return {
                "total": self._totals["total"],
                "accepted": self._totals["accepted"],
                "rejected": self._totals["rejected"],
                "by_kind": by_kind,
                "recent_window": len(recent),
                "recent_accepted": sum(1 for entry in recent if entry["accepted"]),
                "security_events": sum(self.detector.events.totals().values()),
                "last_validation": self._last_validation,
            }

    def history(self, limit: int | None = None) -> list[dict[str, Any]]:
        with self._stats_lock:
            entries = list(reversed(self._history))
        return entries[:limit] if limit else entries
