"""
Rating Engine - Core data model

Types shared by every stage of the rating pipeline:
- ClientIdentity: pseudonymous per-client identifier
- RatingSubmission / RatingRecord: incoming and accepted ratings
- SubjectStatistics: derived per-subject aggregate (a cache, never a source of truth)
- ErrorKind / RatingRejection: typed rejection taxonomy
- SecurityEvent: audit record for suspicious activity
"""

import math
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

SCORE_MIN = 1
SCORE_MAX = 5
SCORE_VALUES = tuple(range(SCORE_MIN, SCORE_MAX + 1))

ASPECT_NAMES = ("quality", "taste", "price", "ambiance", "service")


def utc_iso(timestamp: float) -> str:
    """Format an epoch timestamp as an ISO-8601 UTC string."""
    return datetime.fromtimestamp(timestamp, UTC).isoformat()


def parse_timestamp(value: Any) -> float | None:
    """
    Parse an epoch number or ISO-8601 string into epoch seconds.

    Returns None when the value is missing; raises ValueError when it is
    present but unparseable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("timestamp must be a number or ISO-8601 string")
    if isinstance(value, (int, float)):
        try:
            timestamp = float(value)
        except OverflowError:
            raise ValueError("timestamp is out of range") from None
        if not math.isfinite(timestamp):
            raise ValueError("timestamp must be a finite number")
        return timestamp
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed.timestamp()
    raise ValueError("timestamp must be a number or ISO-8601 string")


def mask_identity(identity: str | None) -> str | None:
    """Mask an identity digest for logs and audit output."""
    if not identity:
        return identity
    if len(identity) <= 10:
        return identity
    return identity[:10] + "..."


class IdentityConfidence(Enum):
    """How many signals backed an identity."""

    HIGH = "high"
    LOW = "low"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class ClientIdentity:
    """A pseudonymous, non-reversible client identifier."""

    digest: str
    confidence: IdentityConfidence = IdentityConfidence.HIGH
    signals_used: tuple[str, ...] = ()
    created_at: float = 0.0
    expires_at: float | None = None
    display_name: str | None = None

    @classmethod
    def unavailable(cls, now: float | None = None) -> "ClientIdentity":
        """Explicit value for total identity generation failure."""
        return cls(
            digest="",
            confidence=IdentityConfidence.UNAVAILABLE,
            created_at=now if now is not None else time.time(),
        )

    @property
    def is_available(self) -> bool:
        return self.confidence != IdentityConfidence.UNAVAILABLE and bool(self.digest)

    @property
    def is_low_confidence(self) -> bool:
        return self.confidence == IdentityConfidence.LOW

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.digest,
            "confidence": self.confidence.value,
            "signals_used": list(self.signals_used),
            "created_at": utc_iso(self.created_at),
            "expires_at": utc_iso(self.expires_at) if self.expires_at else None,
            "display_name": self.display_name,
        }


@dataclass
class ClientMeta:
    """Request-side client description used by the suspicious activity heuristics."""

    user_agent: str = ""
    process_id: str | None = None
    ip_address: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ClientMeta":
        data = data or {}
        return cls(
            user_agent=str(data.get("user_agent") or ""),
            process_id=data.get("process_id"),
            ip_address=data.get("ip_address"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_agent": self.user_agent,
            "process_id": self.process_id,
            "ip_address": self.ip_address,
        }


@dataclass
class RatingSubmission:
    """An unvalidated rating as received from a client."""

    subject_id: Any
    identity: Any
    score: Any
    comment: Any = None
    photo_refs: Any = ()
    submitted_at: float | None = None
    aspects: Any = None

    def sanitized(self) -> dict[str, Any]:
        """Loggable view: masked identity, truncated comment."""
        comment = self.comment
        if isinstance(comment, str) and len(comment) > 100:
            comment = comment[:100] + "..."
        return {
            "subject_id": self.subject_id,
            "identity": mask_identity(self.identity) if isinstance(self.identity, str) else None,
            "score": self.score,
            "comment": comment,
            "photo_count": len(self.photo_refs) if isinstance(self.photo_refs, (list, tuple)) else None,
            "submitted_at": self.submitted_at,
        }


@dataclass
class RatingRecord:
    """The persisted, accepted form of a RatingSubmission."""

    subject_id: str
    identity: str
    score: int
    submitted_at: float
    accepted_at: float
    comment: str | None = None
    photo_refs: tuple[str, ...] = ()
    aspects: dict[str, float] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    revision: int = 0
    active: bool = True
    moderation_status: str = "approved"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["photo_refs"] = list(self.photo_refs)
        return data

    def to_public_dict(self) -> dict[str, Any]:
        """Client-facing view with the identity masked."""
        data = self.to_dict()
        data["identity"] = mask_identity(self.identity)
        data["submitted_at"] = utc_iso(self.submitted_at)
        data["accepted_at"] = utc_iso(self.accepted_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RatingRecord":
        return cls(
            id=data["id"],
            subject_id=data["subject_id"],
            identity=data["identity"],
            score=int(data["score"]),
            submitted_at=float(data["submitted_at"]),
            accepted_at=float(data["accepted_at"]),
            comment=data.get("comment"),
            photo_refs=tuple(data.get("photo_refs") or ()),
            aspects=dict(data.get("aspects") or {}),
            revision=int(data.get("revision", 0)),
            active=bool(data.get("active", True)),
            moderation_status=data.get("moderation_status", "approved"),
        )


class Trend(Enum):
    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"


def empty_distribution() -> dict[int, int]:
    return {score: 0 for score in SCORE_VALUES}


@dataclass
class SubjectStatistics:
    """Derived, fully recomputable statistics for one subject."""

    subject_id: str
    count: int = 0
    mean: float = 0.0
    distribution: dict[int, int] = field(default_factory=empty_distribution)
    std_dev: float = 0.0
    median: float = 0.0
    mode: int = 0
    confidence: float = 0.0
    trend: Trend = Trend.STABLE
    weighted_average: float = 0.0
    consistency: float = 0.0
    last_updated: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "count": self.count,
            "mean": self.mean,
            "distribution": {str(k): v for k, v in sorted(self.distribution.items())},
            "std_dev": self.std_dev,
            "median": self.median,
            "mode": self.mode,
            "confidence": self.confidence,
            "trend": self.trend.value,
            "weighted_average": self.weighted_average,
            "consistency": self.consistency,
            "last_updated": utc_iso(self.last_updated) if self.last_updated else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SubjectStatistics":
        last_updated = data.get("last_updated")
        return cls(
            subject_id=data["subject_id"],
            count=int(data.get("count", 0)),
            mean=float(data.get("mean", 0.0)),
            distribution={int(k): int(v) for k, v in (data.get("distribution") or {}).items()}
            or empty_distribution(),
            std_dev=float(data.get("std_dev", 0.0)),
            median=float(data.get("median", 0.0)),
            mode=int(data.get("mode", 0)),
            confidence=float(data.get("confidence", 0.0)),
            trend=Trend(data.get("trend", "stable")),
            weighted_average=float(data.get("weighted_average", 0.0)),
            consistency=float(data.get("consistency", 0.0)),
            last_updated=parse_timestamp(last_updated),
        )


class ErrorKind(Enum):
    """Rejection taxonomy returned to callers."""

    INVALID_FORMAT = "InvalidFormat"
    RATE_LIMITED = "RateLimited"
    DUPLICATE_ACTIVE = "DuplicateActive"
    SUSPICIOUS_ACTIVITY = "SuspiciousActivity"
    IDENTITY_UNAVAILABLE = "IdentityUnavailable"
    STORAGE_FAILURE = "StorageFailure"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.RATE_LIMITED, ErrorKind.DUPLICATE_ACTIVE, ErrorKind.STORAGE_FAILURE)


GENERIC_MESSAGES = {
    ErrorKind.SUSPICIOUS_ACTIVITY: "Your rating could not be accepted.",
    ErrorKind.IDENTITY_UNAVAILABLE: "We could not verify your device. Please try again.",
    ErrorKind.STORAGE_FAILURE: "Temporary problem saving your rating. Please try again shortly.",
}


@dataclass
class RatingRejection:
    """A typed, user-presentable rejection."""

    kind: ErrorKind
    message: str
    retry_after: float | None = None
    stage: str | None = None
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind.value,
            "message": self.message,
        }
        if self.retry_after is not None:
            data["retry_after"] = max(1, int(round(self.retry_after)))
        if self.detail and self.kind == ErrorKind.INVALID_FORMAT:
            data["detail"] = self.detail
        return data


class SecurityReason(Enum):
    AUTOMATION_SIGNATURE = "automation_signature"
    RAPID_SUBMISSION = "rapid_submission"
    CREATION_COINCIDENCE = "creation_coincidence"
    UNUSUAL_PATTERN = "unusual_pattern"


@dataclass
class SecurityEvent:
    """Audit record for a flagged submission."""

    reason: SecurityReason
    subject_id: Any
    identity: str | None
    client: dict[str, Any]
    timestamp: float
    details: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: f"SEC-{uuid.uuid4().hex[:12]}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.reason.value,
            "subject_id": self.subject_id,
            "identity": mask_identity(self.identity),
            "client": self.client,
            "timestamp": utc_iso(self.timestamp),
            "details": self.details,
        }
