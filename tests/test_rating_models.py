"""
Tests for the core rating data model.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from rating_models import (
    ClientIdentity,
    ClientMeta,
    ErrorKind,
    IdentityConfidence,
    RatingRecord,
    RatingRejection,
    RatingSubmission,
    SecurityEvent,
    SecurityReason,
    SubjectStatistics,
    Trend,
    mask_identity,
    parse_timestamp,
)


class TestHelpers:
    def test_mask_identity(self):
        assert mask_identity("abcdef0123456789") == "abcdef0123..."
        assert mask_identity("short") == "short"
        assert mask_identity(None) is None

    def test_parse_timestamp_number(self):
        assert parse_timestamp(1700000000) == 1700000000.0

    def test_parse_timestamp_iso(self):
        assert parse_timestamp("2024-01-01T00:00:00Z") == 1704067200.0

    def test_parse_timestamp_naive_iso_is_utc(self):
        assert parse_timestamp("2024-01-01T00:00:00") == 1704067200.0

    def test_parse_timestamp_missing(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None

    def test_parse_timestamp_invalid(self):
        with pytest.raises(ValueError):
            parse_timestamp("yesterday")
        with pytest.raises(ValueError):
            parse_timestamp(True)

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf"), 10**400])
    def test_parse_timestamp_rejects_unrepresentable_numbers(self, value):
        with pytest.raises(ValueError):
            parse_timestamp(value)


class TestClientIdentity:
    def test_unavailable(self):
        identity = ClientIdentity.unavailable(now=10.0)
        assert not identity.is_available
        assert identity.confidence == IdentityConfidence.UNAVAILABLE
        assert identity.created_at == 10.0

    def test_low_confidence_is_available(self):
        identity = ClientIdentity(digest="ab" * 32, confidence=IdentityConfidence.LOW)
        assert identity.is_available
        assert identity.is_low_confidence

    def test_expiry(self):
        identity = ClientIdentity(digest="ab" * 32, expires_at=100.0)
        assert not identity.is_expired(99.0)
        assert identity.is_expired(100.0)

    def test_to_dict(self):
        identity = ClientIdentity(
            digest="ab" * 32,
            signals_used=("navigator", "screen"),
            created_at=1704067200.0,
            display_name="Ana",
        )
        data = identity.to_dict()
        assert data["identity"] == "ab" * 32
        assert data["confidence"] == "high"
        assert data["signals_used"] == ["navigator", "screen"]
        assert data["expires_at"] is None
        assert data["display_name"] == "Ana"


class TestRatingRecord:
    def test_defaults(self):
        record = RatingRecord(subject_id="s", identity="i", score=4, submitted_at=1.0, accepted_at=2.0)
        assert record.revision == 0
        assert record.active
        assert record.moderation_status == "approved"
        assert len(record.id) == 36

    def test_dict_round_trip_keeps_fields(self):
        record = RatingRecord(
            subject_id="cafe-1",
            identity="ab" * 32,
            score=5,
            submitted_at=1704067200.0,
            accepted_at=1704067201.0,
            comment="Lovely",
            photo_refs=("p1",),
            aspects={"quality": 5},
            revision=2,
        )
        restored = RatingRecord.from_dict(record.to_dict())
        assert restored == record

    def test_public_dict_masks_identity(self):
        record = RatingRecord(subject_id="s", identity="ab" * 32, score=3, submitted_at=1.0, accepted_at=2.0)
        data = record.to_public_dict()
        assert data["identity"] == ("ab" * 32)[:10] + "..."
        assert data["accepted_at"].startswith("1970-01-01T00:00:02")


class TestSubmission:
    def test_sanitized_truncates_comment(self):
        submission = RatingSubmission(subject_id="s", identity="ab" * 32, score=4, comment="x" * 150)
        data = submission.sanitized()
        assert data["comment"] == "x" * 100 + "..."
        assert data["identity"].endswith("...")
        assert data["photo_count"] == 0


class TestSubjectStatistics:
    def test_empty(self):
        stats = SubjectStatistics(subject_id="s")
        assert stats.count == 0
        assert stats.distribution == {1: 0, 2: 0, 3: 0, 4: 0, 5: 0}
        assert stats.trend == Trend.STABLE

    def test_from_dict(self):
        stats = SubjectStatistics(
            subject_id="s",
            count=2,
            mean=4.5,
            distribution={1: 0, 2: 0, 3: 0, 4: 1, 5: 1},
            trend=Trend.IMPROVING,
            last_updated=1704067200.0,
        )
        restored = SubjectStatistics.from_dict(stats.to_dict())
        assert restored == stats


class TestRejection:
    def test_retry_after_rounded_up_to_one(self):
        rejection = RatingRejection(ErrorKind.RATE_LIMITED, "wait", retry_after=0.2)
        assert rejection.to_dict()["retry_after"] == 1

    def test_detail_only_for_invalid_format(self):
        invalid = RatingRejection(ErrorKind.INVALID_FORMAT, "bad", detail="score")
        suspicious = RatingRejection(ErrorKind.SUSPICIOUS_ACTIVITY, "no", detail="automation_signature")
        assert invalid.to_dict()["detail"] == "score"
        assert "detail" not in suspicious.to_dict()

    def test_retryable_kinds(self):
        assert ErrorKind.RATE_LIMITED.retryable
        assert ErrorKind.STORAGE_FAILURE.retryable
        assert not ErrorKind.SUSPICIOUS_ACTIVITY.retryable
        assert not ErrorKind.INVALID_FORMAT.retryable


class TestSecurityEvent:
    def test_to_dict_masks_identity(self):
        event = SecurityEvent(
            reason=SecurityReason.RAPID_SUBMISSION,
            subject_id="s",
            identity="ab" * 32,
            client=ClientMeta(user_agent="Mozilla").to_dict(),
            timestamp=1704067200.0,
        )
        data = event.to_dict()
        assert data["event_type"] == "rapid_submission"
        assert data["identity"].endswith("...")
        assert data["event_id"].startswith("SEC-")
        assert data["client"]["user_agent"] == "Mozilla"
