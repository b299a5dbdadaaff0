"""
Tests for the duplicate guard.
"""

import os
import sys
import time
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from conftest import T0, FakeClock, sample_identity

from duplicate_guard import DuplicateGuard, DuplicateGuardConfig, ResolutionKind
from rating_models import RatingRecord
from storage.base import StorageReadError
from storage.memory import MemoryRatingStore


@pytest.fixture
def store():
    return MemoryRatingStore()


@pytest.fixture
def guard(store):
    guard = DuplicateGuard(store, clock=FakeClock())
    yield guard
    guard.close()


def add_rating(store, identity, subject_id="cafe-1", score=5, accepted_at=T0):
    record = RatingRecord(
        subject_id=subject_id, identity=identity, score=score, submitted_at=accepted_at, accepted_at=accepted_at
    )
    store.insert(record)
    return record


class TestDuplicateGuard:
    def test_new(self, guard):
        resolution = guard.resolve(sample_identity(1), "cafe-1", now=T0)
        assert resolution.kind == ResolutionKind.NEW
        assert resolution.allowed
        assert resolution.existing_id is None

    def test_denied_inside_cooldown(self, store, guard):
        add_rating(store, sample_identity(1))
        resolution = guard.resolve(sample_identity(1), "cafe-1", now=T0 + 3600)
        assert resolution.kind == ResolutionKind.DENIED
        assert not resolution.unavailable
        assert resolution.retry_after == pytest.approx(23 * 3600)

    def test_update_allowed_after_cooldown(self, store, guard):
        record = add_rating(store, sample_identity(1), score=5)
        resolution = guard.resolve(sample_identity(1), "cafe-1", now=T0 + 86400)
        assert resolution.kind == ResolutionKind.UPDATE_ALLOWED
        assert resolution.existing_id == record.id
        assert resolution.previous_score == 5

    def test_other_subject_is_new(self, store, guard):
        add_rating(store, sample_identity(1), subject_id="cafe-1")
        assert guard.resolve(sample_identity(1), "cafe-2", now=T0).kind == ResolutionKind.NEW

    def test_other_identity_is_new(self, store, guard):
        add_rating(store, sample_identity(1))
        assert guard.resolve(sample_identity(2), "cafe-1", now=T0).kind == ResolutionKind.NEW

    def test_cooldown_restarts_on_update(self, store, guard):
        record = add_rating(store, sample_identity(1))
        record.accepted_at = T0 + 86400
        record.revision = 1
        store.update(record)
        resolution = guard.resolve(sample_identity(1), "cafe-1", now=T0 + 86400 + 60)
        assert resolution.kind == ResolutionKind.DENIED

    def test_can_rate(self, store, guard):
        add_rating(store, sample_identity(1))
        assert not guard.can_rate(sample_identity(1), "cafe-1", now=T0 + 1)
        assert guard.can_rate(sample_identity(2), "cafe-1", now=T0 + 1)

    def test_storage_error_is_unavailable(self):
        store = MagicMock()
        store.find_active.side_effect = StorageReadError("connection lost")
        guard = DuplicateGuard(store)
        try:
            resolution = guard.resolve(sample_identity(1), "cafe-1", now=T0)
        finally:
            guard.close()
        assert resolution.kind == ResolutionKind.DENIED
        assert resolution.unavailable

    def test_timeout_is_unavailable(self):
        store = MagicMock()
        store.find_active.side_effect = lambda *args: time.sleep(0.3)
        guard = DuplicateGuard(store, config=DuplicateGuardConfig(lookup_timeout=0.05))
        try:
            resolution = guard.resolve(sample_identity(1), "cafe-1", now=T0)
        finally:
            guard.close()
        assert resolution.kind == ResolutionKind.DENIED
        assert resolution.unavailable

    def test_closed_guard_is_unavailable(self, store):
        guard = DuplicateGuard(store)
        guard.close()
        assert guard.resolve(sample_identity(1), "cafe-1", now=T0).unavailable

    def test_config_from_env(self, monkeypatch):
        monkeypatch.setenv("RATING_COOLDOWN_SECONDS", "600")
        assert DuplicateGuardConfig.from_env().cooldown_seconds == 600
