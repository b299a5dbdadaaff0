"""
Tests for incremental statistics aggregation.
"""

import os
import random
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from conftest import T0, FakeClock

from aggregation import (
    STATS_CACHE_PREFIX,
    AggregationConfig,
    AggregationEngine,
    median_from_histogram,
    median_from_sorted,
    mode_from_histogram,
)
from rating_models import RatingRecord, Trend
from scaling.cache import LocalCache

DAY = 86400


def record(score, accepted_at=T0, subject_id="cafe-1", **kwargs):
    return RatingRecord(
        subject_id=subject_id,
        identity=f"{random.getrandbits(256):064x}",
        score=score,
        submitted_at=accepted_at,
        accepted_at=accepted_at,
        **kwargs,
    )


def apply_all(engine, records):
    stats = None
    for r in records:
        stats = engine.apply(r.subject_id, r.score, record_id=r.id, accepted_at=r.accepted_at)
    return stats


class TestHelpers:
    def test_median_from_sorted(self):
        assert median_from_sorted([]) == 0.0
        assert median_from_sorted([1, 3, 5]) == 3.0
        assert median_from_sorted([1, 2, 4, 5]) == 3.0

    def test_median_from_histogram_matches_sorted(self):
        histogram = {1: 2, 2: 0, 3: 1, 4: 4, 5: 3}
        expanded = sorted(s for s, c in histogram.items() for _ in range(c))
        assert median_from_histogram(histogram) == median_from_sorted(expanded)

    def test_mode_lowest_wins_ties(self):
        assert mode_from_histogram({1: 0, 2: 3, 3: 0, 4: 3, 5: 1}) == 2
        assert mode_from_histogram({1: 0, 2: 0, 3: 0, 4: 0, 5: 0}) == 0


class TestAggregationEngine:
    def test_empty_subject(self):
        stats = AggregationEngine().snapshot("nobody-rated-this")
        assert stats.count == 0
        assert stats.mean == 0.0
        assert stats.distribution == {1: 0, 2: 0, 3: 0, 4: 0, 5: 0}

    def test_basic_statistics(self):
        engine = AggregationEngine()
        stats = apply_all(engine, [record(s) for s in (5, 4, 4, 3, 1)])
        assert stats.count == 5
        assert stats.mean == 3.4
        assert stats.distribution == {1: 1, 2: 0, 3: 1, 4: 2, 5: 1}
        assert stats.median == 4.0
        assert stats.mode == 4
        assert stats.std_dev == 1.36
        assert stats.confidence == 0.25
        assert stats.consistency == 0.32

    def test_distribution_sums_to_count(self):
        engine = AggregationEngine()
        stats = apply_all(engine, [record(random.randint(1, 5)) for _ in range(57)])
        assert sum(stats.distribution.values()) == stats.count == 57

    def test_order_independent(self):
        records = [record(s) for s in (1, 2, 2, 3, 5, 5, 5, 4, 1, 3, 4, 4)]
        shuffled = list(records)
        random.Random(7).shuffle(shuffled)

        a = apply_all(AggregationEngine(), records)
        b = apply_all(AggregationEngine(), shuffled)
        for name in ("count", "mean", "distribution", "std_dev", "median", "mode", "confidence"):
            assert getattr(a, name) == getattr(b, name), name

    def test_rebuild_matches_incremental(self):
        engine = AggregationEngine()
        records = [record(random.randint(1, 5), accepted_at=T0 + i * 3600) for i in range(40)]
        incremental = apply_all(engine, records)
        rebuilt = AggregationEngine().rebuild("cafe-1", records)
        assert rebuilt == incremental

    def test_reapplying_same_revision_is_noop(self):
        engine = AggregationEngine()
        r = record(5)
        engine.apply("cafe-1", 5, record_id=r.id, accepted_at=T0)
        stats = engine.apply("cafe-1", 5, record_id=r.id, accepted_at=T0)
        assert stats.count == 1

    def test_update_in_place(self):
        engine = AggregationEngine()
        r = record(5)
        engine.apply("cafe-1", 5, record_id=r.id, accepted_at=T0)
        stats = engine.apply("cafe-1", 3, 5, record_id=r.id, revision=1, accepted_at=T0 + DAY + 3600)
        assert stats.count == 1
        assert stats.mean == 3.0
        assert stats.distribution[5] == 0
        assert stats.distribution[3] == 1

    def test_update_of_untracked_record_uses_previous_score(self):
        engine = AggregationEngine()
        existing = record(5)
        engine.apply("cafe-1", 5, record_id=existing.id, accepted_at=T0)
        stats = engine.apply("cafe-1", 2, 5, record_id="restored-elsewhere", revision=1, accepted_at=T0 + 10)
        assert stats.count == 1
        assert stats.mean == 2.0

    def test_invalid_score(self):
        with pytest.raises(ValueError):
            AggregationEngine().apply("cafe-1", 6, record_id="x")

    def test_subjects_are_independent(self):
        engine = AggregationEngine()
        engine.apply("cafe-1", 5, record_id="a", accepted_at=T0)
        engine.apply("cafe-2", 1, record_id="b", accepted_at=T0)
        assert engine.snapshot("cafe-1").mean == 5.0
        assert engine.snapshot("cafe-2").mean == 1.0
        assert engine.subjects() == ["cafe-1", "cafe-2"]

    def test_median_paths_agree(self):
        records = [record(random.randint(1, 5)) for _ in range(250)]
        exact = apply_all(AggregationEngine(AggregationConfig(exact_threshold=1000)), records)
        histogram = apply_all(AggregationEngine(AggregationConfig(exact_threshold=10)), records)
        assert exact.median == histogram.median

    def test_trend_improving(self):
        engine = AggregationEngine()
        stats = apply_all(engine, [record(1) for _ in range(20)] + [record(5) for _ in range(10)])
        assert stats.trend == Trend.IMPROVING

    def test_trend_declining(self):
        engine = AggregationEngine()
        stats = apply_all(engine, [record(5) for _ in range(20)] + [record(2) for _ in range(10)])
        assert stats.trend == Trend.DECLINING

    def test_trend_stable_for_few_ratings(self):
        stats = apply_all(AggregationEngine(), [record(1), record(5)])
        assert stats.trend == Trend.STABLE

    def test_weighted_average_favours_recent(self):
        engine = AggregationEngine()
        stats = apply_all(
            engine,
            [record(1, accepted_at=T0), record(5, accepted_at=T0 + 60 * DAY)],
        )
        assert stats.mean == 3.0
        assert stats.weighted_average == 4.2

    def test_confidence_saturates(self):
        stats = apply_all(AggregationEngine(), [record(4) for _ in range(30)])
        assert stats.confidence == 1.0
        assert stats.consistency == 1.0

    def test_publishes_to_cache(self):
        clock = FakeClock()
        cache = LocalCache(clock=clock)
        engine = AggregationEngine(cache=cache, clock=clock)
        engine.apply("cafe-1", 4, record_id="a")
        cached = cache.get(STATS_CACHE_PREFIX + "cafe-1")
        assert cached["count"] == 1
        assert cached["mean"] == 4.0
        assert cached["last_updated"].startswith("2024-01-01")

    def test_forget(self):
        cache = LocalCache()
        engine = AggregationEngine(cache=cache)
        engine.apply("cafe-1", 4, record_id="a", accepted_at=T0)
        engine.forget("cafe-1")
        assert engine.snapshot("cafe-1").count == 0
        assert cache.get(STATS_CACHE_PREFIX + "cafe-1") is None

    def test_rebuild_skips_inactive_and_other_subjects(self):
        records = [
            record(5),
            record(1, active=False),
            record(3, subject_id="cafe-2"),
        ]
        stats = AggregationEngine().rebuild("cafe-1", records)
        assert stats.count == 1
        assert stats.mean == 5.0
