"""
Rating Engine - Aggregation

Maintains per-subject statistics incrementally as ratings are accepted.

Per subject the engine keeps:
- count, integer sum and sum of squares (mean and population variance in O(1))
- a five-bucket histogram (distribution, and median/mode for large subjects)
- the accepted scores in commit order (trend, and exact median below the
  threshold)
- recency-weighted sums for the weighted average (30-day half-life)

Updates in place first un-count the previous score. Applying the same
(record_id, revision) twice is a no-op, so at-least-once delivery of
accepted records is safe. Statistics can always be rebuilt from records.
"""

import logging
import math
import os
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from rating_models import (
    SCORE_VALUES,
    RatingRecord,
    SubjectStatistics,
    Trend,
    empty_distribution,
)
from scaling.cache import Cache

logger = logging.getLogger(__name__)

STATS_CACHE_PREFIX = "stats:"


@dataclass
class AggregationConfig:
    exact_threshold: int = 200
    trend_window: int = 10
    trend_margin: float = 0.5
    confidence_count: int = 20
    half_life_days: float = 30.0

    @classmethod
    def from_env(cls) -> "AggregationConfig":
        return cls(
            exact_threshold=int(os.getenv("AGGREGATION_EXACT_THRESHOLD", "200")),
            trend_window=int(os.getenv("AGGREGATION_TREND_WINDOW", "10")),
            trend_margin=float(os.getenv("AGGREGATION_TREND_MARGIN", "0.5")),
            confidence_count=int(os.getenv("AGGREGATION_CONFIDENCE_COUNT", "20")),
            half_life_days=float(os.getenv("AGGREGATION_HALF_LIFE_DAYS", "30")),
        )


@dataclass
class _SubjectAggregate:
    count: int = 0
    total: int = 0
    total_sq: int = 0
    histogram: dict[int, int] = field(default_factory=empty_distribution)
    # record_id -> (score, accepted_at), in commit order
    scores: OrderedDict = field(default_factory=OrderedDict)
    applied: dict[str, int] = field(default_factory=dict)
    weight_sum: float = 0.0
    weighted_total: float = 0.0
    epoch: float | None = None
    last_updated: float | None = None


def median_from_sorted(scores: list[int]) -> float:
    n = len(scores)
    if n == 0:
        return 0.0
    mid = n // 2
    if n % 2:
        return float(scores[mid])
    return (scores[mid - 1] + scores[mid]) / 2


def _nth_from_histogram(histogram: dict[int, int], n: int) -> int:
    """The n-th (0-based) score in ascending order."""
    seen = 0
    for score in SCORE_VALUES:
        seen += histogram.get(score, 0)
        if n < seen:
            return score
    raise IndexError(n)


def median_from_histogram(histogram: dict[int, int]) -> float:
    n = sum(histogram.values())
    if n == 0:
        return 0.0
    mid = n // 2
    if n % 2:
        return float(_nth_from_histogram(histogram, mid))
    return (_nth_from_histogram(histogram, mid - 1) + _nth_from_histogram(histogram, mid)) / 2


def mode_from_histogram(histogram: dict[int, int]) -> int:
    """Most frequent score; the lowest one wins ties. 0 when empty."""
    mode, best = 0, 0
    for score in SCORE_VALUES:
        if histogram.get(score, 0) > best:
            mode, best = score, histogram[score]
    return mode


class AggregationEngine:
    """
    Single writer per subject.

    Snapshots are written to an optional cache and handed to on_publish while
    the subject lock is still held, so listeners see them in commit order.
    on_publish must not block.
    """

    def __init__(
        self,
        config: AggregationConfig | None = None,
        cache: Cache | None = None,
        clock: Callable[[], float] = time.time,
        on_publish: Callable[[SubjectStatistics], None] | None = None,
    ):
        self.config = config or AggregationConfig()
        self.cache = cache
        self.on_publish = on_publish
        self._clock = clock
        self._aggregates: dict[str, _SubjectAggregate] = {}
        self._snapshots: dict[str, SubjectStatistics] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._meta_lock = threading.Lock()

    def _subject_lock(self, subject_id: str) -> threading.Lock:
        with self._meta_lock:
            lock = self._locks.get(subject_id)
            if lock is None:
                lock = self._locks[subject_id] = threading.Lock()
            return lock

    @property
    def _half_life(self) -> float:
        return self.config.half_life_days * 86400

    def _weight(self, agg: _SubjectAggregate, accepted_at: float) -> float:
        return 2 ** ((accepted_at - agg.epoch) / self._half_life)

    def _add(self, agg: _SubjectAggregate, record_id: str, score: int, accepted_at: float) -> None:
        if agg.epoch is None:
            agg.epoch = accepted_at
        agg.count += 1
        agg.total += score
        agg.total_sq += score * score
        agg.histogram[score] += 1
        weight = self._weight(agg, accepted_at)
        agg.weight_sum += weight
        agg.weighted_total += weight * score
        agg.scores[record_id] = (score, accepted_at)
        agg.scores.move_to_end(record_id)

    def _remove(self, agg: _SubjectAggregate, record_id: str, fallback_score: int | None) -> None:
        tracked = agg.scores.pop(record_id, None)
        if tracked is not None:
            score, accepted_at = tracked
            weight = self._weight(agg, accepted_at)
            agg.weight_sum -= weight
            agg.weighted_total -= weight * score
        elif fallback_score is not None and agg.histogram.get(fallback_score, 0) > 0:
            logger.warning(f"Un-counting untracked record {record_id}; statistics should be rebuilt")
            score = fallback_score
        else:
            return
        agg.count -= 1
        agg.total -= score
        agg.total_sq -= score * score
        agg.histogram[score] -= 1

    def apply(
        self,
        subject_id: str,
        new_score: int,
        previous_score: int | None = None,
        *,
        record_id: str,
        revision: int = 0,
        accepted_at: float | None = None,
    ) -> SubjectStatistics:
        """
        Count an accepted rating and return the new snapshot.

        Args:
            subject_id: Subject being rated
            new_score: Accepted score (1-5)
            previous_score: Score being replaced on update-in-place
            record_id: Accepted record id
            revision: Record revision; re-applying a seen revision is a no-op
            accepted_at: Commit timestamp (defaults to now)
        """
        if new_score not in SCORE_VALUES:
            raise ValueError(f"score must be in {SCORE_VALUES[0]}..{SCORE_VALUES[-1]}")
        accepted_at = self._clock() if accepted_at is None else accepted_at

        with self._subject_lock(subject_id):
            agg = self._aggregates.setdefault(subject_id, _SubjectAggregate())
            seen = agg.applied.get(record_id)
            if seen is not None and revision <= seen:
                logger.debug(f"Record {record_id} revision {revision} already applied")
                return self._snapshots.get(subject_id) or self._compute(subject_id, agg)

            if record_id in agg.scores or previous_score is not None:
                self._remove(agg, record_id, previous_score)
            self._add(agg, record_id, new_score, accepted_at)
            agg.applied[record_id] = revision
            agg.last_updated = accepted_at
            return self._publish(subject_id, agg)

    def rebuild(self, subject_id: str, records: Iterable[RatingRecord]) -> SubjectStatistics:
        """Recompute a subject from its active records in commit order."""
        with self._subject_lock(subject_id):
            agg = _SubjectAggregate()
            for record in records:
                if not record.active or record.subject_id != subject_id:
                    continue
                if record.id in agg.scores:
                    self._remove(agg, record.id, None)
                self._add(agg, record.id, record.score, record.accepted_at)
                agg.applied[record.id] = record.revision
                agg.last_updated = record.accepted_at
            self._aggregates[subject_id] = agg
            logger.info(f"Rebuilt statistics for subject {subject_id} ({agg.count} ratings)")
            return self._publish(subject_id, agg)

    def snapshot(self, subject_id: str) -> SubjectStatistics:
        snapshot = self._snapshots.get(subject_id)
        if snapshot is None:
            return SubjectStatistics(subject_id=subject_id)
        return snapshot

    def forget(self, subject_id: str) -> None:
        with self._subject_lock(subject_id):
            self._aggregates.pop(subject_id, None)
            self._snapshots.pop(subject_id, None)
            if self.cache is not None:
                self.cache.delete(STATS_CACHE_PREFIX + subject_id)

    def subjects(self) -> list[str]:
        return sorted(self._aggregates)

    def _publish(self, subject_id: str, agg: _SubjectAggregate) -> SubjectStatistics:
        snapshot = self._compute(subject_id, agg)
        self._snapshots[subject_id] = snapshot
        if self.cache is not None:
            try:
                self.cache.set(STATS_CACHE_PREFIX + subject_id, snapshot.to_dict())
            except Exception as e:
                logger.warning(f"Statistics cache write failed for {subject_id}: {e}")
        if self.on_publish is not None:
            self.on_publish(snapshot)
        return snapshot

    def _compute(self, subject_id: str, agg: _SubjectAggregate) -> SubjectStatistics:
        n = agg.count
        if n == 0:
            return SubjectStatistics(subject_id=subject_id, last_updated=agg.last_updated)

        mean = agg.total / n
        variance = max(0.0, (n * agg.total_sq - agg.total * agg.total) / (n * n))
        std_dev = math.sqrt(variance)

        if n < self.config.exact_threshold:
            ordered = sorted(score for score, _ in agg.scores.values())
            median = median_from_sorted(ordered)
        else:
            median = median_from_histogram(agg.histogram)

        window = [score for score, _ in list(agg.scores.values())[-self.config.trend_window:]]
        recent_mean = sum(window) / len(window) if window else mean
        if recent_mean - mean > self.config.trend_margin:
            trend = Trend.IMPROVING
        elif mean - recent_mean > self.config.trend_margin:
            trend = Trend.DECLINING
        else:
            trend = Trend.STABLE

        weighted = agg.weighted_total / agg.weight_sum if agg.weight_sum > 0 else mean

        return SubjectStatistics(
            subject_id=subject_id,
            count=n,
            mean=round(mean, 1),
            distribution=dict(agg.histogram),
            std_dev=round(std_dev, 2),
            median=round(median, 1),
            mode=mode_from_histogram(agg.histogram),
            confidence=round(min(1.0, n / self.config.confidence_count), 2),
            trend=trend,
            weighted_average=round(weighted, 1),
            consistency=round(max(0.0, 1 - std_dev / 2), 2),
            last_updated=agg.last_updated,
        )
