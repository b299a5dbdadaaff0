"""
Rating Engine - Suspicious Activity Detection

Heuristics applied, in order, to every submission that reaches this stage:

1. Automation signature: the user agent names a bot or browser-automation tool
2. Rapid submission: the same client process submitted less than
   min_interval seconds ago
3. Creation coincidence: the submission lands within creation_window
   seconds of the subject's creation
4. Unusual pattern: three or more aspect scores all 5 or all 1, or top
   quality with bottom price and service

A flag produces a SecurityEvent, appended to a bounded in-memory log,
logged at WARNING and handed to the configured sink.
"""

import logging
import os
import threading
import time
from collections import Counter, deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from monitoring.metrics import metrics
from rating_models import (
    ASPECT_NAMES,
    ClientMeta,
    RatingSubmission,
    SecurityEvent,
    SecurityReason,
)

logger = logging.getLogger(__name__)

AUTOMATION_MARKERS = (
    "bot",
    "crawler",
    "spider",
    "scraper",
    "automated",
    "headless",
    "phantom",
    "selenium",
    "puppeteer",
    "playwright",
    "webdriver",
)

# Prune per-process timestamps once this many are tracked
_MAX_TRACKED_PROCESSES = 10000


@dataclass
class SuspiciousActivityConfig:
    min_interval: float = 1.0
    creation_window: float = 1.0
    log_size: int = 100

    @classmethod
    def from_env(cls) -> "SuspiciousActivityConfig":
        return cls(
            min_interval=float(os.getenv("SUSPICIOUS_MIN_INTERVAL", "1.0")),
            creation_window=float(os.getenv("SUSPICIOUS_CREATION_WINDOW", "1.0")),
            log_size=int(os.getenv("SECURITY_LOG_SIZE", "100")),
        )


@dataclass
class Verdict:
    """Allow (flagged False) or Flag(reason)."""

    flagged: bool
    reason: SecurityReason | None = None
    event: SecurityEvent | None = None


ALLOW = Verdict(flagged=False)


class SecurityEventLog:
    """Bounded, thread-safe log of the most recent security events."""

    def __init__(self, maxlen: int = 100):
        self._events: deque[SecurityEvent] = deque(maxlen=maxlen)
        self._totals: Counter = Counter()
        self._lock = threading.Lock()

    def append(self, event: SecurityEvent) -> None:
        with self._lock:
            self._events.append(event)
            self._totals[event.reason.value] += 1

    def recent(self, limit: int | None = None) -> list[SecurityEvent]:
        """Most recent events, newest first."""
        with self._lock:
            events = list(reversed(self._events))
        return events[:limit] if limit else events

    def totals(self) -> dict[str, int]:
        """Lifetime counts by reason (not bounded by the log size)."""
        with self._lock:
            return dict(self._totals)

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
            self._totals.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


def has_automation_signature(user_agent: str | None) -> bool:
    if not user_agent:
        return False
    lowered = user_agent.lower()
    return any(marker in lowered for marker in AUTOMATION_MARKERS)


def _numeric_aspects(aspects: Any) -> dict[str, float]:
    if not isinstance(aspects, dict):
        return {}
    return {
        name: aspects[name]
        for name in ASPECT_NAMES
        if isinstance(aspects.get(name), (int, float)) and not isinstance(aspects.get(name), bool)
    }


def is_unusual_pattern(aspects: Any) -> bool:
    values = _numeric_aspects(aspects)
    scores = list(values.values())
    if len(scores) >= 3 and all(s == scores[0] for s in scores) and scores[0] in (1, 5):
        return True
    return values.get("quality") == 5 and values.get("price") == 1 and values.get("service") == 1


class SuspiciousActivityDetector:
    """Applies the heuristics and records flagged submissions."""

    def __init__(
        self,
        config: SuspiciousActivityConfig | None = None,
        subject_created_at: Callable[[str], float | None] | None = None,
        event_sink: Callable[[SecurityEvent], None] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or SuspiciousActivityConfig()
        self.events = SecurityEventLog(self.config.log_size)
        self._subject_created_at = subject_created_at or (lambda subject_id: None)
        self._event_sink = event_sink
        self._clock = clock
        self._last_seen: dict[str, float] = {}
        self._lock = threading.Lock()

    def set_event_sink(self, sink: Callable[[SecurityEvent], None] | None) -> None:
        self._event_sink = sink

    def _process_key(self, submission: RatingSubmission, client: ClientMeta) -> str:
        if client.process_id:
            return f"process:{client.process_id}"
        return f"identity:{submission.identity}"

    def _touch(self, key: str, now: float) -> float | None:
        """Record a submission for key; return the previous timestamp."""
        with self._lock:
            previous = self._last_seen.get(key)
            self._last_seen[key] = now
            if len(self._last_seen) > _MAX_TRACKED_PROCESSES:
                horizon = now - self.config.min_interval
                self._last_seen = {k: t for k, t in self._last_seen.items() if t >= horizon}
            return previous

    def evaluate(
        self,
        submission: RatingSubmission,
        client_meta: ClientMeta | None = None,
        now: float | None = None,
    ) -> Verdict:
        """Return ALLOW or a flagged Verdict carrying its SecurityEvent."""
        now = self._clock() if now is None else now
        client = client_meta or ClientMeta()
        previous = self._touch(self._process_key(submission, client), now)

        if has_automation_signature(client.user_agent):
            return self._flag(SecurityReason.AUTOMATION_SIGNATURE, submission, client, now,
                              {"user_agent": client.user_agent})

        if previous is not None and now - previous < self.config.min_interval:
            return self._flag(SecurityReason.RAPID_SUBMISSION, submission, client, now,
                              {"interval_seconds": round(now - previous, 3)})

        created_at = self._subject_created_at(submission.subject_id)
        if created_at is not None and abs(now - created_at) < self.config.creation_window:
            return self._flag(SecurityReason.CREATION_COINCIDENCE, submission, client, now,
                              {"seconds_since_creation": round(now - created_at, 3)})

        if is_unusual_pattern(submission.aspects):
            return self._flag(SecurityReason.UNUSUAL_PATTERN, submission, client, now,
                              {"aspects": _numeric_aspects(submission.aspects)})

        return ALLOW

    def _flag(
        self,
        reason: SecurityReason,
        submission: RatingSubmission,
        client: ClientMeta,
        now: float,
        details: dict[str, Any],
    ) -> Verdict:
        details = {**details, "submission": submission.sanitized()}
        event = SecurityEvent(
            reason=reason,
            subject_id=submission.subject_id,
            identity=submission.identity if isinstance(submission.identity, str) else None,
            client=client.to_dict(),
            timestamp=now,
            details=details,
        )
        self.events.append(event)
        metrics.increment("security_events_total", labels={"reason": reason.value})
        logger.warning(
            f"Submission flagged: {reason.value}",
            extra={
                "event_id": event.event_id,
                "subject_id": submission.subject_id,
                "identity": event.identity,
            },
        )

        if self._event_sink is not None:
            try:
                self._event_sink(event)
            except Exception as e:
                logger.error(f"Security event sink failed: {e}")

        return Verdict(flagged=True, reason=reason, event=event)

    def recent_events(self, limit: int | None = None) -> list[SecurityEvent]:
        return self.events.recent(limit)
