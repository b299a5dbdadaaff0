"""
Rating Engine - Update Broadcaster

Pushes statistics snapshots and security events to subscribers.

Delivery happens on a background worker thread fed by a queue, so the
accept path only enqueues. Each callback is isolated: an exception from one
subscriber is logged and counted and never reaches the publisher or the
other subscribers.

Statistics waiting for delivery are coalesced per subject, keeping the
latest snapshot. Security events are queued one by one and dropped only
when the queue is full.

Topics:
    statistics  SubjectStatistics, optionally filtered by subject id
    security    SecurityEvent

Usage:
    broadcaster = UpdateBroadcaster()
    broadcaster.start()

    unsubscribe = broadcaster.subscribe(render, subject_id="cafe-1")
    broadcaster.publish("cafe-1", stats)
    ...
    unsubscribe()
    broadcaster.stop()
"""

import logging
import os
import queue
import threading
import time
from collections.abc import Callable
from typing import Any

import requests

from monitoring.metrics import metrics
from rating_models import SecurityEvent, SubjectStatistics
from retry import RetryableError, is_retryable_status_code, retry_with_backoff

logger = logging.getLogger(__name__)

TOPIC_STATISTICS = "statistics"
TOPIC_SECURITY = "security"

StatisticsCallback = Callable[[SubjectStatistics], None]
SecurityCallback = Callable[[SecurityEvent], None]


class _Subscription:
    __slots__ = ("callback", "subject_id", "active")

    def __init__(self, callback: Callable, subject_id: str | None = None):
        self.callback = callback
        self.subject_id = subject_id
        self.active = True

    def matches(self, subject_id: str | None) -> bool:
        return self.active and (self.subject_id is None or self.subject_id == subject_id)


class UpdateBroadcaster:
    """
    Fan-out of statistics changes and security events.

    With asynchronous=False every publish is delivered inline, which is
    convenient for tests and single-threaded tools.
    """

    def __init__(self, asynchronous: bool = True, max_queue_size: int = 10000):
        self.asynchronous = asynchronous
        self._queue: queue.Queue[tuple[str, str | None, Any]] = queue.Queue(maxsize=max_queue_size)
        self._subscriptions: dict[str, list[_Subscription]] = {TOPIC_STATISTICS: [], TOPIC_SECURITY: []}
        self._lock = threading.Lock()
        self._delivery_lock = threading.RLock()
        self._pending: dict[str, SubjectStatistics] = {}
        self._running = False
        self._worker_thread: threading.Thread | None = None

        self._stats = {
            "published": 0,
            "delivered": 0,
            "failures": 0,
            "dropped": 0,
            "coalesced": 0,
        }

    def start(self) -> None:
        """Start the background delivery worker."""
        if self._running or not self.asynchronous:
            return
        self._running = True
        self._worker_thread = threading.Thread(target=self._worker_loop, name="broadcaster", daemon=True)
        self._worker_thread.start()
        logger.info("Update broadcaster started")

    def stop(self) -> None:
        """Stop the worker after delivering everything already queued."""
        self._running = False
        if self._worker_thread:
            self._worker_thread.join(timeout=5)
            self._worker_thread = None
        self.flush()
        logger.info("Update broadcaster stopped")

    @property
    def running(self) -> bool:
        return self._running

    def _add(self, topic: str, subscription: _Subscription) -> Callable[[], None]:
        with self._lock:
            self._subscriptions[topic].append(subscription)

        def unsubscribe() -> None:
            with self._lock:
                subscription.active = False
                if subscription in self._subscriptions[topic]:
                    self._subscriptions[topic].remove(subscription)

        return unsubscribe

    def subscribe(self, callback: StatisticsCallback, subject_id: str | None = None) -> Callable[[], None]:
        """
        Receive statistics snapshots.

        Args:
            callback: Called with each new SubjectStatistics
            subject_id: Only receive updates for this subject (all when None)

        Returns:
            Function that removes the subscription
        """
        return self._add(TOPIC_STATISTICS, _Subscription(callback, subject_id))

    def subscribe_security(self, callback: SecurityCallback) -> Callable[[], None]:
        return self._add(TOPIC_SECURITY, _Subscription(callback))

    def subscriber_count(self, topic: str = TOPIC_STATISTICS) -> int:
        with self._lock:
            return len(self._subscriptions[topic])

    def publish(self, subject_id: str, stats: SubjectStatistics) -> None:
        """
        Queue a statistics snapshot.

        A snapshot for a subject that is already waiting replaces the queued
        one; subscribers always end on the latest.
        """
        self._stats["published"] += 1
        if self._deliver_inline():
            self._deliver(TOPIC_STATISTICS, subject_id, stats)
            return
        with self._lock:
            waiting = subject_id in self._pending
            self._pending[subject_id] = stats
        if waiting:
            self._stats["coalesced"] += 1
            return
        try:
            self._queue.put_nowait((TOPIC_STATISTICS, subject_id, None))
        except queue.Full:
            # Left in _pending; the worker sweeps it when the queue drains
            logger.debug(f"Broadcast queue full, deferring statistics for {subject_id}")

    def publish_security(self, event: SecurityEvent) -> None:
        self._stats["published"] += 1
        if self._deliver_inline():
            self._deliver(TOPIC_SECURITY, None, event)
            return
        try:
            self._queue.put_nowait((TOPIC_SECURITY, None, event))
        except queue.Full:
            self._stats["dropped"] += 1
            logger.warning("Broadcast queue full, dropping security event")

    def _deliver_inline(self) -> bool:
        if self.asynchronous and not self._running:
            logger.debug("Broadcaster not running; delivering inline")
        return not self.asynchronous or not self._running

    def flush(self) -> None:
        """Deliver every queued update on the calling thread."""
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            self._dispatch(*item)
        self._sweep_pending()

    def _worker_loop(self) -> None:
        while self._running:
            try:
                item = self._queue.get(timeout=0.5)
            except queue.Empty:
                self._sweep_pending()
                continue
            self._dispatch(*item)

    def _dispatch(self, topic: str, subject_id: str | None, payload: Any) -> None:
        if topic == TOPIC_STATISTICS:
            self._deliver_pending(subject_id)
        else:
            self._deliver(topic, subject_id, payload)

    def _deliver_pending(self, subject_id: str) -> None:
        # Take and deliver under one lock: per-subject delivery follows publish order
        with self._delivery_lock:
            with self._lock:
                stats = self._pending.pop(subject_id, None)
            if stats is not None:
                self._deliver(TOPIC_STATISTICS, subject_id, stats)

    def _sweep_pending(self) -> None:
        with self._lock:
            subjects = list(self._pending)
        for subject_id in subjects:
            self._deliver_pending(subject_id)

    def _deliver(self, topic: str, subject_id: str | None, payload: Any) -> None:
        with self._lock:
            targets = [s for s in self._subscriptions[topic] if s.matches(subject_id)]

        with self._delivery_lock:
            for subscription in targets:
                try:
                    subscription.callback(payload)
                    self._stats["delivered"] += 1
                except Exception as e:
                    self._stats["failures"] += 1
                    metrics.increment("broadcast_failures_total", labels={"topic": topic})
                    logger.error(f"Subscriber failed on {topic} update: {e}")

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            subscribers = {topic: len(subs) for topic, subs in self._subscriptions.items()}
            pending = len(self._pending)
        return {
            **self._stats,
            "queued": self._queue.qsize(),
            "pending": pending,
            "running": self._running,
            "subscribers": subscribers,
        }


class WebhookSecurityForwarder:
    """
    Security-topic subscriber that posts events to an external audit endpoint.

    Delivery errors are logged; the broadcaster counts them as subscriber
    failures.
    """

    def __init__(
        self,
        url: str,
        api_key: str | None = None,
        timeout: float = 5.0,
        session: requests.Session | None = None,
    ):
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers["Content-Type"] = "application/json"
        self._session.headers["User-Agent"] = "RatingEngine-Security/1.0"
        if api_key:
            self._session.headers["Authorization"] = f"Bearer {api_key}"
        self.sent = 0

    @classmethod
    def from_env(cls) -> "WebhookSecurityForwarder | None":
        url = os.getenv("SECURITY_WEBHOOK_URL")
        if not url:
            return None
        return cls(url, api_key=os.getenv("SECURITY_WEBHOOK_API_KEY"))

    @retry_with_backoff(
        max_retries=2,
        base_delay=0.5,
        max_delay=5.0,
        retryable_exceptions=(RetryableError, requests.ConnectionError, requests.Timeout),
    )
    def _post(self, payload: dict[str, Any]) -> None:
        response = self._session.post(self.url, json=payload, timeout=self.timeout)
        if is_retryable_status_code(response.status_code):
            raise RetryableError(f"Audit endpoint returned {response.status_code}")
        response.raise_for_status()

    def __call__(self, event: SecurityEvent) -> None:
        payload = {"source": "rating-engine", "sent_at": time.time(), "event": event.to_dict()}
        self._post(payload)
        self.sent += 1

    def close(self) -> None:
        self._session.close()
