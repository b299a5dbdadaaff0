"""
Monitoring and metrics infrastructure for the rating engine.

This package provides:
- Application metrics collection (counters, gauges, histograms)
- Structured logging with JSON output and identity masking
- Request timing middleware

Usage:
    from monitoring import metrics, get_logger

    metrics.increment("ratings_rejected_total", labels={"kind": "RateLimited"})
    metrics.timing("rating_submission_duration_ms", 4.2)

    logger = get_logger(__name__)
    logger.warning("Submission flagged", extra={"identity": digest})
"""

from monitoring.logging import configure_logging, get_logger
from monitoring.metrics import MetricsCollector, metrics
from monitoring.middleware import setup_request_logging, timed

__all__ = [
    "MetricsCollector",
    "metrics",
    "get_logger",
    "configure_logging",
    "setup_request_logging",
    "timed",
]
