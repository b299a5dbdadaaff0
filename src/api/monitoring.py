"""
Monitoring and metrics API endpoints.

This blueprint provides:
- /metrics: Prometheus-compatible metrics endpoint
- /metrics/json: JSON format metrics
- /health: Basic health check
- /health/live: Kubernetes liveness probe
- /health/ready: Kubernetes readiness probe
"""

import logging
import time

from flask import Blueprint, Response, jsonify

from api.state import get_engine
from monitoring import metrics

logger = logging.getLogger(__name__)

monitoring_bp = Blueprint('monitoring', __name__)

# Track startup time
_startup_time = time.time()


@monitoring_bp.route('/metrics', methods=['GET'])
def prometheus_metrics():
    """Metrics in Prometheus text exposition format."""
    _update_dynamic_metrics()
    return Response(
        metrics.to_prometheus(),
        mimetype='text/plain; charset=utf-8'
    )


@monitoring_bp.route('/metrics/json', methods=['GET'])
def json_metrics():
    _update_dynamic_metrics()
    return jsonify(metrics.get_all())


@monitoring_bp.route('/health', methods=['GET'])
def health():
    """
    Basic health check endpoint.

    Returns service status and component checks.
    """
    checks = get_engine().health()
    return jsonify({
        "status": checks["status"],
        "service": "Rating Engine API",
        "version": _get_version(),
        "uptime_seconds": time.time() - _startup_time,
        "checks": checks,
    })


@monitoring_bp.route('/health/live', methods=['GET'])
def liveness():
    """
    Kubernetes liveness probe.

    Returns 200 if the application is running.
    """
    return jsonify({"status": "alive"})


@monitoring_bp.route('/health/ready', methods=['GET'])
def readiness():
    """
    Kubernetes readiness probe.

    Ready only when storage and rate-limit state are reachable, since
    submissions fail closed without them.
    """
    issues = []
    engine = get_engine()

    try:
        if not engine.store.is_available():
            issues.append("storage: not available")
    except Exception as e:
        issues.append(f"storage: {e}")

    try:
        if not engine.rate_limiter.is_healthy()["available"]:
            issues.append("rate_limiter: not available")
    except Exception as e:
        issues.append(f"rate_limiter: {e}")

    if issues:
        return jsonify({
            "status": "not_ready",
            "issues": issues,
        }), 503

    return jsonify({"status": "ready"})


def _get_version() -> str:
    try:
        from importlib.metadata import version
        return version("rating-engine")
    except Exception:
        return "0.1.0"


def _update_dynamic_metrics():
    """Update gauges before export."""
    try:
        engine = get_engine()
        metrics.set_gauge("subjects_tracked", len(engine.aggregator.subjects()))
        metrics.set_gauge("security_event_log_size", len(engine.detector.events))
        metrics.set_gauge("broadcast_queue_size", engine.broadcaster.get_stats()["queued"])
        metrics.set_gauge("storage_available", 1 if engine.store.is_available() else 0)
    except Exception as e:
        logger.warning(f"Could not update dynamic metrics: {e}")
        metrics.set_gauge("storage_available", 0)
