"""
Shared utilities for the rating engine API.

This module contains common utilities, decorators, and helpers
used across all API blueprints.
"""

import ipaddress
import os
import secrets
from functools import wraps
from typing import Any

from flask import jsonify, request

from rating_models import ErrorKind, RatingRejection

# ============================================================
# Security Configuration
# ============================================================

# API key protecting the administrative routes
API_KEY = os.getenv("RATING_ENGINE_API_KEY", None)
# Admin routes require a key unless RATING_ENGINE_REQUIRE_AUTH=false
API_KEY_REQUIRED = os.getenv("RATING_ENGINE_REQUIRE_AUTH", "true").lower() == "true"

MAX_RESULTS = 100

# HTTP status for each rejection kind
STATUS_BY_KIND = {
    ErrorKind.INVALID_FORMAT: 400,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.DUPLICATE_ACTIVE: 409,
    ErrorKind.SUSPICIOUS_ACTIVITY: 403,
    ErrorKind.IDENTITY_UNAVAILABLE: 503,
    ErrorKind.STORAGE_FAILURE: 503,
}


# ============================================================
# Validation Utilities
# ============================================================

def bounded_limit(value: Any, default: int = 20, max_limit: int = MAX_RESULTS) -> int:
    """Parse a limit query parameter and clamp it to 1..max_limit."""
    try:
        limit = int(value) if value not in (None, "") else default
    except (TypeError, ValueError):
        limit = default
    return max(1, min(limit, max_limit))


def validate_json_schema(
    data: dict[str, Any],
    required_fields: dict[str, type],
    optional_fields: dict[str, type] | None = None,
    max_lengths: dict[str, int] | None = None
) -> tuple:
    """
    Validate JSON payload against a simple schema.

    Args:
        data: The JSON data to validate
        required_fields: Dict mapping field names to expected types
        optional_fields: Dict mapping optional field names to expected types
        max_lengths: Dict mapping field names to maximum string lengths

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(data, dict):
        return False, "Request body must be a JSON object"

    for field_name, expected_type in required_fields.items():
        if field_name not in data:
            return False, f"Missing required field: {field_name}"
        if not isinstance(data[field_name], expected_type):
            return False, f"Field '{field_name}' must be of type {expected_type.__name__}"

    if optional_fields:
        for field_name, expected_type in optional_fields.items():
            if field_name in data and data[field_name] is not None:
                if not isinstance(data[field_name], expected_type):
                    return False, f"Field '{field_name}' must be of type {expected_type.__name__}"

    if max_lengths:
        for field_name, max_len in max_lengths.items():
            if field_name in data and isinstance(data[field_name], str):
                if len(data[field_name]) > max_len:
                    return False, f"Field '{field_name}' exceeds maximum length of {max_len}"

    return True, None


def invalid_request(message: str, field_name: str | None = None):
    """400 response in the same shape as a pipeline InvalidFormat rejection."""
    rejection = RatingRejection(ErrorKind.INVALID_FORMAT, message, detail=field_name)
    return jsonify({"accepted": False, "error": rejection.to_dict()}), 400


def rejection_response(rejection: RatingRejection, body: dict[str, Any] | None = None):
    """JSON response, status and Retry-After header for a rejection."""
    response = jsonify(body or {"accepted": False, "error": rejection.to_dict()})
    response.status_code = STATUS_BY_KIND.get(rejection.kind, 400)
    if rejection.retry_after is not None:
        response.headers["Retry-After"] = str(max(1, int(round(rejection.retry_after))))
    return response


# ============================================================
# Client Utilities
# ============================================================

def is_valid_ip(ip_str: str) -> bool:
    try:
        ipaddress.ip_address(ip_str.strip())
        return True
    except (ValueError, AttributeError):
        return False


# SECURITY: Only trust X-Forwarded-For from these proxies
TRUSTED_PROXIES = set(
    ip.strip() for ip in os.getenv("RATING_ENGINE_TRUSTED_PROXIES", "").split(",")
    if ip.strip()
)


def get_client_ip() -> str:
    """
    Get client IP address, considering proxies.

    X-Forwarded-For is only honoured when the request comes from a trusted
    proxy; the rightmost untrusted address is used.
    """
    remote_addr = request.remote_addr or 'unknown'

    if TRUSTED_PROXIES and remote_addr in TRUSTED_PROXIES:
        xff = request.headers.get('X-Forwarded-For')
        if xff:
            parts = [p.strip() for p in xff.split(',')]
            for ip in reversed(parts):
                if ip and is_valid_ip(ip) and ip not in TRUSTED_PROXIES:
                    return ip

    return remote_addr


# ============================================================
# Authentication Decorator
# ============================================================

def require_api_key(f):
    """Decorator to require API key authentication."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not API_KEY_REQUIRED:
            return f(*args, **kwargs)

        provided_key = request.headers.get('X-API-Key')

        if not provided_key:
            return jsonify({
                "error": "API key required",
                "hint": "Provide API key in X-API-Key header"
            }), 401

        if not API_KEY:
            return jsonify({
                "error": "Server API key not configured",
                "hint": "Set RATING_ENGINE_API_KEY environment variable"
            }), 503

        if not secrets.compare_digest(provided_key, API_KEY):
            return jsonify({"error": "Invalid API key"}), 403

        return f(*args, **kwargs)
    return decorated_function
