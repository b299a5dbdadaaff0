"""
Rating API endpoints.

This blueprint provides:
- POST /identity: Resolve the client identity from environment signals
- POST /subjects: Register a subject and its creation time
- POST /subjects/<subject_id>/ratings: Submit a rating
- GET  /subjects/<subject_id>/can-rate: Whether an identity may rate now
- GET  /subjects/<subject_id>/statistics: Current statistics snapshot
- POST /subjects/<subject_id>/statistics/rebuild: Recompute from records (admin)
- GET  /security/events: Recent security events (admin)
- GET  /validation/stats: Validation summary (admin)
- GET/DELETE /rate-limits[/<key>]: Inspect or clear rate limits (admin)
"""

import logging

from flask import Blueprint, jsonify, request

from api.state import get_engine
from api.utils import (
    bounded_limit,
    get_client_ip,
    invalid_request,
    rejection_response,
    require_api_key,
    validate_json_schema,
)
from fingerprint import InvalidDisplayName
from rating_models import GENERIC_MESSAGES, ErrorKind, RatingRejection, parse_timestamp

logger = logging.getLogger(__name__)

ratings_bp = Blueprint('ratings', __name__)


@ratings_bp.route('/identity', methods=['POST'])
def resolve_identity():
    """
    Resolve (and persist) the identity for the calling client.

    Request body:
        {"signals": {...}, "display_name": "Ana", "session_key": "..."}
    """
    data = request.get_json(silent=True)
    is_valid, error = validate_json_schema(
        data,
        required_fields={"signals": dict},
        optional_fields={"display_name": str, "session_key": str},
        max_lengths={"session_key": 200},
    )
    if not is_valid:
        return invalid_request(error)

    signals = dict(data["signals"])
    signals.setdefault("user_agent", request.headers.get("User-Agent", ""))

    try:
        identity = get_engine().get_client_identity(
            signals,
            session_key=data.get("session_key"),
            display_name=data.get("display_name"),
        )
    except InvalidDisplayName as e:
        return invalid_request(str(e), "display_name")

    if not identity.is_available:
        kind = ErrorKind.IDENTITY_UNAVAILABLE
        return rejection_response(RatingRejection(kind, GENERIC_MESSAGES[kind]))

    return jsonify(identity.to_dict())


@ratings_bp.route('/subjects', methods=['POST'])
def register_subject():
    """
    Register a subject.

    Request body:
        {"subject_id": "cafe-1", "created_at": 1700000000, "identity": "..."}
    """
    data = request.get_json(silent=True)
    is_valid, error = validate_json_schema(
        data,
        required_fields={"subject_id": str},
        optional_fields={"identity": str},
        max_lengths={"subject_id": 100},
    )
    if not is_valid:
        return invalid_request(error, "subject_id")

    try:
        created_at = parse_timestamp(data.get("created_at"))
    except ValueError as e:
        return invalid_request(f"created_at: {e}", "created_at")

    try:
        registration = get_engine().register_subject(
            data["subject_id"], created_at=created_at, identity=data.get("identity")
        )
    except ValueError as e:
        return invalid_request(str(e), "subject_id")

    if not registration.accepted:
        return rejection_response(registration.rejection)

    return jsonify({
        "subject_id": registration.subject_id,
        "created_at": registration.created_at,
    }), 201


@ratings_bp.route('/subjects/<subject_id>/ratings', methods=['POST'])
def submit_rating(subject_id: str):
    """
    Submit a rating for a subject.

    Request body:
        {
            "identity": "<digest>",
            "score": 4,
            "comment": "optional",
            "photo_refs": ["ref-1"],
            "aspects": {"quality": 4, "service": 5},
            "submitted_at": "2024-01-01T12:00:00Z",
            "client": {"user_agent": "...", "process_id": "..."}
        }

    Returns:
        201 with the record and statistics on create, 200 on update,
        otherwise the typed rejection with its HTTP status
    """
    data = request.get_json(silent=True)
    is_valid, error = validate_json_schema(data, required_fields={}, optional_fields={"client": dict})
    if not is_valid:
        return invalid_request(error)

    try:
        submitted_at = parse_timestamp(data.get("submitted_at"))
    except ValueError as e:
        return invalid_request(f"submitted_at: {e}", "submitted_at")

    client = dict(data.get("client") or {})
    client.setdefault("user_agent", request.headers.get("User-Agent", ""))
    client["ip_address"] = get_client_ip()

    result = get_engine().submit_rating(
        subject_id,
        data.get("score"),
        data.get("comment"),
        data.get("photo_refs"),
        identity=data.get("identity"),
        aspects=data.get("aspects"),
        submitted_at=submitted_at,
        client=client,
    )

    if not result.accepted:
        return rejection_response(result.rejection, result.to_dict())

    return jsonify(result.to_dict()), 201 if result.mode == "create" else 200


@ratings_bp.route('/subjects/<subject_id>/can-rate', methods=['GET'])
def can_rate(subject_id: str):
    identity = request.args.get("identity", "")
    return jsonify({
        "subject_id": subject_id,
        "can_rate": get_engine().can_rate(subject_id, identity),
    })


@ratings_bp.route('/subjects/<subject_id>/statistics', methods=['GET'])
def get_statistics(subject_id: str):
    return jsonify(get_engine().get_statistics(subject_id).to_dict())


@ratings_bp.route('/subjects/<subject_id>/statistics/rebuild', methods=['POST'])
@require_api_key
def rebuild_statistics(subject_id: str):
    stats = get_engine().rebuild_statistics(subject_id)
    logger.info(f"Statistics rebuilt via API for {subject_id}")
    return jsonify(stats.to_dict())


@ratings_bp.route('/security/events', methods=['GET'])
@require_api_key
def security_events():
    limit = bounded_limit(request.args.get("limit"))
    events = get_engine().security_events(limit)
    return jsonify({
        "count": len(events),
        "events": [event.to_dict() for event in events],
    })


@ratings_bp.route('/validation/stats', methods=['GET'])
@require_api_key
def validation_stats():
    return jsonify(get_engine().validation_stats())


@ratings_bp.route('/rate-limits/<key>', methods=['GET'])
@require_api_key
def rate_limit_status(key: str):
    return jsonify({"key": key, "limits": get_engine().rate_limit_status(key)})


@ratings_bp.route('/rate-limits', methods=['DELETE'])
@ratings_bp.route('/rate-limits/<key>', methods=['DELETE'])
@require_api_key
def clear_rate_limits(key: str | None = None):
    removed = get_engine().clear_rate_limits(key)
    return jsonify({"cleared": removed, "key": key})
