# Overview: Flask API routes for attendance operations; parses input and returns JSON responses.

# backend/culture_crm/routes/attendance.py
"""
Attendance API Routes

WHY: Staff mark who came to a class. Every mark is reconciled against the
client's subscription and the invoice behind it by attendance_service.

DESIGN:
- Mark, change and remove attendance (acting user required for changes)
- List marks by schedule, group, client, status and date range
- Offer the subscriptions usable as basis for a class
- Per-client attendance statistics
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import attendance_service
from ..models.classes import VALID_ATTENDANCE_STATUSES
from ..decorators import require_acting_user
from ..validation import (
    UNSET,
    DOMAIN_ERRORS,
    coerce_choice,
    coerce_date,
    coerce_int,
    coerce_str,
    error_payload,
    require_fields,
    require_payload,
)


attendance_bp = Blueprint("attendance", __name__, url_prefix="/api/attendance")


def _query_int(name: str):
    return coerce_int(request.args.get(name), name)


# =============================================================================
# MARKING
# =============================================================================

@attendance_bp.post("")
@require_acting_user
def mark_attendance_route():
    """
    Mark a client's attendance for a class.

    Request body:
    {
        "scheduleId": 12,
        "clientId": 34,
        "status": "PRESENT",
        "subscriptionId": 56,  (optional, PRESENT only)
        "notes": "..."  (optional)
    }

    Returns:
        201: Attendance created
        400: Invalid input, unusable subscription or no visits left
        404: Schedule, group, client or subscription not found
        409: Client already marked for this class
    """
    try:
        data = require_payload(request.get_json(silent=True))
        require_fields(data, "scheduleId", "clientId", "status")

        attendance = attendance_service.mark_attendance(
            schedule_id=coerce_int(data.get("scheduleId"), "scheduleId"),
            client_id=coerce_int(data.get("clientId"), "clientId"),
            status=coerce_choice(data.get("status"), "status", VALID_ATTENDANCE_STATUSES),
            acting_user_id=g.current_user.id,
            notes=coerce_str(data.get("notes"), "notes"),
            subscription_id=coerce_int(data.get("subscriptionId"), "subscriptionId"),
        )
        return jsonify(attendance.to_dict()), 201

    except DOMAIN_ERRORS as e:
        return jsonify(error_payload(e)), e.status_code
    except Exception:
        current_app.logger.exception("Failed to mark attendance")
        return jsonify({"error": "Internal server error"}), 500


@attendance_bp.patch("/<int:attendance_id>")
@require_acting_user
def update_attendance_route(attendance_id: int):
    """
    Change an attendance mark.

    Request body (all optional):
    {
        "status": "ABSENT",
        "subscriptionId": 56,
        "notes": "..."  (null clears)
    }
    """
    try:
        data = require_payload(request.get_json(silent=True))

        attendance = attendance_service.update_status(
            attendance_id,
            g.current_user.id,
            status=coerce_choice(data.get("status"), "status", VALID_ATTENDANCE_STATUSES),
            subscription_id=coerce_int(data.get("subscriptionId"), "subscriptionId"),
            notes=coerce_str(data.get("notes"), "notes") if "notes" in data else UNSET,
        )
        return jsonify(attendance.to_dict()), 200

    except DOMAIN_ERRORS as e:
        return jsonify(error_payload(e)), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update attendance")
        return jsonify({"error": "Internal server error"}), 500


@attendance_bp.delete("/<int:attendance_id>")
@require_acting_user
def delete_attendance_route(attendance_id: int):
    try:
        result = attendance_service.remove(attendance_id)
        return jsonify(result), 200

    except DOMAIN_ERRORS as e:
        return jsonify(error_payload(e)), e.status_code
    except Exception:
        current_app.logger.exception("Failed to delete attendance")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# QUERIES
# =============================================================================

@attendance_bp.get("")
def list_attendance_route():
    """
    List attendance marks, newest class first.

    Query params (all optional):
    - scheduleId, groupId, clientId: int
    - status: PRESENT | ABSENT | EXCUSED
    - dateFrom, dateTo: YYYY-MM-DD, inclusive, on the class date
    - page: int (default 1), limit: int (default 50, max 200)
    """
    try:
        result = attendance_service.find_all(
            schedule_id=_query_int("scheduleId"),
            group_id=_query_int("groupId"),
            client_id=_query_int("clientId"),
            status=coerce_choice(request.args.get("status"), "status", VALID_ATTENDANCE_STATUSES),
            date_from=coerce_date(request.args.get("dateFrom"), "dateFrom"),
            date_to=coerce_date(request.args.get("dateTo"), "dateTo"),
            page=_query_int("page"),
            limit=_query_int("limit"),
        )
        return jsonify(result), 200

    except DOMAIN_ERRORS as e:
        return jsonify(error_payload(e)), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list attendance")
        return jsonify({"error": "Internal server error"}), 500


@attendance_bp.get("/<int:attendance_id>")
def get_attendance_route(attendance_id: int):
    try:
        return jsonify(attendance_service.find_one(attendance_id).to_dict()), 200
    except DOMAIN_ERRORS as e:
        return jsonify(error_payload(e)), e.status_code


@attendance_bp.get("/schedule/<int:schedule_id>")
def get_schedule_attendance_route(schedule_id: int):
    records = attendance_service.get_by_schedule(schedule_id)
    return jsonify({"data": [a.to_dict() for a in records], "count": len(records)}), 200


@attendance_bp.get("/bases/<int:schedule_id>")
def get_available_bases_route(schedule_id: int):
    """Subscriptions that can be chosen as basis for a PRESENT mark on this class."""
    try:
        return jsonify(attendance_service.get_available_bases(schedule_id)), 200
    except DOMAIN_ERRORS as e:
        return jsonify(error_payload(e)), e.status_code


@attendance_bp.get("/stats/<int:client_id>")
def get_client_stats_route(client_id: int):
    """
    Attendance statistics for a client.

    Query params:
    - from, to: YYYY-MM-DD (optional, inclusive)
    """
    try:
        stats = attendance_service.get_client_stats(
            client_id,
            date_from=coerce_date(request.args.get("from"), "from"),
            date_to=coerce_date(request.args.get("to"), "to"),
        )
        return jsonify(stats), 200

    except DOMAIN_ERRORS as e:
        return jsonify(error_payload(e)), e.status_code
    except Exception:
        current_app.logger.exception("Failed to compute attendance stats")
        return jsonify({"error": "Internal server error"}), 500
