"""Admin routes for security monitoring, lockouts and sessions"""

import logging

from flask import jsonify, request
from flask_jwt_extended import current_user, jwt_required

from guardapi.core import get_security_core
from guardapi.routes.api.v1 import endpoints, error
from guardapi.utils.permissions import admin_required
from guardapi.utils.request_context import RequestContext
from guardapi.utils.session_guard import session_required

logger = logging.getLogger()

EVENT_FILTERS = ("type", "severity", "ip_address", "user_id", "date_from", "date_to")


def _event_filters():
    return {
        key: request.args.get(key) for key in EVENT_FILTERS if request.args.get(key)
    }


def _admin_context():
    return RequestContext.from_request(user_id=current_user.id)


@endpoints.route("/security/dashboard", strict_slashes=False, methods=["GET"])
@jwt_required()
@admin_required
@session_required
def get_security_dashboard():
    """
    Get the security monitoring dashboard.

    **Authentication**: JWT token and `X-Session-Token` header required
    **Access**: Restricted to users with `ADMIN` or `SUPERADMIN` role

    **Query Parameters**:
    - `refresh`: Set to `true` to rebuild the cached dashboard

    **Success Response Schema**:
    ```json
    {
      "data": {
        "recent_events": [...],
        "event_counts": [{"type": "failed_login", "severity": "medium", "count": 12}],
        "top_ips": [{"ip_address": "203.0.113.7", "event_count": 9, ...}],
        "timeline": [{"date": "2025-01-15", "type": "failed_login", "count": 31}],
        "system_health": {"status": "healthy", ...},
        "generated_at": "2025-01-15T10:30:00+00:00"
      }
    }
    ```
    """
    logger.info("[ROUTER]: Getting security dashboard")
    refresh = request.args.get("refresh", "false").lower() == "true"
    data = get_security_core().monitor.get_dashboard_data(refresh=refresh)
    return jsonify({"data": data}), 200


@endpoints.route("/security/events", strict_slashes=False, methods=["GET"])
@jwt_required()
@admin_required
@session_required
def get_security_events():
    """
    Search security events, newest first.

    **Query Parameters**:
    - `type`, `severity`, `ip_address`, `user_id`: Exact match filters
    - `date_from`, `date_to`: ISO 8601 bounds on the event time
    - `page` (default 1), `per_page` (default 50, max 200)
    """
    logger.info("[ROUTER]: Searching security events")
    page = request.args.get("page", 1, type=int)
    per_page = request.args.get("per_page", 50, type=int)
    result = get_security_core().monitor.search_events(
        _event_filters(), page=page, per_page=per_page
    )
    return jsonify(
        {
            "data": result["events"],
            "page": result["page"],
            "per_page": result["per_page"],
            "total": result["total"],
            "pages": result["pages"],
        }
    ), 200


@endpoints.route("/security/statistics", strict_slashes=False, methods=["GET"])
@jwt_required()
@admin_required
@session_required
def get_security_statistics():
    """Aggregate security statistics for `period` (24h, 7d, 30d or 90d)"""
    logger.info("[ROUTER]: Getting security statistics")
    period = request.args.get("period", "7d")
    return jsonify({"data": get_security_core().monitor.get_statistics(period)}), 200


@endpoints.route("/security/events/export", strict_slashes=False, methods=["GET"])
@jwt_required()
@admin_required
@session_required
def export_security_events():
    """
    Export security events as CSV or JSON.

    **Query Parameters**:
    - `format`: `csv` (default) or `json`
    - Same filters as `GET /security/events`

    The document is returned base64 encoded in `data.data` together with a
    suggested `filename` and its `content_type`.
    """
    export_format = request.args.get("format", "csv")
    logger.info(f"[ROUTER]: Exporting security events as {export_format}")
    export = get_security_core().monitor.export_events(
        export_format, filters=_event_filters()
    )
    return jsonify({"data": export}), 200


# LOCKOUTS


@endpoints.route(
    "/security/lockouts/users/<identity>", strict_slashes=False, methods=["GET"]
)
@jwt_required()
@admin_required
@session_required
def get_user_lockout(identity):
    """Lockout status, failure counters and escalation count for an identity"""
    logger.info(f"[ROUTER]: Getting lockout status for {identity}")
    lockout = get_security_core().lockout
    info = lockout.get_user_lockout_info(identity)
    return jsonify(
        {
            "data": {
                "identity": identity.strip().lower(),
                "locked": lockout.is_user_locked_out(identity),
                "lockout": info.serialize() if info else None,
                "failed_attempts": lockout.get_failed_attempt_count(identity),
                "lockout_count": lockout.get_lockout_count(identity),
            }
        }
    ), 200


@endpoints.route(
    "/security/lockouts/users/<identity>", strict_slashes=False, methods=["DELETE"]
)
@jwt_required()
@admin_required
@session_required
def unlock_user(identity):
    """
    Clear a user lockout and reactivate the account.

    Clearing a permanent lockout also resets the escalation count.
    """
    logger.info(f"[ROUTER]: Unlocking user {identity}")
    get_security_core().lockout.unlock_user(identity, context=_admin_context())
    return jsonify({"msg": f"User {identity.strip().lower()} unlocked"}), 200


@endpoints.route("/security/lockouts/ips/<ip>", strict_slashes=False, methods=["GET"])
@jwt_required()
@admin_required
@session_required
def get_ip_lockout(ip):
    logger.info(f"[ROUTER]: Getting lockout status for IP {ip}")
    lockout = get_security_core().lockout
    info = lockout.get_ip_lockout_info(ip)
    return jsonify(
        {
            "data": {
                "ip_address": ip,
                "locked": lockout.is_ip_locked_out(ip),
                "lockout": info.serialize() if info else None,
                "failed_attempts": lockout.get_ip_failed_attempt_count(ip),
            }
        }
    ), 200


@endpoints.route(
    "/security/lockouts/ips/<ip>", strict_slashes=False, methods=["DELETE"]
)
@jwt_required()
@admin_required
@session_required
def unlock_ip(ip):
    logger.info(f"[ROUTER]: Unlocking IP {ip}")
    get_security_core().lockout.unlock_ip(ip, context=_admin_context())
    return jsonify({"msg": f"IP address {ip} unlocked"}), 200


# SESSIONS


@endpoints.route("/security/sessions/<user_id>", strict_slashes=False, methods=["GET"])
@jwt_required()
@admin_required
@session_required
def get_user_sessions(user_id):
    logger.info(f"[ROUTER]: Getting active sessions for user {user_id}")
    sessions = get_security_core().sessions.get_active_sessions(user_id)
    return jsonify({"data": [record.serialize() for record in sessions]}), 200


@endpoints.route(
    "/security/sessions/<user_id>", strict_slashes=False, methods=["DELETE"]
)
@jwt_required()
@admin_required
@session_required
def invalidate_user_sessions(user_id):
    """
    Terminate every active session of a user.

    Terminating your own sessions also ends the session used for this request.
    """
    if not user_id.strip():
        return error(status=400, detail="User id is required")
    logger.info(f"[ROUTER]: Invalidating all sessions for user {user_id}")
    count = get_security_core().sessions.invalidate_all_user_sessions(
        user_id, reason="security", context=_admin_context()
    )
    return jsonify({"msg": f"Invalidated {count} sessions", "count": count}), 200
