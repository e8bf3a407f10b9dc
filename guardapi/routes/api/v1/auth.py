"""Authentication routes guarded by the lockout engine"""

import logging

from flask import g, jsonify, request
from flask_jwt_extended import create_access_token, current_user, jwt_required

from guardapi import limiter
from guardapi.config import SETTINGS
from guardapi.core import get_security_core
from guardapi.errors import AccountLockedError
from guardapi.routes.api.v1 import endpoints, error
from guardapi.services.lockout_service import normalize_identity
from guardapi.services.user_service import UserService
from guardapi.utils.rate_limiting import RateLimitConfig, is_rate_limiting_disabled
from guardapi.utils.request_context import RequestContext
from guardapi.utils.session_guard import session_required

logger = logging.getLogger()


@endpoints.route("/auth/login", strict_slashes=False, methods=["POST"])
@limiter.limit(
    lambda: ";".join(RateLimitConfig.get_login_limits()),
    exempt_when=is_rate_limiting_disabled,
)
def login():
    """
    Authenticate with email and password.

    **Rate Limited**: Subject to login rate limits (configurable)
    **Access**: Public endpoint

    **Request Schema**:
    ```json
    {
      "email": "user@example.com",
      "password": "securePassword123"
    }
    ```

    **Success Response Schema**:
    ```json
    {
      "access_token": "eyJ0eXAiOiJKV1QiLCJhbGciOiJIUzI1NiJ9...",
      "session_token": "r3Jx...",
      "user_id": "123e4567-e89b-12d3-a456-426614174000",
      "expires_in": 3600
    }
    ```

    **Lockouts**:
    - A client IP over the IP attempt threshold gets `429`
    - A locked account gets `423`
    - Both carry the same body with `error_code` `too_many_attempts`

    **Error Responses**:
    - `400 Bad Request`: Missing email or password
    - `401 Unauthorized`: Invalid credentials
    """
    logger.info("[ROUTER]: Login attempt")
    body = request.get_json(silent=True) or {}
    email = body.get("email")
    password = body.get("password")
    if not email or not password:
        return error(status=400, detail="Email and password are required")

    identity = normalize_identity(email)
    context = RequestContext.from_request()
    lockout = get_security_core().lockout

    if context.ip_address and lockout.is_ip_locked_out(context.ip_address):
        raise AccountLockedError(scope="ip")
    if lockout.is_user_locked_out(identity):
        raise AccountLockedError(scope="account")

    user = UserService.authenticate_user(identity, password)
    if user is None:
        lockout.record_failed_attempt(identity, context.ip_address, context)
        return error(status=401, detail="Invalid email or password")

    user_context = context.with_user(user.id)
    lockout.record_successful_login(identity, context.ip_address, user_context)
    session_token = get_security_core().sessions.initialize_session(
        str(user.id), user_context
    )
    access_token = create_access_token(identity=str(user.id))
    expires = SETTINGS.get("JWT_ACCESS_TOKEN_EXPIRES")

    logger.info(f"[ROUTER]: User {user.id} logged in")
    return jsonify(
        {
            "access_token": access_token,
            "session_token": session_token,
            "user_id": str(user.id),
            "expires_in": int(expires.total_seconds()) if expires else None,
        }
    ), 200


@endpoints.route("/auth/logout", strict_slashes=False, methods=["POST"])
@jwt_required()
@session_required
def logout():
    """
    End the current session.

    **Authentication**: JWT token and `X-Session-Token` header required
    """
    user_id = str(current_user.id)
    logger.info(f"[ROUTER]: Logging out user {user_id}")
    get_security_core().sessions.invalidate_session(
        user_id,
        g.session_token,
        reason="manual",
        context=RequestContext.from_request(user_id=user_id),
    )
    return jsonify({"msg": "Logged out"}), 200


@endpoints.route("/auth/sessions", strict_slashes=False, methods=["GET"])
@jwt_required()
@session_required
def get_my_sessions():
    """List the active sessions of the authenticated user"""
    user_id = str(current_user.id)
    sessions = get_security_core().sessions.get_active_sessions(user_id)
    return jsonify({"data": [record.serialize() for record in sessions]}), 200
