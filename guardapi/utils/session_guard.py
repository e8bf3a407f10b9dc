"""Request guard binding JWT users to a validated server-side session"""

from functools import wraps
import logging

from flask import g, make_response, request
from flask_jwt_extended import current_user

from guardapi.utils.request_context import RequestContext

logger = logging.getLogger(__name__)

SESSION_HEADER = "X-Session-Token"


def session_required(fn):
    """Validate the ``X-Session-Token`` header for the current JWT user.

    Must be applied under ``@jwt_required()``. Rejected sessions get a 401;
    when the token was rotated the replacement is returned in the same header.
    """

    @wraps(fn)
    def wrapper(*args, **kwargs):
        from guardapi.core import get_security_core
        from guardapi.routes.api.v1 import error

        token = request.headers.get(SESSION_HEADER)
        if not token:
            return error(status=401, detail="Session token required")

        user_id = str(current_user.id)
        g.user_id = user_id
        result = get_security_core().sessions.validate_session(
            user_id, token, RequestContext.from_request(user_id=user_id)
        )
        if not result.valid:
            logger.info(f"[AUTH]: Session rejected for {user_id}: {result.reason}")
            return error(status=401, detail="Invalid or expired session")

        g.session_token = result.token

        response = make_response(fn(*args, **kwargs))
        if result.rotated:
            response.headers[SESSION_HEADER] = result.token
        return response

    return wrapper
