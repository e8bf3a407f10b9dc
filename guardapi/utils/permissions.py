"""Permission utility functions"""

from __future__ import annotations

from functools import wraps

from flask_jwt_extended import current_user

ADMIN_ROLES = ("ADMIN", "SUPERADMIN")


def is_admin_or_higher(user):
    """Check if user has admin or superadmin role."""
    if user is None:
        return False
    return user.role in ADMIN_ROLES


def admin_required(fn):
    """Reject the request with 403 unless the JWT user is an admin.

    Must be applied under ``@jwt_required()``.
    """

    @wraps(fn)
    def wrapper(*args, **kwargs):
        from guardapi.routes.api.v1 import error

        if not is_admin_or_higher(current_user):
            return error(status=403, detail="Forbidden")
        return fn(*args, **kwargs)

    return wrapper
