# Overview: Request decorators for API routes; actor context forwarded by the auth gateway.

from functools import wraps

from flask import current_app, g, jsonify, request

from .extensions import db
from .models import User
from .models.enums import UserRole

ACTOR_HEADER = "X-Actor-Id"

WRITE_ROLES = (UserRole.SELLER, UserRole.ADMIN, UserRole.OWNER)
CANCEL_ROLES = (UserRole.ADMIN, UserRole.OWNER)


def _error(code: str, message: str, status: int):
    return jsonify({"error": {"code": code, "message": message, "details": None}}), status


def require_actor(*roles: UserRole):
    """
    Require a verified actor and, optionally, one of `roles`.

    Authentication happens upstream; the gateway forwards the verified user id
    in the X-Actor-Id header. Sets g.current_user for the route.

    SECURITY: Returns 401 if the header is missing or malformed, or the user
    is unknown or deactivated. Returns 403 if the user's role is not allowed.
    """
    allowed = {UserRole(role) for role in roles}

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            raw = (request.headers.get(ACTOR_HEADER) or "").strip()
            if not (raw.isascii() and raw.isdigit()):
                return _error("unauthorized", "Authentication required", 401)

            user = db.session.get(User, int(raw))
            if user is None or not user.is_active:
                return _error("unauthorized", "Unknown or inactive actor", 401)

            if allowed and user.role not in allowed:
                current_app.logger.warning(
                    "Actor %s (%s) denied %s %s", user.id, user.role.value, request.method, request.path
                )
                return _error("forbidden", "Permission denied", 403)

            g.current_user = user
            return f(*args, **kwargs)

        return decorated_function

    return decorator
