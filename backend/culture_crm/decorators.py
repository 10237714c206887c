# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .extensions import db
from .models import User


ACTING_USER_HEADER = "X-User-Id"


def require_acting_user(f):
    """
    Resolve the staff member performing the request.

    Authentication happens in front of this service; the gateway forwards
    the authenticated user's id in the X-User-Id header. Sets:
    - g.current_user: The acting User object

    Returns 401 if:
    - Header missing or not an integer
    - No such user
    - User deactivated
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw = (request.headers.get(ACTING_USER_HEADER) or "").strip()
        if not raw:
            return jsonify({"error": "Acting user required", "code": "UNAUTHORIZED"}), 401

        try:
            user_id = int(raw)
        except ValueError:
            return jsonify({"error": "Invalid acting user", "code": "UNAUTHORIZED"}), 401

        user = db.session.get(User, user_id)
        if user is None or not user.is_active:
            return jsonify({"error": "Invalid acting user", "code": "UNAUTHORIZED"}), 401

        g.current_user = user
        return f(*args, **kwargs)

    return decorated_function
