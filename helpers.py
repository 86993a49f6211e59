# Description: Helper functions for the application


# import libraries
from functools import wraps

from flask import jsonify, session


# login required
def login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not session.get("user_id"):
            return jsonify({"error": "login_required", "message": "You must be logged in."}), 401
        return f(*args, **kwargs)
    return decorated_function


def current_user_id():
    """Return the logged-in user id from the session, or None."""
    return session.get("user_id")


def parse_user_id(value):
    """Coerce an id coming from a JSON body or query string to an int."""
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError("User identifiers must be integers.")


def parse_limit(value, default=50, maximum=200):
    try:
        limit = int(value)
    except (TypeError, ValueError):
        return default
    if limit <= 0:
        return default
    return min(limit, maximum)
