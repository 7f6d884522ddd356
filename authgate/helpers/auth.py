"""Session issuance for authenticated users.

Sessions ride on Flask's signed session cookie; the cookie flags
(HttpOnly, SameSite, Secure, lifetime) are configured in ``run_ui.py``.
"""

import secrets

from flask import session


def establish_session(userinfo: dict) -> None:
    """Populate the Flask session for a freshly authenticated user."""
    # Prevent session fixation: clear stale pre-auth data before populating
    session.clear()
    session["csrf_token"] = secrets.token_urlsafe(32)
    session["user"] = {
        "id": userinfo["id"],
        "email": userinfo["email"],
        "name": userinfo.get("name"),
        "role": userinfo.get("role", "user"),
    }
    session["authentication"] = True
    session.permanent = True


def clear_session() -> None:
    """Clear auth-related session keys."""
    session.pop("user", None)
    session.pop("authentication", None)
    session.pop("csrf_token", None)


def get_current_user() -> dict | None:
    """Return the current user dict from session, or None."""
    return session.get("user")
