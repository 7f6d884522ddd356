import logging
import os
import secrets
from collections.abc import Mapping
from datetime import timedelta

import uvicorn
from dotenv import load_dotenv
from flask import Flask, Response, jsonify, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from starlette.applications import Starlette
from starlette.routing import Mount
from uvicorn.middleware.wsgi import WSGIMiddleware
from werkzeug.middleware.proxy_fix import ProxyFix

from authgate.helpers import audit, auth, auth_db
from authgate.helpers.errors import AUTH_ERROR_CODES, AuthError, TooManyAttempts
from authgate.helpers.login_service import get_login_service
from authgate.helpers.rate_limit import init_attempt_tracker

logger = logging.getLogger(__name__)

load_dotenv()

# initialize the internal Flask server
webapp = Flask(__name__)
webapp.secret_key = os.getenv("FLASK_SECRET_KEY") or secrets.token_hex(32)

webapp.json.sort_keys = False
webapp.config.update(
    SESSION_COOKIE_NAME="authgate_session",
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=os.getenv("SESSION_COOKIE_SECURE", "").lower()
    in ("true", "1", "yes"),
    SESSION_PERMANENT=True,
    PERMANENT_SESSION_LIFETIME=timedelta(hours=8),
)

# Trust X-Forwarded-For only from a known number of reverse proxies, so the
# rate-limit origin is the real client address
_proxy_count = int(os.getenv("TRUSTED_PROXY_COUNT", "0"))
if _proxy_count > 0:
    webapp.wsgi_app = ProxyFix(webapp.wsgi_app, x_for=_proxy_count)

# Coarse per-address request cap; the per-account attempt window lives in
# authgate.helpers.rate_limit
limiter = Limiter(
    app=webapp,
    key_func=get_remote_address,
    default_limits=["200 per day", "50 per hour"],
    storage_uri="memory://",
)

_cors_extra = [
    origin.strip()
    for origin in os.environ.get("CORS_ALLOWED_ORIGINS", "").split(",")
    if origin.strip()
]
CORS(
    webapp,
    origins=[
        "http://localhost:*",
        "http://127.0.0.1:*",
        *_cors_extra,
    ],
    supports_credentials=True,
)


@webapp.after_request
def add_security_headers(response):
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Cache-Control"] = "no-store"
    return response


_STATUS_BY_CODE = {
    AUTH_ERROR_CODES.INVALID_CREDENTIALS: 401,
    AUTH_ERROR_CODES.TOO_MANY_REQUESTS: 429,
    AUTH_ERROR_CODES.SERVER_ERROR: 500,
}


def _error_response(error: AuthError) -> tuple[Response, int]:
    body = error.to_dict()
    if isinstance(error, TooManyAttempts):
        # Rolling window: report the window length, not an unlock time
        body["window_minutes"] = error.window_minutes
    elif "remaining" in error.details:
        body["remaining"] = error.details["remaining"]
    return jsonify(body), _STATUS_BY_CODE.get(error.code, 400)


def _missing_fields() -> tuple[Response, int]:
    return jsonify(
        {"error": "Email and password are required", "code": "auth/missing-fields"}
    ), 400


def _client_ip() -> str:
    return request.remote_addr or "unknown"


@webapp.route("/login", methods=["POST"])
@limiter.limit("10/minute")
async def login_handler():
    data = request.get_json(silent=True)
    if data is None:
        data = request.form
    if not isinstance(data, Mapping):
        return _missing_fields()
    email = data.get("email") or data.get("username") or ""
    password = data.get("password") or ""
    if not isinstance(email, str) or not isinstance(password, str):
        return _missing_fields()
    email = email.strip()
    if not email or not password:
        return _missing_fields()

    try:
        userinfo = await get_login_service().login(email, password, _client_ip())
    except AuthError as e:
        return _error_response(e)

    warning = userinfo.pop("warning", None)
    auth.establish_session(userinfo)
    body = {"user": userinfo}
    if warning:
        body["warning"] = warning
    return jsonify(body), 200


@webapp.route("/logout", methods=["POST"])
async def logout_handler():
    user = auth.get_current_user()
    auth.clear_session()
    if user:
        await audit.log_auth_event(
            audit.LOGOUT, email=user["email"], ip=_client_ip(), user_id=user["id"]
        )
    return Response(status=204)


@webapp.route("/session", methods=["GET"])
async def session_handler():
    user = auth.get_current_user()
    if not user:
        return jsonify({"error": "Not authenticated", "code": "auth/no-session"}), 401
    return jsonify({"user": user}), 200


@webapp.route("/health", methods=["GET"])
@limiter.exempt
def health_handler():
    return jsonify({"status": "ok"}), 200


def init_app() -> None:
    """Connect the database and the attempt tracker."""
    auth_db.init_db()
    auth_db.create_all()
    init_attempt_tracker()


def run():
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_app()

    host = os.getenv("WEB_UI_HOST", "127.0.0.1")
    port = int(os.getenv("WEB_UI_PORT", "5000"))

    starlette_app = Starlette(routes=[Mount("/", app=WSGIMiddleware(webapp))])
    config = uvicorn.Config(starlette_app, host=host, port=port, log_level="info")
    server = uvicorn.Server(config)

    logger.info("Serving login API on http://%s:%d", host, port)
    server.run()


# run the internal server
if __name__ == "__main__":
    run()
