"""Health check and password account routes."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from flask import jsonify, request, session

from ..config import app
from ..errors import InvalidCredentials, StoreUnavailable, UsernameTaken
from ..models import User
from ..services import get_services

LOGIN_SESSION_KEY = "login_session_id"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def json_payload() -> Mapping[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, Mapping) else {}


def debug_logs(entries: List[Dict[str, Any]]) -> Optional[List[Dict[str, Any]]]:
    """Return ceremony logs for the response body when exposure is enabled."""

    if not app.config.get("PASSKEY_EXPOSE_DEBUG_LOGS", False):
        return None
    return entries


def current_user() -> Optional[User]:
    services = get_services()
    login_session = services.login_sessions.resolve(session.get(LOGIN_SESSION_KEY))
    if login_session is None:
        return None
    return services.store.get_user(login_session.user_id)


def require_user() -> Tuple[Optional[User], Any]:
    """Return ``(user, None)`` or ``(None, error_response)`` for the current request."""

    if not session.get(LOGIN_SESSION_KEY):
        return None, (jsonify({"error": "Not authenticated"}), 401)
    user = current_user()
    if user is None:
        session.pop(LOGIN_SESSION_KEY, None)
        return None, (jsonify({"error": "Invalid session"}), 401)
    return user, None


def start_login_session(user_id: int, method: str) -> None:
    services = get_services()
    services.login_sessions.end(session.get(LOGIN_SESSION_KEY))
    login_session = services.login_sessions.start(user_id, method)
    session[LOGIN_SESSION_KEY] = login_session.id


@app.errorhandler(StoreUnavailable)
def handle_store_unavailable(exc: StoreUnavailable):
    app.logger.error("Credential store unavailable: %s", exc)
    return jsonify({"error": "Internal server error"}), 500


@app.route("/api/health", methods=["GET"])
def api_health():
    try:
        get_services().store.ping()
    except StoreUnavailable as exc:
        app.logger.warning("Health check failed: %s", exc)
        return (
            jsonify({"status": "unhealthy", "timestamp": _timestamp(), "error": str(exc)}),
            503,
        )
    return jsonify({"status": "healthy", "timestamp": _timestamp(), "database": "connected"})


@app.route("/api/auth/register", methods=["POST"])
def api_auth_register():
    payload = json_payload()
    username = payload.get("username")
    password = payload.get("password")
    if not isinstance(username, str) or not isinstance(password, str):
        return jsonify({"error": "Username and password are required"}), 400

    try:
        user = get_services().accounts.register(username, password)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    except UsernameTaken:
        return jsonify({"error": "Username already exists"}), 409

    start_login_session(user.id, "password-register")
    return (
        jsonify(
            {
                "success": True,
                "message": "User registered successfully",
                "userId": user.id,
                "username": user.username,
            }
        ),
        201,
    )


@app.route("/api/auth/login", methods=["POST"])
def api_auth_login():
    payload = json_payload()
    username = payload.get("username")
    password = payload.get("password")
    if not username or not password:
        return jsonify({"error": "Username and password are required"}), 400

    try:
        user = get_services().accounts.authenticate(str(username), str(password))
    except InvalidCredentials:
        return jsonify({"error": "Invalid username or password"}), 401

    start_login_session(user.id, "password-login")
    return jsonify(
        {
            "success": True,
            "message": "Login successful",
            "userId": user.id,
            "username": user.username,
        }
    )


@app.route("/api/auth/logout", methods=["POST"])
def api_auth_logout():
    get_services().login_sessions.end(session.pop(LOGIN_SESSION_KEY, None))
    session.clear()
    return jsonify({"success": True, "message": "Logged out successfully"})


@app.route("/api/auth/session", methods=["GET"])
def api_auth_session():
    user = current_user()
    if user is None:
        return jsonify({"user": None})
    return jsonify({"user": {"id": user.id, "username": user.username}})
