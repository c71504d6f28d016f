"""Passkey registration, authentication and management routes."""
from __future__ import annotations

from typing import Any, Dict

from flask import jsonify, session

from ..config import app
from ..encoding import format_credential_id
from ..services import get_services
from .general import debug_logs, json_payload, require_user, start_login_session

REGISTRATION_CHALLENGE_KEY = "registration_challenge_id"
AUTHENTICATION_CHALLENGE_KEY = "authentication_challenge_id"

_COUNTER_REGRESSION_MESSAGE = (
    "Passkey authentication failed: the signature counter did not increase. "
    "This authenticator may have been cloned."
)


def _with_debug_logs(body: Dict[str, Any], entries) -> Dict[str, Any]:
    logs = debug_logs(entries)
    if logs is not None:
        body["debugLogs"] = logs
    return body


@app.route("/api/passkeys/register/options", methods=["POST"])
def api_passkeys_register_options():
    user, error = require_user()
    if error is not None:
        return error

    session_id, options = get_services().ceremonies.begin_registration(user)
    session[REGISTRATION_CHALLENGE_KEY] = session_id
    return jsonify(
        _with_debug_logs(
            {"success": True, "options": options.options, "challenge": options.challenge},
            options.debug_logs,
        )
    )


@app.route("/api/passkeys/register/verify", methods=["POST"])
def api_passkeys_register_verify():
    user, error = require_user()
    if error is not None:
        return error

    response = json_payload()
    if not response:
        return jsonify({"error": "Credential response is required"}), 400

    result = get_services().ceremonies.finish_registration(
        session.pop(REGISTRATION_CHALLENGE_KEY, None), response, user
    )
    body: Dict[str, Any] = {
        "success": result.verified,
        "message": (
            "Passkey registered successfully" if result.verified else "Passkey registration failed"
        ),
        "credentialId": result.credential_id,
    }
    if not result.verified:
        body["reason"] = result.reason
        body["detail"] = result.detail
    else:
        app.logger.info(
            "User %s registered passkey %s.", user.username, format_credential_id(result.credential_id)
        )
    return jsonify(_with_debug_logs(body, result.debug_logs))


@app.route("/api/passkeys/authenticate/options", methods=["POST"])
def api_passkeys_authenticate_options():
    payload = json_payload()
    username = payload.get("username")
    if not isinstance(username, str) or not username.strip():
        username = None

    session_id, options = get_services().ceremonies.begin_authentication(
        username.strip() if username else None
    )
    session[AUTHENTICATION_CHALLENGE_KEY] = session_id
    return jsonify(
        _with_debug_logs(
            {"success": True, "options": options.options, "challenge": options.challenge},
            options.debug_logs,
        )
    )


@app.route("/api/passkeys/authenticate/verify", methods=["POST"])
def api_passkeys_authenticate_verify():
    response = json_payload()
    if not response:
        return jsonify({"error": "Credential response is required"}), 400

    result = get_services().ceremonies.finish_authentication(
        session.pop(AUTHENTICATION_CHALLENGE_KEY, None), response
    )
    if not result.verified:
        if result.reason == "counter_regression":
            app.logger.warning("Rejected assertion with regressed counter: %s", result.detail)
            message = _COUNTER_REGRESSION_MESSAGE
        else:
            message = "Passkey authentication failed"
        return jsonify(
            _with_debug_logs(
                {"success": False, "message": message, "reason": result.reason},
                result.debug_logs,
            )
        )

    start_login_session(result.user_id, "passkey-login")
    return jsonify(
        _with_debug_logs(
            {
                "success": True,
                "message": "Passkey authentication successful",
                "userId": result.user_id,
                "username": result.username,
            },
            result.debug_logs,
        )
    )


@app.route("/api/passkeys", methods=["GET"])
@app.route("/api/passkeys/list", methods=["GET"])
def api_passkeys_list():
    user, error = require_user()
    if error is not None:
        return error

    credentials = get_services().ceremonies.list_credentials(user.id)
    return jsonify({"success": True, "passkeys": [credential.to_json() for credential in credentials]})


@app.route("/api/passkeys", methods=["DELETE"])
@app.route("/api/passkeys/delete", methods=["DELETE"])
def api_passkeys_delete():
    user, error = require_user()
    if error is not None:
        return error

    payload = json_payload()
    credential_id = payload.get("credentialId")
    passkey_id = payload.get("passkeyId")
    ceremonies = get_services().ceremonies
    if credential_id and isinstance(credential_id, str):
        removed = ceremonies.delete_credential(credential_id, user.id)
    elif isinstance(passkey_id, int) and not isinstance(passkey_id, bool):
        removed = ceremonies.delete_passkey(passkey_id, user.id)
    else:
        return jsonify({"error": "Credential ID is required"}), 400

    if not removed:
        return jsonify({"error": "Passkey not found or not owned by user"}), 404
    return jsonify({"success": True, "message": "Passkey deleted successfully"})
