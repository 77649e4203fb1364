"""Routes for passkey registration, login and credential management."""
from __future__ import annotations

from flask import jsonify, request

from ..auth import current_user, ensure_ceremony_session_id, get_ceremony_session_id, login_user
from ..ceremony import get_services
from ..config import app


@app.route("/api/webauthn/status", methods=["GET"])
def webauthn_status():
    services = get_services()
    return jsonify(services.orchestrator.status(current_user(services.users)))


@app.route("/api/webauthn/register/start", methods=["GET"])
def webauthn_register_start():
    services = get_services()
    user = current_user(services.users)
    options = services.orchestrator.registration_start(ensure_ceremony_session_id(), user)
    return jsonify(options)


@app.route("/api/webauthn/register/finish", methods=["POST"])
def webauthn_register_finish():
    services = get_services()
    user = current_user(services.users)
    # Malformed bodies are rejected by the verifier after the challenge is consumed.
    payload = request.get_json(silent=True)
    credential = services.orchestrator.registration_finish(get_ceremony_session_id(), user, payload)
    app.logger.info("Passkey %d registered for %s", credential.id, user.username)
    return jsonify({"verified": True})


@app.route("/api/webauthn/login/start", methods=["GET"])
def webauthn_login_start():
    services = get_services()
    username = request.args.get("username")
    options = services.orchestrator.authentication_start(ensure_ceremony_session_id(), username)
    return jsonify(options)


@app.route("/api/webauthn/login/finish", methods=["POST"])
def webauthn_login_finish():
    services = get_services()
    payload = request.get_json(silent=True)
    user = services.orchestrator.authentication_finish(get_ceremony_session_id(), payload, login_user)
    app.logger.info("User %s signed in with a passkey", user.username)
    return jsonify({"verified": True, "user": user.to_dict()})


@app.route("/api/webauthn/credentials/<int:credential_id>", methods=["DELETE"])
def webauthn_delete_credential(credential_id: int):
    services = get_services()
    services.orchestrator.delete_credential(current_user(services.users), credential_id)
    return jsonify({"success": True})
