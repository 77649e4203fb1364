"""General application routes."""
from __future__ import annotations

from flask import jsonify

from ..auth import logout_user, require_user
from ..ceremony import get_services
from ..config import app
from ..errors import CeremonyError


@app.errorhandler(CeremonyError)
def handle_ceremony_error(exc: CeremonyError):
    if exc.status_code >= 500:
        app.logger.error("%s: %s", exc.code, exc.message)
    else:
        app.logger.warning("%s: %s", exc.code, exc.message)
    return jsonify(exc.to_dict()), exc.status_code


@app.route("/api/health", methods=["GET"])
def health():
    return jsonify({"status": "ok"})


@app.route("/api/user", methods=["GET"])
def current_user_info():
    services = get_services()
    user = require_user(services.users)
    return jsonify(user.to_dict())


@app.route("/api/logout", methods=["POST"])
def logout():
    logout_user()
    return jsonify({"success": True})
