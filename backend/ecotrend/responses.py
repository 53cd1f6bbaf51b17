# Overview: JSON envelope helpers for internal-facing routes.

from flask import current_app, jsonify

from .errors import EcoTrendError


def ok(data=None, status: int = 200, message: str | None = None):
    body = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return jsonify(body), status


def fail(message: str, status: int):
    return jsonify({"success": False, "message": message}), status


def service_error(exc: EcoTrendError):
    if exc.status_code >= 500:
        current_app.logger.error("Service failure: %s", exc)
    else:
        current_app.logger.warning("Request rejected (%s): %s", exc.status_code, exc)
    return fail(str(exc) or "Request failed", exc.status_code)


def server_error(action: str, exc: Exception | None = None):
    """Log the active exception and return a generic 500."""
    current_app.logger.exception("Failed to %s", action)
    message = "Internal server error"
    if exc is not None and current_app.config.get("EXPOSE_ERROR_DETAILS"):
        message = f"{message}: {exc}"
    return fail(message, 500)
