# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, current_app


def require_kaspi_ip(f):
    """
    Reject webhook calls from outside the Kaspi allow-list.

    The caller is request.remote_addr. X-Forwarded-For is only honoured when
    create_app() wraps the app in ProxyFix (PROXY_FIX_X_FOR > 0), and then
    only for the configured number of trusted hops.

    An empty KASPI_ALLOWED_IPS disables the check (development, tests).
    Returns 403 JSON when the caller is not listed.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        allowed = current_app.config.get("KASPI_ALLOWED_IPS") or []
        if allowed:
            ip = request.remote_addr
            if ip not in allowed:
                current_app.logger.warning("Rejected Kaspi request from %s to %s", ip, request.path)
                return jsonify({"success": False, "message": "Access denied"}), 403
        return f(*args, **kwargs)

    return decorated_function
