# backend/ecotrend/__init__.py
import logging
import os

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from .config import Config
from .extensions import db, migrate

MIGRATIONS_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "migrations")


def create_app(config_object=Config, telemetry_client=None, device_status=None) -> Flask:
    """
    Application factory.

    telemetry_client and device_status replace the configured telemetry
    client and device-status predicate (tests inject in-memory fakes).
    """
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object)
    app.logger.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO))

    # Client address for the Kaspi allow-list; only trusted hops are unwrapped
    trusted_hops = int(app.config.get("PROXY_FIX_X_FOR") or 0)
    if trusted_hops > 0:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=trusted_hops)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db, directory=MIGRATIONS_DIR)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Telemetry bridge, device-status predicate and payment gateway: one per app
    from .services.telemetry_service import TelemetryBridge, TelemetryDeviceStatus, build_telemetry_client
    from .services.kaspi_service import build_gateway

    bridge = TelemetryBridge(telemetry_client or build_telemetry_client(app.config), logger=app.logger)
    app.extensions["telemetry"] = bridge
    app.extensions["device_status"] = device_status or TelemetryDeviceStatus(bridge)
    app.extensions["payment_gateway"] = build_gateway(app.config)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.devices import devices_bp
    from .routes.balance import balance_bp
    from .routes.dispensing import dispensing_bp
    from .routes.kaspi import kaspi_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(devices_bp)
    app.register_blueprint(balance_bp)
    app.register_blueprint(dispensing_bp)
    app.register_blueprint(kaspi_bp)

    register_error_handlers(app)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    app.logger.info(
        "EcoTrend API %s started (payment mode: %s, telemetry: %s)",
        app.config.get("APP_VERSION"),
        app.extensions["payment_gateway"].mode,
        "configured" if bridge.configured else "disabled",
    )
    return app


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return jsonify({"success": False, "message": e.description or e.name}), e.code

    @app.errorhandler(404)
    def handle_not_found(e):
        return jsonify({"success": False, "message": "Resource not found"}), 404

    @app.errorhandler(405)
    def handle_method_not_allowed(e):
        return jsonify({"success": False, "message": "Method not allowed"}), 405

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        app.logger.exception("Unhandled error")
        db.session.rollback()
        message = "Internal server error"
        if app.config.get("EXPOSE_ERROR_DETAILS"):
            message = f"{message}: {e}"
        return jsonify({"success": False, "message": message}), 500
