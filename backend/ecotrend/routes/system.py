# backend/ecotrend/routes/system.py
"""
System health and version endpoints.

The relational database is the only hard dependency. The telemetry store is
reported for visibility but never makes the service unhealthy, because every
telemetry call has a local fallback.
"""

import time
from flask import Blueprint, current_app
from sqlalchemy import text

from ..extensions import db
from ..models import Device
from ..services.telemetry_service import get_telemetry
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    """Round-trip the database and count registered devices."""
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        device_count = db.session.query(Device).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"devices": device_count},
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_telemetry_health() -> dict:
    configured = get_telemetry().configured
    return {
        "status": "healthy" if configured else "degraded",
        "configured": configured,
    }


@system_bp.get("")
def welcome():
    return {
        "success": True,
        "message": "Welcome to EcoTrend API",
        "version": current_app.config.get("APP_VERSION"),
        "payment_mode": current_app.config.get("PAYMENT_MODE"),
    }, 200


@system_bp.get("/health")
def health():
    """
    Health check.

    Returns:
    - 200: database reachable (telemetry may be degraded)
    - 503: database unreachable
    """
    start_time = time.time()
    database_health = check_database_health()
    telemetry_health = check_telemetry_health()

    if database_health["status"] == "unhealthy":
        overall_status, http_status = "unhealthy", 503
    elif telemetry_health["status"] == "degraded":
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "version": current_app.config.get("APP_VERSION"),
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "telemetry": telemetry_health,
        },
    }, http_status


@system_bp.get("/health/live")
def live():
    """Liveness probe; no dependency checks."""
    return {"status": "alive", "timestamp": to_utc_z(utcnow())}, 200
