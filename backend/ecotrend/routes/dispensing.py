# Overview: Flask API routes for dispensing operations; parses input and returns JSON responses.

# backend/ecotrend/routes/dispensing.py
"""
Dispensing API Routes

WHY: The device display drives a purchase through these endpoints:
quote a volume, show the QR code (routes/kaspi.py), poll status, then
confirm the physical dispense once payment has landed.

DESIGN:
- Every stage change goes through services/flow_service.py
- Status and history are pure reads
- Errors use the {success: false, message} envelope with the error's status
"""

from flask import Blueprint, request

from ..errors import EcoTrendError, ValidationError
from ..responses import fail, ok, server_error, service_error
from ..services import flow_service


dispensing_bp = Blueprint("dispensing", __name__, url_prefix="/api/dispensing")

DEFAULT_HISTORY_LIMIT = 10


@dispensing_bp.post("/calculate")
def calculate_route():
    """
    Quote a dispense and open a session.

    Request body:
    {
        "device_id": "D1",
        "tank_number": 1,
        "volume": 500          (millilitres)
    }

    Returns:
        201: session_id and cost breakdown
        400: invalid tank or volume
        404: device or chemical not found
    """
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")

        missing = [key for key in ("device_id", "tank_number", "volume") if data.get(key) in (None, "")]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

        result = flow_service.create_session(data["device_id"], data["tank_number"], data["volume"])
        return ok(result, 201)

    except EcoTrendError as e:
        return service_error(e)
    except Exception as e:
        return server_error("calculate dispensing cost", e)


@dispensing_bp.get("/status/<session_id>")
def status_route(session_id: str):
    try:
        return ok(flow_service.check_status(session_id))
    except EcoTrendError as e:
        return service_error(e)
    except Exception as e:
        return server_error("load session status", e)


@dispensing_bp.post("/<session_id>/dispense")
def dispense_route(session_id: str):
    """
    Confirm the physical dispense for a paid session.

    Returns:
        200: receipt (receipt_number, operation_id, stage=completed)
        400: session not paid yet, or already dispensed
        404: session or transaction not found
    """
    try:
        return ok(flow_service.dispense(session_id), message="Chemical dispensed successfully")
    except EcoTrendError as e:
        return service_error(e)
    except Exception as e:
        return server_error("dispense chemical", e)


@dispensing_bp.get("/history/<device_id>")
def history_route(device_id: str):
    """
    Paged dispensing history, newest first.

    Query params:
    - limit: 1..100 (default 10)
    - offset: >= 0 (default 0)
    """
    try:
        limit = request.args.get("limit", DEFAULT_HISTORY_LIMIT)
        offset = request.args.get("offset", 0)
        return ok(flow_service.history(device_id, limit=limit, offset=offset))
    except EcoTrendError as e:
        return service_error(e)
    except Exception as e:
        return server_error("load dispensing history", e)


@dispensing_bp.get("/active/<device_id>")
def active_session_route(device_id: str):
    try:
        session = flow_service.get_active_session(device_id)
        if session is None:
            return fail("No active session for device", 404)
        return ok(session)
    except EcoTrendError as e:
        return service_error(e)
    except Exception as e:
        return server_error("load active session", e)
