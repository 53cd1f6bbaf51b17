# Overview: Flask API routes for Kaspi webhooks; parses input and returns JSON responses.

# backend/ecotrend/routes/kaspi.py
"""
Kaspi Webhook Routes

WIRE CONTRACT:
- check/pay always answer HTTP 200; the outcome is the numeric `result`
  (0 success, 1 device not found, 5 anything else)
- Response bodies are flat: {txn_id, result, comment, bin, sum?, prv_txn?, fields?}

SECURITY:
- Webhooks are limited to KASPI_ALLOWED_IPS (see decorators.require_kaspi_ip)
"""

from flask import Blueprint, jsonify, request

from ..decorators import require_kaspi_ip
from ..errors import EcoTrendError
from ..responses import ok, server_error, service_error
from ..services import flow_service, kaspi_service


kaspi_bp = Blueprint("kaspi", __name__, url_prefix="/api/kaspi")


@kaspi_bp.get("/check")
@require_kaspi_ip
def check_route():
    """Eligibility probe. Query: txn_id, account, sum."""
    return jsonify(kaspi_service.get_gateway().check(request.args)), 200


@kaspi_bp.get("/pay")
@require_kaspi_ip
def pay_route():
    """Idempotent payment. Query: txn_id, txn_date, account, sum."""
    return jsonify(kaspi_service.get_gateway().pay(request.args)), 200


@kaspi_bp.get("/status")
def status_route():
    return jsonify(kaspi_service.status_payload()), 200


@kaspi_bp.get("/generate-qr/<session_id>")
def generate_qr_route(session_id: str):
    """
    Attach a Kaspi txn_id to a calculated session and return the QR URL.

    Returns:
        200: txn_id, qr_code_url, amount, stage=awaiting_payment
        400: session is past the calculated stage
        404: session not found
    """
    try:
        return ok(flow_service.generate_qr(session_id))
    except EcoTrendError as e:
        return service_error(e)
    except Exception as e:
        return server_error("generate QR code", e)
