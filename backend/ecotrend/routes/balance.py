# Overview: Flask API routes for balance operations; parses input and returns JSON responses.

# backend/ecotrend/routes/balance.py
"""
Balance API Routes

Legacy prepaid-balance model: Kaspi payments in "balance" mode credit the
device, and the device spends the balance per dispense.

DESIGN:
- top-up is a manual/test credit (production credits arrive via /api/kaspi/pay)
- consume never drives a balance below zero; insufficient funds is a 400
"""

from flask import Blueprint, request

from ..errors import EcoTrendError, ValidationError
from ..money import money_float
from ..responses import fail, ok, server_error, service_error
from ..services import balance_service, device_service, transaction_service


balance_bp = Blueprint("balance", __name__, url_prefix="/api/balance")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


@balance_bp.get("/<device_id>")
def get_balance_route(device_id: str):
    try:
        device_service.require_device(device_id)
        balance = balance_service.get_balance(device_id)
        return ok({"device_id": device_id, "balance": money_float(balance)})
    except EcoTrendError as e:
        return service_error(e)
    except Exception as e:
        return server_error("load balance", e)


@balance_bp.post("/<device_id>/top-up")
def top_up_route(device_id: str):
    """
    Credit a device balance.

    Request body: {"amount": 500}
    """
    try:
        device_service.require_device(device_id)
        data = _json_body()
        if data.get("amount") is None:
            raise ValidationError("amount is required")
        new_balance = balance_service.increase_balance(device_id, data["amount"])
        return ok({"device_id": device_id, "balance": money_float(new_balance)}, message="Balance updated")
    except EcoTrendError as e:
        return service_error(e)
    except Exception as e:
        return server_error("top up balance", e)


@balance_bp.post("/<device_id>/consume")
def consume_route(device_id: str):
    """
    Spend from the balance for a dispense.

    Request body:
    {
        "amount": 50,
        "tank_number": 1,     (optional, logged)
        "volume": 500         (optional, logged)
    }

    Returns:
        200: new balance
        400: invalid amount or insufficient balance
        404: device not found
    """
    try:
        device_service.require_device(device_id)
        data = _json_body()
        if data.get("amount") is None:
            raise ValidationError("amount is required")
        if data.get("tank_number") is not None:
            device_service.validate_tank_number(data["tank_number"])

        if not balance_service.decrease_balance(device_id, data["amount"]):
            return fail("Insufficient balance", 400)

        balance = balance_service.get_balance(device_id)
        return ok({
            "device_id": device_id,
            "balance": money_float(balance),
            "tank_number": data.get("tank_number"),
            "volume": data.get("volume"),
        }, message="Balance consumed")
    except EcoTrendError as e:
        return service_error(e)
    except Exception as e:
        return server_error("consume balance", e)


@balance_bp.get("/<device_id>/transactions")
def list_transactions_route(device_id: str):
    try:
        device_service.require_device(device_id)
        limit, offset = device_service.validate_pagination(
            request.args.get("limit", 10),
            request.args.get("offset", 0),
        )
        rows, total = transaction_service.list_for_device(device_id, limit=limit, offset=offset)
        return ok({
            "device_id": device_id,
            "transactions": [t.to_dict() for t in rows],
            "pagination": {
                "total": total,
                "limit": limit,
                "offset": offset,
                "has_more": offset + len(rows) < total,
            },
        })
    except EcoTrendError as e:
        return service_error(e)
    except Exception as e:
        return server_error("list transactions", e)
