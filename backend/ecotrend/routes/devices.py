# Overview: Flask API routes for device operations; parses input and returns JSON responses.

from flask import Blueprint, request

from ..errors import EcoTrendError, ValidationError
from ..responses import ok, server_error, service_error
from ..services import device_service


devices_bp = Blueprint("devices", __name__, url_prefix="/api/devices")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


# =============================================================================
# DEVICES
# =============================================================================

@devices_bp.post("/register")
def register_device_route():
    """
    Register a device with a zero balance and seven default tanks.

    Request body:
    {
        "device_id": "AA:BB:CC:DD:EE:FF",
        "name": "Station 1",
        "location": "Almaty, Abay 10"   (optional)
    }

    Returns:
        201: device
        400: invalid input
        409: device id already registered
    """
    try:
        data = _json_body()
        device = device_service.register_device(
            data.get("device_id"),
            data.get("name"),
            data.get("location"),
        )
        return ok(device.to_dict(), 201, message="Device registered successfully")
    except EcoTrendError as e:
        return service_error(e)
    except Exception as e:
        return server_error("register device", e)


@devices_bp.get("")
def list_devices_route():
    try:
        limit = request.args.get("limit", 10)
        offset = request.args.get("offset", 0)
        devices = device_service.list_devices(limit=limit, offset=offset)
        return ok([d.to_dict() for d in devices])
    except EcoTrendError as e:
        return service_error(e)
    except Exception as e:
        return server_error("list devices", e)


@devices_bp.get("/<device_id>")
def get_device_route(device_id: str):
    try:
        device = device_service.require_device(device_id)
        payload = device.to_dict()
        payload["chemicals"] = [c.to_dict() for c in device_service.list_chemicals(device_id)]
        return ok(payload)
    except EcoTrendError as e:
        return service_error(e)
    except Exception as e:
        return server_error("load device", e)


@devices_bp.put("/<device_id>")
def update_device_route(device_id: str):
    """Only name and location are writable; other keys are ignored."""
    try:
        device = device_service.update_device(device_id, _json_body())
        return ok(device.to_dict(), message="Device updated successfully")
    except EcoTrendError as e:
        return service_error(e)
    except Exception as e:
        return server_error("update device", e)


# =============================================================================
# CHEMICALS
# =============================================================================

@devices_bp.get("/<device_id>/chemicals")
def list_chemicals_route(device_id: str):
    try:
        device_service.require_device(device_id)
        return ok([c.to_dict() for c in device_service.list_chemicals(device_id)])
    except EcoTrendError as e:
        return service_error(e)
    except Exception as e:
        return server_error("list chemicals", e)


@devices_bp.put("/<device_id>/chemicals/<tank_number>")
def update_chemical_route(device_id: str, tank_number: str):
    """
    Update one tank.

    Request body (all optional):
    {
        "name": "Glass cleaner",
        "price_per_liter": 120.5,
        "batch_number": "B-2025-04",
        "manufacturing_date": "2025-01-10",
        "expiration_date": "2026-01-10"
    }
    """
    try:
        chemical = device_service.update_chemical(device_id, tank_number, _json_body())
        return ok(chemical.to_dict(), message="Chemical updated successfully")
    except EcoTrendError as e:
        return service_error(e)
    except Exception as e:
        return server_error("update chemical", e)


@devices_bp.post("/<device_id>/sync")
def sync_device_route(device_id: str):
    """Pull tanks and balance from the realtime mirror."""
    try:
        return ok(device_service.sync_device_from_telemetry(device_id), message="Device synced")
    except EcoTrendError as e:
        return service_error(e)
    except Exception as e:
        return server_error("sync device", e)
