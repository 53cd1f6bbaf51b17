# Overview: Service-layer operations for devices and their tanks.

"""
Device Registry

WHY: Every payment and dispensing call is scoped to a registered device.
Registration creates the whole aggregate at once (device, zero balance,
seven default tanks) so a device is never half-provisioned.

DESIGN:
- Registration runs as one unit; a duplicate id is rejected before the unit
  starts and, for concurrent registrations, by the primary key itself.
- Telemetry sync happens after commit and never fails the registration.
- Chemicals are keyed by (device_id, tank_number); update_or_create_chemical
  is the only upsert and exists for telemetry sync.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError, NotFoundError, PersistenceError, ValidationError
from ..extensions import db
from ..models import Balance, Chemical, Device, MAX_TANK_NUMBER
from ..money import quantize_money, to_decimal
from ..time_utils import parse_iso_date
from . import balance_service
from .concurrency import run_with_retry
from .telemetry_service import get_telemetry, parse_tank_key

MAX_DEVICE_ID_LENGTH = 128
MAX_PAGE_SIZE = 100

DEVICE_WRITABLE_FIELDS = {"name", "location"}
CHEMICAL_WRITABLE_FIELDS = {"name", "price_per_liter", "batch_number", "manufacturing_date", "expiration_date"}

# chemical field -> key used by the device mirror under containers.tankN
TELEMETRY_TANK_FIELDS = {
    "name": "name",
    "price_per_liter": "price",
    "batch_number": "batch_number",
    "manufacturing_date": "manufacturing_date",
    "expiration_date": "expiration_date",
}


# =============================================================================
# VALIDATION HELPERS
# =============================================================================

def validate_device_id(device_id) -> str:
    if not isinstance(device_id, str) or not device_id.strip():
        raise ValidationError("Valid device_id (string) is required")
    device_id = device_id.strip()
    if len(device_id) > MAX_DEVICE_ID_LENGTH:
        raise ValidationError(f"device_id must be at most {MAX_DEVICE_ID_LENGTH} characters")
    return device_id


def validate_tank_number(tank_number) -> int:
    if isinstance(tank_number, bool):
        raise ValidationError("Invalid tank number")
    try:
        value = int(str(tank_number).strip())
    except (TypeError, ValueError):
        raise ValidationError("Invalid tank number")
    if value < 1 or value > MAX_TANK_NUMBER:
        raise ValidationError(f"tank_number must be between 1 and {MAX_TANK_NUMBER}")
    return value


def validate_pagination(limit, offset) -> tuple[int, int]:
    try:
        limit = int(limit)
        offset = int(offset)
    except (TypeError, ValueError):
        raise ValidationError("limit and offset must be integers")
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    if offset < 0:
        raise ValidationError("offset must be >= 0")
    return limit, offset


def _price(value) -> Decimal:
    try:
        price = to_decimal(value)
    except ValueError:
        raise ValidationError("price_per_liter must be a number")
    if price < 0:
        raise ValidationError("price_per_liter must be >= 0")
    return quantize_money(price)


def _date_field(name: str, value) -> date | None:
    if value is None or isinstance(value, date):
        return value
    try:
        return parse_iso_date(str(value))
    except ValueError:
        raise ValidationError(f"{name} must be an ISO date (YYYY-MM-DD)")


# =============================================================================
# DEVICES
# =============================================================================

def get_device(device_id: str) -> Device | None:
    return db.session.get(Device, device_id)


def require_device(device_id: str) -> Device:
    device = get_device(device_id)
    if not device:
        raise NotFoundError("Device not found")
    return device


def list_devices(limit: int = 10, offset: int = 0) -> list[Device]:
    limit, offset = validate_pagination(limit, offset)
    return (
        db.session.query(Device)
        .order_by(Device.created_at.desc(), Device.device_id)
        .limit(limit)
        .offset(offset)
        .all()
    )


def register_device(device_id, name, location=None) -> Device:
    """
    Register a device with a zero balance and default tanks 1..7.

    Raises:
        ValidationError: missing/invalid device_id or name
        ConflictError: device_id already registered
    """
    device_id = validate_device_id(device_id)
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Valid device name (string) is required")
    if location is not None and not isinstance(location, str):
        raise ValidationError("location must be a string")

    if get_device(device_id):
        raise ConflictError("Device with this ID already exists")

    tank_count = int(current_app.config.get("DEFAULT_TANK_COUNT", MAX_TANK_NUMBER))
    default_price = quantize_money(Decimal(current_app.config.get("DEFAULT_CHEMICAL_PRICE", "100")))

    def _op():
        device = Device(device_id=device_id, name=name.strip(), location=(location or "").strip())
        db.session.add(device)
        # children reference devices.device_id; the parent row must exist first
        db.session.flush()
        db.session.add(Balance(device_id=device_id, balance=Decimal("0")))
        for tank_number in range(1, tank_count + 1):
            db.session.add(Chemical(
                device_id=device_id,
                tank_number=tank_number,
                name=f"Default Chemical {tank_number}",
                price_per_liter=default_price,
            ))
        db.session.commit()
        return device

    try:
        device = run_with_retry(_op)
    except IntegrityError as exc:
        db.session.rollback()
        if get_device(device_id) is not None:
            raise ConflictError("Device with this ID already exists") from exc
        current_app.logger.exception("Failed to register device %s", device_id)
        raise PersistenceError("Failed to register device") from exc
    current_app.logger.info("Device registered: %s (%s)", device.device_id, device.name)

    get_telemetry().register_device(device.device_id, {
        "name": device.name,
        "location": device.location,
        "status": "active",
    })
    return device


def update_device(device_id: str, data: dict) -> Device:
    device = require_device(device_id)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")

    for key, value in data.items():
        if key not in DEVICE_WRITABLE_FIELDS:
            continue
        if key == "name" and (not isinstance(value, str) or not value.strip()):
            raise ValidationError("name must be a non-empty string")
        if key == "location" and value is not None and not isinstance(value, str):
            raise ValidationError("location must be a string")
        setattr(device, key, (value or "").strip())

    db.session.commit()
    current_app.logger.info("Device updated: %s", device_id)
    return device


# =============================================================================
# CHEMICALS (TANKS)
# =============================================================================

def list_chemicals(device_id: str) -> list[Chemical]:
    return (
        db.session.query(Chemical)
        .filter_by(device_id=device_id)
        .order_by(Chemical.tank_number)
        .all()
    )


def find_chemical(device_id: str, tank_number: int) -> Chemical | None:
    return db.session.query(Chemical).filter_by(device_id=device_id, tank_number=tank_number).first()


def clean_chemical_fields(data: dict) -> dict:
    """Validate writable tank fields into plain values; nothing is assigned here."""
    cleaned = {}
    for key, value in data.items():
        if key not in CHEMICAL_WRITABLE_FIELDS:
            continue
        if key == "name":
            if not isinstance(value, str) or not value.strip():
                raise ValidationError("name must be a non-empty string")
            cleaned["name"] = value.strip()
        elif key == "price_per_liter":
            cleaned["price_per_liter"] = _price(value)
        elif key == "batch_number":
            cleaned["batch_number"] = str(value).strip() if value not in (None, "") else None
        else:
            cleaned[key] = _date_field(key, value)
    return cleaned


def update_chemical(device_id: str, tank_number, data: dict) -> Chemical:
    """Manual update of one tank. Raises NotFoundError if the tank is not configured."""
    require_device(device_id)
    tank_number = validate_tank_number(tank_number)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")

    chemical = find_chemical(device_id, tank_number)
    if not chemical:
        raise NotFoundError("Chemical not found")

    for key, value in clean_chemical_fields(data).items():
        setattr(chemical, key, value)
    db.session.commit()
    current_app.logger.info("Chemical updated: device=%s tank=%s", device_id, tank_number)
    return chemical


def update_or_create_chemical(device_id: str, tank_number: int, data: dict, *, commit: bool = True) -> Chemical:
    """
    Upsert one tank. Every field is validated before the row is touched, so a
    rejected update leaves the tank (or its absence) unchanged.
    """
    tank_number = validate_tank_number(tank_number)
    fields = clean_chemical_fields(data)
    chemical = find_chemical(device_id, tank_number)
    if chemical is None:
        if "name" not in fields or "price_per_liter" not in fields:
            raise ValidationError(f"Tank {tank_number} needs name and price_per_liter")
        chemical = Chemical(device_id=device_id, tank_number=tank_number, **fields)
        db.session.add(chemical)
    else:
        for key, value in fields.items():
            setattr(chemical, key, value)

    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return chemical


# =============================================================================
# TELEMETRY SYNC
# =============================================================================

def sync_device_from_telemetry(device_id: str) -> dict:
    """
    Reconcile tanks and balance from the realtime mirror.

    The mirror is fetched before any write; the reconciliation itself is one
    unit. Malformed container entries are skipped with a warning. When the
    mirror is unreachable nothing is written.
    """
    require_device(device_id)
    db.session.rollback()

    telemetry = get_telemetry()
    mirror = telemetry.try_fetch_device(device_id)
    if mirror is None:
        current_app.logger.warning("Telemetry sync skipped for device %s: mirror unavailable", device_id)
        return {
            "device_id": device_id,
            "synced": False,
            "synced_tanks": [],
            "balance": None,
            "telemetry_data": telemetry.fetch_device(device_id),
        }

    containers = mirror.get("containers") if isinstance(mirror.get("containers"), dict) else {}

    def _op():
        synced_tanks = []
        for key, tank in containers.items():
            tank_number = parse_tank_key(key)
            if tank_number is None or not isinstance(tank, dict):
                current_app.logger.warning("Skipping malformed container %r for device %s", key, device_id)
                continue
            data = {field: tank[source] for field, source in TELEMETRY_TANK_FIELDS.items() if source in tank}
            try:
                update_or_create_chemical(device_id, tank_number, data, commit=False)
            except ValidationError as exc:
                current_app.logger.warning("Skipping container %s for device %s: %s", key, device_id, exc)
                continue
            synced_tanks.append(tank_number)

        balance_value = None
        if mirror.get("balance") is not None:
            try:
                balance_value = balance_service.set_balance(device_id, mirror["balance"], commit=False)
            except ValidationError as exc:
                current_app.logger.warning("Skipping mirrored balance for device %s: %s", device_id, exc)

        db.session.commit()
        return sorted(synced_tanks), balance_value

    synced_tanks, balance_value = run_with_retry(_op)
    current_app.logger.info("Device %s synced from telemetry: tanks=%s", device_id, synced_tanks)
    return {
        "device_id": device_id,
        "synced": True,
        "synced_tanks": synced_tanks,
        "balance": float(balance_value) if balance_value is not None else None,
        "telemetry_data": mirror,
    }
