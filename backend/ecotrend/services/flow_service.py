# Overview: Service-layer operations for dispensing sessions; encapsulates business logic and database work.

"""
Dispensing Flow

WHY: A customer pays for an exact volume of one chemical, and the device may
dispense it exactly once. The flow state row is the single record tying the
quoted price, the Kaspi payment and the physical dispense together.

STAGES (forward only):
    calculated -> awaiting_payment -> payment_completed -> completed

- calculate: price lookup, cost computed, no payment reference yet
- generate_qr: txn_id minted and attached, QR URL returned
- pay webhook (kaspi_service): Transaction recorded, stage advanced
- dispense: DispensingOperation recorded, transaction consumed

"dispensing" exists only as a status label; no code path writes it.

CONCURRENCY:
Every stage change locks the flow row first and checks the current stage
under the lock, so two callers racing on one session see exactly one winner.
"""

from __future__ import annotations

import secrets
import time
import uuid
from datetime import timedelta
from decimal import Decimal
from urllib.parse import urlencode

from flask import current_app

from ..errors import AlreadyDispensedError, InvalidStageError, NotFoundError, ValidationError
from ..extensions import db
from ..models import DispensingOperation, FlowState, Transaction
from ..money import money_float, quantize_money, to_decimal
from ..time_utils import utcnow
from . import device_service
from .concurrency import lock_for_update, run_with_retry
from .transaction_service import find_by_txn_id, mark_dispensed


# =============================================================================
# STAGES
# =============================================================================

STAGE_CALCULATED = "calculated"
STAGE_AWAITING_PAYMENT = "awaiting_payment"
STAGE_PAYMENT_COMPLETED = "payment_completed"
STAGE_DISPENSING = "dispensing"
STAGE_COMPLETED = "completed"

ALLOWED_TRANSITIONS = {
    STAGE_CALCULATED: {STAGE_AWAITING_PAYMENT},
    STAGE_AWAITING_PAYMENT: {STAGE_PAYMENT_COMPLETED},
    STAGE_PAYMENT_COMPLETED: {STAGE_COMPLETED},
    STAGE_COMPLETED: set(),
}

STATUS_LABELS = {
    STAGE_CALCULATED: "ready_for_payment",
    STAGE_AWAITING_PAYMENT: "awaiting_payment",
    STAGE_PAYMENT_COMPLETED: "payment_completed",
    STAGE_DISPENSING: "dispensing",
    STAGE_COMPLETED: "completed",
}

ACTIVE_STAGES = (STAGE_CALCULATED, STAGE_AWAITING_PAYMENT, STAGE_PAYMENT_COMPLETED)

MILLILITRES_PER_LITRE = Decimal("1000")


def transition_stage(flow: FlowState, target: str) -> None:
    """Move flow to target or raise InvalidStageError. Caller commits."""
    if target not in ALLOWED_TRANSITIONS.get(flow.stage, set()):
        raise InvalidStageError(f"Cannot move session from {flow.stage} to {target}")
    current_app.logger.info("Session %s: %s -> %s", flow.session_id, flow.stage, target)
    flow.stage = target
    flow.updated_at = utcnow()


def status_label(stage: str) -> str:
    return STATUS_LABELS.get(stage, stage)


# =============================================================================
# HELPERS
# =============================================================================

def calculate_cost(price_per_liter, volume_ml) -> Decimal:
    """Total cost = price per litre * volume (ml) / 1000, rounded half-up to cents."""
    volume = parse_volume(volume_ml)
    return quantize_money(Decimal(price_per_liter) * volume / MILLILITRES_PER_LITRE)


def parse_volume(volume) -> Decimal:
    try:
        value = to_decimal(volume)
    except ValueError:
        raise ValidationError("Invalid volume")
    if value <= 0:
        raise ValidationError("Volume must be positive")
    return value


def generate_session_id() -> str:
    return str(uuid.uuid4())


def generate_txn_id() -> str:
    return f"TXN-{uuid.uuid4().hex[:16].upper()}"


def generate_receipt_number(device_id: str) -> str:
    return f"R-{device_id}-{int(time.time() * 1000)}-{secrets.token_hex(2).upper()}"


def generate_qr_code_url(device_id: str, amount: Decimal, txn_id: str) -> str:
    config = current_app.config
    params = {
        "service": config["KASPI_SERVICE_NAME"],
        "account": device_id,
        "amount": f"{quantize_money(Decimal(amount)):.2f}",
        "txn_id": txn_id,
    }
    return f"{config['KASPI_QR_BASE_URL']}?{urlencode(params)}"


def get_flow(session_id: str, *, for_update: bool = False) -> FlowState | None:
    query = db.session.query(FlowState).filter_by(session_id=session_id)
    if for_update:
        query = lock_for_update(query)
    return query.first()


def require_flow(session_id: str, *, for_update: bool = False) -> FlowState:
    if not session_id:
        raise ValidationError("session_id is required")
    flow = get_flow(session_id, for_update=for_update)
    if flow is None:
        raise NotFoundError("Session not found")
    return flow


def find_awaiting_flow(txn_id: str, *, for_update: bool = False) -> FlowState | None:
    query = db.session.query(FlowState).filter_by(transaction_id=txn_id, stage=STAGE_AWAITING_PAYMENT)
    if for_update:
        query = lock_for_update(query)
    return query.first()


# =============================================================================
# OPERATIONS
# =============================================================================

def create_session(device_id, tank_number, volume) -> dict:
    """
    Quote a dispense and open a session at stage "calculated".

    Raises:
        ValidationError: bad tank number or volume, or a cost that rounds to zero
        NotFoundError: unknown device, or no chemical in that tank
    """
    if not device_id:
        raise ValidationError("device_id is required")
    tank = device_service.validate_tank_number(tank_number)
    volume_value = parse_volume(volume)

    device_service.require_device(device_id)
    chemical = device_service.find_chemical(device_id, tank)
    if chemical is None:
        raise NotFoundError("Chemical not found")

    total_cost = calculate_cost(chemical.price_per_liter, volume_value)
    if total_cost <= 0:
        raise ValidationError("Calculated cost must be positive")

    def _op():
        flow = FlowState(
            session_id=generate_session_id(),
            device_id=device_id,
            stage=STAGE_CALCULATED,
            chemical_id=chemical.id,
            tank_number=tank,
            volume=volume_value,
            amount=total_cost,
        )
        db.session.add(flow)
        db.session.commit()
        return flow

    flow = run_with_retry(_op)
    current_app.logger.info(
        "Session %s calculated: device=%s tank=%s volume=%s cost=%s",
        flow.session_id, device_id, tank, volume_value, total_cost,
    )
    return {
        "session_id": flow.session_id,
        "device_id": device_id,
        "tank_number": tank,
        "chemical_id": chemical.id,
        "chemical_name": chemical.name,
        "price_per_liter": money_float(chemical.price_per_liter),
        "volume": float(volume_value),
        "total_cost": money_float(total_cost),
        "stage": flow.stage,
        "status": status_label(flow.stage),
    }


def generate_qr(session_id: str) -> dict:
    """Mint a Kaspi txn_id for a calculated session and return the QR URL."""

    def _op():
        flow = require_flow(session_id, for_update=True)
        if flow.stage != STAGE_CALCULATED:
            raise InvalidStageError(f"Cannot generate QR code in stage {flow.stage}")
        txn_id = generate_txn_id()
        flow.transaction_id = txn_id
        transition_stage(flow, STAGE_AWAITING_PAYMENT)
        db.session.commit()
        return flow

    flow = run_with_retry(_op)
    return {
        "session_id": flow.session_id,
        "device_id": flow.device_id,
        "amount": money_float(flow.amount),
        "txn_id": flow.transaction_id,
        "qr_code_url": generate_qr_code_url(flow.device_id, flow.amount, flow.transaction_id),
        "stage": flow.stage,
        "status": status_label(flow.stage),
    }


def check_status(session_id: str) -> dict:
    """Read-only view of a session and whatever payment/dispense it has."""
    flow = require_flow(session_id)
    result = flow.to_dict()
    result["status"] = status_label(flow.stage)
    if flow.chemical is not None:
        result["chemical_name"] = flow.chemical.name

    txn = find_by_txn_id(flow.transaction_id) if flow.transaction_id else None
    result["transaction"] = txn.to_dict() if txn else None

    operation = None
    if txn is not None:
        operation = db.session.query(DispensingOperation).filter_by(transaction_id=txn.id).first()
    result["dispensing_operation"] = operation.to_dict() if operation else None
    return result


def dispense(session_id: str) -> dict:
    """
    Record the physical dispense for a paid session.

    Exactly one call per session succeeds; every later call fails with
    InvalidStageError (stage already completed) or AlreadyDispensedError.

    Raises:
        NotFoundError: unknown session, or no transaction behind it
        InvalidStageError: session is not payment_completed
        AlreadyDispensedError: transaction already consumed
    """

    def _op():
        flow = require_flow(session_id, for_update=True)
        if flow.stage != STAGE_PAYMENT_COMPLETED:
            raise InvalidStageError(f"Cannot dispense in stage {flow.stage}")

        txn = find_by_txn_id(flow.transaction_id, for_update=True) if flow.transaction_id else None
        if txn is None:
            raise NotFoundError("Transaction not found")
        if txn.dispensed:
            raise AlreadyDispensedError("Chemical already dispensed for this transaction")

        chemical = flow.chemical
        if chemical is None:
            raise NotFoundError("Chemical not found")

        operation = DispensingOperation(
            transaction_id=txn.id,
            device_id=flow.device_id,
            tank_number=flow.tank_number,
            chemical_name=chemical.name,
            price_per_liter=chemical.price_per_liter,
            volume=flow.volume,
            total_cost=flow.amount,
            batch_number=chemical.batch_number,
            expiration_date=chemical.expiration_date,
            status="completed",
            receipt_number=generate_receipt_number(flow.device_id),
        )
        db.session.add(operation)
        mark_dispensed(txn)
        transition_stage(flow, STAGE_COMPLETED)
        db.session.commit()
        return flow, txn, operation

    flow, txn, operation = run_with_retry(_op)
    current_app.logger.info(
        "Dispensed session %s: device=%s tank=%s receipt=%s",
        flow.session_id, flow.device_id, flow.tank_number, operation.receipt_number,
    )
    return {
        "session_id": flow.session_id,
        "device_id": flow.device_id,
        "tank_number": flow.tank_number,
        "chemical_name": operation.chemical_name,
        "volume": money_float(flow.volume),
        "amount": money_float(txn.amount),
        "total_cost": money_float(operation.total_cost),
        "receipt_number": operation.receipt_number,
        "operation_id": operation.id,
        "stage": flow.stage,
        "status": status_label(flow.stage),
    }


def get_active_session(device_id: str) -> dict | None:
    """Most recent unfinished session for a device inside the recency window."""
    device_service.require_device(device_id)
    window = timedelta(hours=int(current_app.config.get("ACTIVE_SESSION_WINDOW_HOURS", 24)))
    flow = (
        db.session.query(FlowState)
        .filter(
            FlowState.device_id == device_id,
            FlowState.stage.in_(ACTIVE_STAGES),
            FlowState.created_at >= utcnow() - window,
        )
        .order_by(FlowState.created_at.desc(), FlowState.id.desc())
        .first()
    )
    if flow is None:
        return None
    result = flow.to_dict()
    result["status"] = status_label(flow.stage)
    if flow.chemical is not None:
        result["chemical_name"] = flow.chemical.name
    return result


def history(device_id: str, limit=10, offset=0) -> dict:
    """Paged dispensing history, newest first."""
    device_service.require_device(device_id)
    limit, offset = device_service.validate_pagination(limit, offset)

    query = db.session.query(DispensingOperation).filter_by(device_id=device_id)
    total = query.count()
    operations = (
        query.order_by(DispensingOperation.created_at.desc(), DispensingOperation.id.desc())
        .limit(limit)
        .offset(offset)
        .all()
    )
    return {
        "device_id": device_id,
        "operations": [op.to_dict() for op in operations],
        "pagination": {
            "total": total,
            "limit": limit,
            "offset": offset,
            "has_more": offset + len(operations) < total,
        },
    }


def complete_payment(flow: FlowState, txn: Transaction) -> None:
    """Advance an awaiting session after its payment was recorded. Caller commits."""
    if flow.transaction_id != txn.txn_id:
        raise InvalidStageError("Transaction does not belong to this session")
    transition_stage(flow, STAGE_PAYMENT_COMPLETED)
