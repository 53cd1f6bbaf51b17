# Overview: Service-layer operations for device balances; encapsulates business logic and database work.

"""
Balance Ledger

Prepaid balance used by the legacy "balance" payment mode and by manual
top-ups.

INVARIANTS:
- balance >= 0 at all times. decrease_balance is a single conditional UPDATE
  (WHERE balance >= amount), so two concurrent consumes can never both
  succeed against the same funds, and the CHECK constraint backs it up.
- A failed decrease leaves the balance untouched and returns False.
- Mirroring to telemetry happens only after commit and never affects the
  return value.
"""

from __future__ import annotations

from decimal import Decimal

from flask import current_app
from sqlalchemy import update

from ..errors import ValidationError
from ..extensions import db
from ..models import Balance
from ..money import quantize_money, to_decimal
from ..time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry
from .telemetry_service import get_telemetry


def _positive_amount(amount) -> Decimal:
    try:
        value = to_decimal(amount)
    except ValueError:
        raise ValidationError("amount must be a number")
    if value <= 0:
        raise ValidationError("amount must be positive")
    return quantize_money(value)


def _balance_row(device_id: str, *, for_update: bool = False) -> Balance | None:
    query = db.session.query(Balance).filter_by(device_id=device_id)
    if for_update:
        query = lock_for_update(query)
    return query.first()


def get_balance(device_id: str) -> Decimal:
    """Current balance; a device without a balance row reads as zero."""
    row = _balance_row(device_id)
    if row is None:
        return Decimal("0.00")
    return quantize_money(Decimal(row.balance))


def increase_balance(device_id: str, amount, *, commit: bool = True) -> Decimal:
    """
    Credit a device balance, creating the row if needed.

    With commit=False the change is flushed into the caller's unit of work
    and the caller is responsible for commit and telemetry mirroring.

    Returns:
        New balance
    """
    value = _positive_amount(amount)

    def _apply() -> Decimal:
        row = _balance_row(device_id, for_update=True)
        if row is None:
            row = Balance(device_id=device_id, balance=Decimal("0"))
            db.session.add(row)
        row.balance = quantize_money(Decimal(row.balance or 0) + value)
        row.updated_at = utcnow()
        db.session.flush()
        return quantize_money(Decimal(row.balance))

    if not commit:
        return _apply()

    def _op():
        new_balance = _apply()
        db.session.commit()
        return new_balance

    new_balance = run_with_retry(_op)
    current_app.logger.info("Balance increased for device %s by %s -> %s", device_id, value, new_balance)
    get_telemetry().mirror_balance(device_id, value)
    return new_balance


def decrease_balance(device_id: str, amount, *, commit: bool = True) -> bool:
    """
    Debit a device balance if and only if the funds are there.

    Returns:
        True if debited, False on insufficient funds or no balance row
        (balance unchanged either way)
    """
    value = _positive_amount(amount)

    def _apply() -> bool:
        result = db.session.execute(
            update(Balance)
            .where(Balance.device_id == device_id, Balance.balance >= value)
            .values(balance=Balance.balance - value, updated_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    if not commit:
        return _apply()

    def _op() -> bool:
        if not _apply():
            db.session.rollback()
            return False
        db.session.commit()
        return True

    if not run_with_retry(_op):
        current_app.logger.warning("Insufficient balance on device %s for %s", device_id, value)
        return False

    current_app.logger.info("Balance decreased for device %s by %s", device_id, value)
    get_telemetry().mirror_balance(device_id, -value)
    return True


def set_balance(device_id: str, amount, *, commit: bool = True) -> Decimal:
    """Overwrite the balance (telemetry sync). Negative values are rejected."""
    try:
        value = quantize_money(to_decimal(amount))
    except ValueError:
        raise ValidationError("balance must be a number")
    if value < 0:
        raise ValidationError("balance must be >= 0")

    row = _balance_row(device_id, for_update=True)
    if row is None:
        row = Balance(device_id=device_id, balance=value)
        db.session.add(row)
    else:
        row.balance = value
        row.updated_at = utcnow()

    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return value
