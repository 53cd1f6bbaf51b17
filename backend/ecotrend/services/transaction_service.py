# Overview: Idempotent ledger of Kaspi payments keyed by the provider txn_id.

from __future__ import annotations

import secrets
import time
from datetime import datetime
from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import DuplicateTransactionError, NotFoundError, PersistenceError
from ..extensions import db
from ..models import Transaction
from ..money import quantize_money
from ..time_utils import utcnow
from .concurrency import lock_for_update


def generate_prv_txn_id() -> str:
    """Provider-side id: millisecond timestamp plus four random digits."""
    return f"{int(time.time() * 1000)}{secrets.randbelow(10000):04d}"


def find_by_txn_id(txn_id: str, *, for_update: bool = False) -> Transaction | None:
    query = db.session.query(Transaction).filter_by(txn_id=txn_id)
    if for_update:
        query = lock_for_update(query)
    return query.first()


def create_transaction(
    txn_id: str,
    device_id: str,
    amount: Decimal,
    txn_date: datetime | None = None,
    *,
    status: int = 0,
    commit: bool = False,
) -> Transaction:
    """
    Insert a ledger row for txn_id.

    The UNIQUE constraint on txn_id decides races. When the insert loses,
    the unit is rolled back and DuplicateTransactionError is raised so the
    caller can answer with the stored outcome.

    Raises:
        DuplicateTransactionError: txn_id already recorded
        PersistenceError: any other constraint failure
    """
    txn = Transaction(
        txn_id=txn_id,
        prv_txn_id=generate_prv_txn_id(),
        device_id=device_id,
        amount=quantize_money(Decimal(amount)),
        txn_date=txn_date or utcnow(),
        status=status,
        dispensed=False,
    )
    db.session.add(txn)
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        if find_by_txn_id(txn_id) is not None:
            raise DuplicateTransactionError(txn_id) from exc
        current_app.logger.exception("Failed to record transaction %s", txn_id)
        raise PersistenceError("Failed to record transaction") from exc

    if commit:
        db.session.commit()
    return txn


def mark_dispensed(txn: Transaction) -> None:
    """Flag a transaction as consumed by a dispense. Caller commits."""
    txn.dispensed = True
    db.session.flush()


def require_transaction(txn_id: str, *, for_update: bool = False) -> Transaction:
    txn = find_by_txn_id(txn_id, for_update=for_update)
    if txn is None:
        raise NotFoundError("Transaction not found")
    return txn


def list_for_device(device_id: str, limit: int = 10, offset: int = 0) -> tuple[list[Transaction], int]:
    query = db.session.query(Transaction).filter_by(device_id=device_id)
    total = query.count()
    rows = (
        query.order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .limit(limit)
        .offset(offset)
        .all()
    )
    return rows, total
