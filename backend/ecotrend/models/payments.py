from __future__ import annotations

from ..extensions import db
from ..money import money_float
from ..time_utils import to_iso_date, to_utc_z, utcnow


class FlowState(db.Model):
    """
    One dispensing session: cost calculation -> payment -> physical dispense.

    LIFECYCLE (services/flow_service.py owns the transitions):
    - calculated:        cost computed, no payment reference yet
    - awaiting_payment:  Kaspi txn_id minted and attached (transaction_id)
    - payment_completed: pay webhook recorded a Transaction for transaction_id
    - completed:         DispensingOperation recorded, transaction consumed

    Rows are never deleted; they double as the session audit trail.
    """
    __tablename__ = "flow_states"
    __table_args__ = (
        db.Index("ix_flow_states_device_stage_created", "device_id", "stage", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.String(64), nullable=False, unique=True)
    device_id = db.Column(db.String(128), db.ForeignKey("devices.device_id"), nullable=False, index=True)
    stage = db.Column(db.String(32), nullable=False, index=True)

    chemical_id = db.Column(db.Integer, db.ForeignKey("chemicals.id"), nullable=True)
    tank_number = db.Column(db.Integer, nullable=False)
    volume = db.Column(db.Numeric(10, 2), nullable=False)  # millilitres
    amount = db.Column(db.Numeric(10, 2), nullable=False)

    # External Kaspi txn_id, attached when the QR code is generated
    transaction_id = db.Column(db.String(64), nullable=True, unique=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    chemical = db.relationship("Chemical")

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "device_id": self.device_id,
            "stage": self.stage,
            "chemical_id": self.chemical_id,
            "tank_number": self.tank_number,
            "volume": money_float(self.volume),
            "amount": money_float(self.amount),
            "transaction_id": self.transaction_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Transaction(db.Model):
    """
    Ledger row for one Kaspi payment.

    IDEMPOTENCY: txn_id carries a UNIQUE constraint. The lookup before insert
    is only a shortcut; the constraint is what makes a second insert for the
    same txn_id fail.

    status is the Kaspi result code recorded for the payment (0 = success),
    not a process stage.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        db.Index("ix_transactions_device_created", "device_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    txn_id = db.Column(db.String(64), nullable=False, unique=True)
    prv_txn_id = db.Column(db.String(64), nullable=False)
    device_id = db.Column(db.String(128), db.ForeignKey("devices.device_id"), nullable=False, index=True)

    amount = db.Column(db.Numeric(10, 2), nullable=False)
    txn_date = db.Column(db.DateTime, nullable=False, default=utcnow)
    status = db.Column(db.Integer, nullable=False, default=0)
    dispensed = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "txn_id": self.txn_id,
            "prv_txn_id": self.prv_txn_id,
            "device_id": self.device_id,
            "amount": money_float(self.amount),
            "txn_date": to_utc_z(self.txn_date),
            "status": self.status,
            "dispensed": self.dispensed,
            "created_at": to_utc_z(self.created_at),
        }


class DispensingOperation(db.Model):
    """Immutable record of a completed dispense, with receipt snapshot."""
    __tablename__ = "dispensing_operations"
    __table_args__ = (
        db.Index("ix_dispensing_device_created", "device_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=True, unique=True)
    device_id = db.Column(db.String(128), db.ForeignKey("devices.device_id"), nullable=False, index=True)

    tank_number = db.Column(db.Integer, nullable=False)
    chemical_name = db.Column(db.String(128), nullable=False)
    price_per_liter = db.Column(db.Numeric(10, 2), nullable=False)
    volume = db.Column(db.Numeric(10, 2), nullable=False)
    total_cost = db.Column(db.Numeric(10, 2), nullable=False)

    batch_number = db.Column(db.String(64), nullable=True)
    expiration_date = db.Column(db.Date, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="completed")
    receipt_number = db.Column(db.String(128), nullable=False, unique=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    transaction = db.relationship("Transaction")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "device_id": self.device_id,
            "tank_number": self.tank_number,
            "chemical_name": self.chemical_name,
            "price_per_liter": money_float(self.price_per_liter),
            "volume": money_float(self.volume),
            "total_cost": money_float(self.total_cost),
            "batch_number": self.batch_number,
            "expiration_date": to_iso_date(self.expiration_date),
            "status": self.status,
            "receipt_number": self.receipt_number,
            "created_at": to_utc_z(self.created_at),
        }
