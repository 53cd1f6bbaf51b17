from __future__ import annotations

from ..extensions import db
from ..money import money_float
from ..time_utils import to_iso_date, to_utc_z, utcnow

MAX_TANK_NUMBER = 7


class Device(db.Model):
    """
    Physical chemical-dispensing unit.

    Root aggregate: balance, tanks, flow states, transactions and dispensing
    operations all reference devices.device_id through real foreign keys.
    Devices are never deleted in normal operation.
    """
    __tablename__ = "devices"

    # Stable external identifier (MAC address or serial printed on the unit)
    device_id = db.Column(db.String(128), primary_key=True)
    name = db.Column(db.String(128), nullable=False)
    location = db.Column(db.String(255), nullable=False, default="")

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "name": self.name,
            "location": self.location,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Chemical(db.Model):
    """
    One numbered tank on a device and the chemical loaded into it.

    price_per_liter is read when a dispensing session is calculated; a later
    price change does not touch sessions already created.
    """
    __tablename__ = "chemicals"
    __table_args__ = (
        db.UniqueConstraint("device_id", "tank_number", name="uq_chemicals_device_tank"),
        db.CheckConstraint(
            f"tank_number >= 1 AND tank_number <= {MAX_TANK_NUMBER}",
            name="ck_chemicals_tank_number_range",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    device_id = db.Column(db.String(128), db.ForeignKey("devices.device_id"), nullable=False, index=True)
    tank_number = db.Column(db.Integer, nullable=False)

    name = db.Column(db.String(128), nullable=False)
    price_per_liter = db.Column(db.Numeric(10, 2), nullable=False)

    batch_number = db.Column(db.String(64), nullable=True)
    manufacturing_date = db.Column(db.Date, nullable=True)
    expiration_date = db.Column(db.Date, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    device = db.relationship("Device", backref=db.backref("chemicals", lazy=True, order_by="Chemical.tank_number"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "device_id": self.device_id,
            "tank_number": self.tank_number,
            "name": self.name,
            "price_per_liter": money_float(self.price_per_liter),
            "batch_number": self.batch_number,
            "manufacturing_date": to_iso_date(self.manufacturing_date),
            "expiration_date": to_iso_date(self.expiration_date),
            "updated_at": to_utc_z(self.updated_at),
        }


class Balance(db.Model):
    """
    Prepaid balance for the legacy top-up payment mode.

    INVARIANT: balance >= 0, enforced by a CHECK constraint and by the
    conditional decrement in balance_service.decrease_balance.
    """
    __tablename__ = "balances"
    __table_args__ = (
        db.CheckConstraint("balance >= 0", name="ck_balances_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    device_id = db.Column(db.String(128), db.ForeignKey("devices.device_id"), nullable=False, unique=True)
    balance = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    device = db.relationship("Device")

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "balance": money_float(self.balance),
            "updated_at": to_utc_z(self.updated_at),
        }
