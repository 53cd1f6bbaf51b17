# Overview: Service-layer operations for maintenance; encapsulates business logic and database work.

from __future__ import annotations

from sqlalchemy import select

from ..extensions import db
from ..models import Balance, Chemical, Device, DispensingOperation, FlowState, Transaction

DEVICE_CHILD_TABLES = (Balance, Chemical, FlowState, Transaction, DispensingOperation)


def find_orphans() -> dict[str, int]:
    """
    Count rows whose device_id has no matching device.

    Foreign keys make this zero on a healthy database; a non-zero count
    points at data loaded with enforcement switched off.
    """
    known = select(Device.device_id)
    return {
        model.__tablename__: db.session.query(model).filter(~model.device_id.in_(known)).count()
        for model in DEVICE_CHILD_TABLES
    }
