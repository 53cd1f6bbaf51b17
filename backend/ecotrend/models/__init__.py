from .devices import Device, Chemical, Balance, MAX_TANK_NUMBER
from .payments import FlowState, Transaction, DispensingOperation

__all__ = [
    'Device', 'Chemical', 'Balance', 'MAX_TANK_NUMBER',
    'FlowState', 'Transaction', 'DispensingOperation',
]
