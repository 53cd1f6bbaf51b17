# Overview: Error taxonomy shared by services and routes.

"""
Service errors carry the HTTP status the internal-facing routes answer with.

Kaspi-facing routes never let these escape: every outcome there is an
HTTP 200 body with a numeric result code (see services/kaspi_service.py).
"""

from __future__ import annotations


class EcoTrendError(Exception):
    """Base class for expected, classified failures."""

    status_code = 500

    def __init__(self, message: str = "", *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def __str__(self) -> str:
        return self.message


class ValidationError(EcoTrendError, ValueError):
    """400-level input problem."""

    status_code = 400


class NotFoundError(EcoTrendError):
    """Device, chemical, session or transaction does not exist."""

    status_code = 404


class ConflictError(EcoTrendError):
    """409-level business rule conflict (e.g., device id already registered)."""

    status_code = 409


class InvalidStageError(EcoTrendError):
    """Operation attempted from the wrong flow-state stage."""

    status_code = 400


class AlreadyDispensedError(EcoTrendError):
    """The transaction behind a session has already been dispensed."""

    status_code = 400


class AmountMismatchError(EcoTrendError):
    """Payment sum differs from the session amount by more than the tolerance."""

    status_code = 400


class DuplicateTransactionError(EcoTrendError):
    """A transaction with this external txn_id is already recorded."""

    status_code = 409

    def __init__(self, txn_id: str):
        super().__init__(f"Transaction {txn_id} already exists")
        self.txn_id = txn_id


class PersistenceError(EcoTrendError):
    """Database unreachable or an unexpected constraint violation."""

    status_code = 500


class ExternalServiceError(EcoTrendError):
    """Telemetry store unreachable; always recovered inside the bridge."""

    status_code = 502
