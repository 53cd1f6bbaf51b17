# Overview: Kaspi check/pay webhook handling; encapsulates business logic and database work.

"""
Kaspi Payment Gateway

WHY: Kaspi drives payments with two GET webhooks. `check` asks whether a
payment may be taken; `pay` reports that money has moved and may be
delivered more than once. Every answer is an HTTP 200 JSON body whose
numeric `result` carries the outcome.

RESULT CODES:
- 0: success
- 1: account (device) not found
- 5: any other failure, including internal errors

PAYMENT MODES (PAYMENT_MODE):
- direct:  a dispensing session at awaiting_payment is paid for exactly.
           Payment moves the session to payment_completed.
- balance: legacy top-up; payment credits the device balance.

Both modes share the eligibility waterfall and the idempotent pay skeleton:

    1. replay lookup by txn_id (committed rows only, no mutation)
    2. device status read (telemetry, outside the unit of work)
    3. unit of work: re-check replay, waterfall, create Transaction,
       apply side effect, commit
    4. best-effort telemetry after commit

A concurrent delivery that loses the txn_id uniqueness race is answered
exactly like a replay.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from flask import current_app

from ..errors import AmountMismatchError, DuplicateTransactionError
from ..extensions import db
from ..models import Transaction
from ..money import money_str, quantize_money, to_decimal, within_tolerance
from ..time_utils import parse_kaspi_txn_date, to_iso_date, to_utc_z, utcnow
from . import balance_service, device_service, flow_service
from .concurrency import end_read, run_with_retry
from .telemetry_service import get_device_status, get_telemetry
from .transaction_service import create_transaction, find_by_txn_id


RESULT_SUCCESS = 0
RESULT_ACCOUNT_NOT_FOUND = 1
RESULT_OTHER_ERROR = 5

COMMENT_CHECK_OK = "Payment check successful"
COMMENT_PAY_OK = "Payment successful"
COMMENT_REPLAY = "Transaction already processed"
COMMENT_INTERNAL = "Internal server error"

PAYMENT_MODE_DIRECT = "direct"
PAYMENT_MODE_BALANCE = "balance"


class KaspiRejection(Exception):
    """A business rule said no; carries the result code and comment to send back."""

    def __init__(self, result: int, comment: str):
        super().__init__(comment)
        self.result = result
        self.comment = comment


@dataclass
class KaspiRequest:
    txn_id: str
    account: str
    amount: Decimal | None
    raw_sum: Decimal | None = None
    txn_date: datetime | None = None


# =============================================================================
# WIRE FORMAT
# =============================================================================

def build_fields(pairs) -> dict:
    """
    Build Kaspi's numbered field map from (name, text) pairs.

    Pairs whose text is None are skipped; numbering stays contiguous.
    """
    fields = {}
    index = 1
    for name, text in pairs:
        if text is None:
            continue
        fields[f"field{index}"] = {"@name": name, "#text": str(text)}
        index += 1
    return fields


def _bin() -> str:
    return current_app.config["KASPI_BIN"]


def failure_response(txn_id, result: int, comment: str) -> dict:
    return {"txn_id": txn_id, "result": result, "comment": comment, "bin": _bin()}


def replay_response(txn: Transaction) -> dict:
    return {
        "txn_id": txn.txn_id,
        "prv_txn": txn.prv_txn_id,
        "sum": money_str(txn.amount),
        "result": txn.status,
        "comment": COMMENT_REPLAY,
        "bin": _bin(),
    }


def parse_request(params, *, require_sum: bool) -> KaspiRequest:
    """
    Validate webhook query parameters.

    Raises:
        KaspiRejection: missing txn_id/account, or a sum that is not a
                        positive number
    """
    txn_id = (params.get("txn_id") or "").strip()
    account = (params.get("account") or "").strip()
    if not txn_id:
        raise KaspiRejection(RESULT_OTHER_ERROR, "Missing txn_id")
    if not account:
        raise KaspiRejection(RESULT_OTHER_ERROR, "Missing account")

    raw_sum = params.get("sum")
    amount = None
    raw_value = None
    if raw_sum not in (None, ""):
        try:
            raw_value = to_decimal(raw_sum)
        except ValueError:
            raise KaspiRejection(RESULT_OTHER_ERROR, "Invalid sum")
        if raw_value <= 0:
            raise KaspiRejection(RESULT_OTHER_ERROR, "Invalid sum")
        amount = quantize_money(raw_value)
    elif require_sum:
        raise KaspiRejection(RESULT_OTHER_ERROR, "Missing sum")

    return KaspiRequest(
        txn_id=txn_id,
        account=account,
        amount=amount,
        raw_sum=raw_value,
        txn_date=parse_kaspi_txn_date(params.get("txn_date")),
    )


# =============================================================================
# GATEWAYS
# =============================================================================

class PaymentGateway:
    """Shared waterfall and idempotent pay skeleton; subclasses add mode rules."""

    mode = None

    def __init__(self, tolerance: Decimal = Decimal("0.01")):
        self.tolerance = Decimal(tolerance)

    # ------------------------------------------------------------------
    # Waterfall
    # ------------------------------------------------------------------

    def check_device(self, request: KaspiRequest, device_active: bool):
        """device exists -> device active -> at least one chemical."""
        if device_service.get_device(request.account) is None:
            raise KaspiRejection(RESULT_ACCOUNT_NOT_FOUND, "Device not found")
        if not device_active:
            raise KaspiRejection(RESULT_OTHER_ERROR, "Device is not active")
        chemicals = device_service.list_chemicals(request.account)
        if not chemicals:
            raise KaspiRejection(RESULT_OTHER_ERROR, "No chemicals available")
        return chemicals

    def check_amount(self, expected: Decimal, request: KaspiRequest) -> None:
        if request.raw_sum is None:
            raise KaspiRejection(RESULT_OTHER_ERROR, "Missing sum")
        if not within_tolerance(request.raw_sum, expected, self.tolerance):
            current_app.logger.warning(
                "Amount mismatch for txn %s: expected %s, got %s",
                request.txn_id, expected, request.raw_sum,
            )
            raise AmountMismatchError("Amount mismatch")

    def validate_check(self, request: KaspiRequest, device_active: bool) -> dict:
        """Run the mode's checks; return the success body extras (sum, fields)."""
        raise NotImplementedError

    def prepare_payment(self, request: KaspiRequest, device_active: bool) -> dict:
        """Re-run the checks inside the unit, locking what the payment will change."""
        raise NotImplementedError

    def apply_payment(self, request: KaspiRequest, txn: Transaction, context: dict) -> dict:
        """Apply the side effect for a freshly recorded txn; return success fields."""
        raise NotImplementedError

    def after_commit(self, request: KaspiRequest, txn: Transaction, context: dict) -> None:
        """Best-effort telemetry once the payment is durable."""

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def _rejected(self, action: str, txn_id, rejection: Exception) -> dict:
        result = getattr(rejection, "result", RESULT_OTHER_ERROR)
        current_app.logger.warning("Kaspi %s rejected for txn %s: %s", action, txn_id, rejection)
        return failure_response(txn_id, result, str(rejection))

    def check(self, params) -> dict:
        txn_id = params.get("txn_id")
        current_app.logger.info("Kaspi check: %s", dict(params))
        try:
            request = parse_request(params, require_sum=False)
            device_active = get_device_status().is_active(request.account)
            extras = self.validate_check(request, device_active)
        except (KaspiRejection, AmountMismatchError) as rejection:
            return self._rejected("check", txn_id, rejection)
        except Exception:
            current_app.logger.exception("Kaspi check failed for txn %s", txn_id)
            return failure_response(txn_id, RESULT_OTHER_ERROR, COMMENT_INTERNAL)
        finally:
            end_read()

        body = {
            "txn_id": request.txn_id,
            "result": RESULT_SUCCESS,
            "comment": COMMENT_CHECK_OK,
            "bin": _bin(),
        }
        body.update(extras)
        return body

    def pay(self, params) -> dict:
        txn_id = params.get("txn_id")
        current_app.logger.info("Kaspi pay: %s", dict(params))
        try:
            request = parse_request(params, require_sum=True)
        except KaspiRejection as rejection:
            return self._rejected("pay", txn_id, rejection)

        try:
            existing = find_by_txn_id(request.txn_id)
            if existing is not None:
                current_app.logger.info("Duplicate payment attempt detected for txn %s", request.txn_id)
                return replay_response(existing)
            end_read()

            device_active = get_device_status().is_active(request.account)

            def _op():
                if find_by_txn_id(request.txn_id) is not None:
                    raise DuplicateTransactionError(request.txn_id)
                context = self.prepare_payment(request, device_active)
                txn = create_transaction(
                    request.txn_id,
                    request.account,
                    request.amount,
                    request.txn_date or utcnow(),
                    status=RESULT_SUCCESS,
                    commit=False,
                )
                context["fields"] = self.apply_payment(request, txn, context)
                db.session.commit()
                return txn, context

            txn, context = run_with_retry(_op)
        except DuplicateTransactionError:
            current_app.logger.info("Concurrent duplicate payment for txn %s answered as replay", request.txn_id)
            existing = find_by_txn_id(request.txn_id)
            if existing is None:
                return failure_response(txn_id, RESULT_OTHER_ERROR, COMMENT_INTERNAL)
            return replay_response(existing)
        except (KaspiRejection, AmountMismatchError) as rejection:
            return self._rejected("pay", txn_id, rejection)
        except Exception:
            current_app.logger.exception("Kaspi pay failed for txn %s; unit rolled back", txn_id)
            return failure_response(txn_id, RESULT_OTHER_ERROR, COMMENT_INTERNAL)
        finally:
            end_read()

        current_app.logger.info(
            "Payment successful for txn %s: device=%s amount=%s prv_txn=%s",
            txn.txn_id, txn.device_id, txn.amount, txn.prv_txn_id,
        )
        self.after_commit(request, txn, context)
        return {
            "txn_id": txn.txn_id,
            "prv_txn": txn.prv_txn_id,
            "sum": money_str(txn.amount),
            "result": RESULT_SUCCESS,
            "comment": COMMENT_PAY_OK,
            "bin": _bin(),
            "fields": context["fields"],
        }


class DirectPaymentGateway(PaymentGateway):
    """Pays for one dispensing session at awaiting_payment."""

    mode = PAYMENT_MODE_DIRECT

    def _awaiting_flow(self, request: KaspiRequest, *, for_update: bool = False):
        flow = flow_service.find_awaiting_flow(request.txn_id, for_update=for_update)
        if flow is None or flow.device_id != request.account:
            raise KaspiRejection(RESULT_OTHER_ERROR, "No pending session for this transaction")
        return flow

    def _session_fields(self, request: KaspiRequest, flow, extra=()):
        chemical = flow.chemical
        pairs = [
            ("device_id", request.account),
            ("chemical", chemical.name if chemical else None),
            ("volume", f"{Decimal(flow.volume):f}"),
            ("amount", money_str(flow.amount)),
            ("batch", chemical.batch_number if chemical else None),
            ("expiration_date", to_iso_date(chemical.expiration_date) if chemical else None),
        ]
        pairs.extend(extra)
        return build_fields(pairs)

    def validate_check(self, request, device_active):
        self.check_device(request, device_active)
        flow = self._awaiting_flow(request)
        self.check_amount(Decimal(flow.amount), request)
        return {"sum": money_str(flow.amount), "fields": self._session_fields(request, flow)}

    def prepare_payment(self, request, device_active):
        self.check_device(request, device_active)
        flow = self._awaiting_flow(request, for_update=True)
        self.check_amount(Decimal(flow.amount), request)
        return {"flow": flow}

    def apply_payment(self, request, txn, context):
        flow = context["flow"]
        flow_service.complete_payment(flow, txn)
        context.update({
            "session_id": flow.session_id,
            "tank_number": flow.tank_number,
            "volume": Decimal(flow.volume),
        })
        return self._session_fields(request, flow, extra=[
            ("receipt_number", flow_service.generate_receipt_number(request.account)),
            ("transaction_date", to_utc_z(txn.txn_date)),
        ])

    def after_commit(self, request, txn, context):
        get_telemetry().push_dispense_command(txn.device_id, {
            "session_id": context["session_id"],
            "txn_id": txn.txn_id,
            "tank_number": context["tank_number"],
            "volume": float(context["volume"]),
        })


class BalancePaymentGateway(PaymentGateway):
    """Legacy top-up: payment credits the device balance."""

    mode = PAYMENT_MODE_BALANCE

    def validate_check(self, request, device_active):
        chemicals = self.check_device(request, device_active)
        return {"fields": build_fields([
            ("device_id", request.account),
            ("available_chemicals", len(chemicals)),
        ])}

    def prepare_payment(self, request, device_active):
        self.check_device(request, device_active)
        return {}

    def apply_payment(self, request, txn, context):
        balance_service.increase_balance(request.account, txn.amount, commit=False)
        return build_fields([
            ("device_id", request.account),
            ("balance_added", money_str(txn.amount)),
            ("transaction_date", to_utc_z(txn.txn_date)),
        ])

    def after_commit(self, request, txn, context):
        get_telemetry().mirror_balance(txn.device_id, Decimal(txn.amount))


GATEWAYS = {
    PAYMENT_MODE_DIRECT: DirectPaymentGateway,
    PAYMENT_MODE_BALANCE: BalancePaymentGateway,
}


def build_gateway(config) -> PaymentGateway:
    mode = (config.get("PAYMENT_MODE") or PAYMENT_MODE_DIRECT).strip().lower()
    try:
        gateway_cls = GATEWAYS[mode]
    except KeyError:
        raise ValueError(f"Unknown PAYMENT_MODE {mode!r}; expected one of {sorted(GATEWAYS)}")
    return gateway_cls(tolerance=Decimal(str(config.get("AMOUNT_TOLERANCE", "0.01"))))


def get_gateway() -> PaymentGateway:
    return current_app.extensions["payment_gateway"]


def status_payload() -> dict:
    return {
        "success": True,
        "message": "Kaspi API is working properly",
        "mode": get_gateway().mode,
        "timestamp": to_utc_z(utcnow()),
    }
