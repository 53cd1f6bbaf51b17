from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

CENT = Decimal("0.01")


def to_decimal(value: Any) -> Decimal:
    """
    Coerce a request value (str, int, float, Decimal) to Decimal.

    Floats go through str() so 0.1 stays 0.1. Booleans, NaN and infinities
    are rejected with ValueError.
    """
    if isinstance(value, bool) or value is None:
        raise ValueError("amount must be a number")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise ValueError(f"{value!r} is not a number")
    else:
        raise ValueError("amount must be a number")
    if not result.is_finite():
        raise ValueError("amount must be finite")
    return result


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def money_str(value: Optional[Decimal]) -> Optional[str]:
    """Wire format used by Kaspi: two decimals, dot separator."""
    if value is None:
        return None
    return f"{quantize_money(Decimal(value)):.2f}"


def money_float(value: Optional[Decimal]) -> Optional[float]:
    if value is None:
        return None
    return float(quantize_money(Decimal(value)))


def within_tolerance(a: Decimal, b: Decimal, tolerance: Decimal) -> bool:
    return abs(Decimal(a) - Decimal(b)) <= tolerance
