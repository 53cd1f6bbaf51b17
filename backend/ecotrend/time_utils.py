from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

# Kaspi sends txn_date as a compact local timestamp, e.g. 20250413000000
KASPI_TXN_DATE_FORMAT = "%Y%m%d%H%M%S"


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_kaspi_txn_date(value: Optional[str]) -> Optional[datetime]:
    """
    Parse the provider's YYYYMMDDhhmmss timestamp.

    Returns None for missing or malformed values; callers decide the fallback.
    """
    if not value:
        return None
    try:
        return datetime.strptime(value.strip(), KASPI_TXN_DATE_FORMAT)
    except ValueError:
        return None


def parse_iso_date(value: Optional[str]) -> Optional[date]:
    """
    Parse an ISO-8601 date ("YYYY-MM-DD"); a full datetime string is
    truncated to its date part.

    - None / "" -> None
    - raises ValueError on anything else that does not parse
    """
    if value is None:
        return None
    s = value.strip()
    if not s:
        return None
    if len(s) > 10:
        s = s[:10]
    return date.fromisoformat(s)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")


def to_iso_date(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None
