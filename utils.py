"""Utility / helper functions used across the application."""

from __future__ import annotations

import datetime
import logging
from datetime import timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


# ---------------------------------------------------------------------------
# Datetime helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime.datetime:
    """Return current UTC datetime.  Used as SQLAlchemy column default."""
    return datetime.datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """Attach UTC to naive datetimes (SQLite returns them without tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_millis(raw) -> Optional[datetime.datetime]:
    """Convert an epoch-milliseconds value to an aware UTC datetime."""
    if raw is None or raw == "":
        return None
    try:
        return datetime.datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc)
    except (ValueError, TypeError, OverflowError, OSError):
        logger.warning("Could not parse epoch millis: %r", raw)
        return None


def to_millis(value: Optional[datetime.datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(ensure_utc(value).timestamp() * 1000)


# ---------------------------------------------------------------------------
# Number conversions
# ---------------------------------------------------------------------------

def to_decimal(value) -> Optional[Decimal]:
    """Convert *value* to ``Decimal``; ``None``/empty stays ``None``.

    Raises ``ValueError`` for values that are present but not numeric, so
    callers can report a field error instead of silently using zero.
    """
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Not a number: {value!r}") from exc


def money(value: Decimal) -> Decimal:
    """Quantize *value* to cents."""
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def decimal_to_float(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None
