"""Normalization and validation helpers shared by the store and the ledger."""

from __future__ import annotations

import math
import re
from datetime import datetime, tzinfo
from decimal import Decimal
from typing import Any, Optional, Tuple

from . import log
from .errors import InvalidInputError


_MONTH_PATTERN = re.compile(r"^(\d{4})-(\d{2})$")


def normalize_code(raw: Any) -> str:
    """Return the canonical (trimmed, upper-case) form of a product code.

    Raises:
        InvalidInputError: If ``raw`` is not text or is blank after trimming.
    """
    if not isinstance(raw, str):
        log.error("Product code validation failed: %r", raw)
        raise InvalidInputError("Product code must be a string")
    code = raw.strip().upper()
    if not code:
        log.error("Product code validation failed: blank value")
        raise InvalidInputError("Product code must not be empty")
    return code


def normalize_name(raw: Any) -> str:
    """Return a trimmed, non-empty product name."""
    if not isinstance(raw, str):
        log.error("Product name validation failed: %r", raw)
        raise InvalidInputError("Product name must be a string")
    name = raw.strip()
    if not name:
        log.error("Product name validation failed: blank value")
        raise InvalidInputError("Product name must not be empty")
    return name


def normalize_optional_text(raw: Any) -> Optional[str]:
    """Trim free text, mapping ``None`` and blank strings to ``None``."""
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


def _coerce_integer(value: Any, *, field: str) -> int:
    # bool is an int subclass; a flag is never a quantity.
    if isinstance(value, bool):
        raise InvalidInputError(f"{field} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, (float, Decimal)):
        if math.isfinite(value) and value == int(value):
            return int(value)
    log.error("Integer validation failed for %s: %r", field, value)
    raise InvalidInputError(f"{field} must be an integer")


def require_quantity(value: Any, *, field: str = "quantity") -> int:
    """Validate a stock level: an integer that is zero or positive."""
    quantity = _coerce_integer(value, field=field)
    if quantity < 0:
        log.error("Quantity validation failed: %s", quantity)
        raise InvalidInputError(f"{field} must be zero or positive")
    return quantity


def require_positive_amount(value: Any, *, field: str = "amount") -> int:
    """Validate a sale amount: an integer of at least one unit."""
    amount = _coerce_integer(value, field=field)
    if amount < 1:
        log.error("Amount validation failed: %s", amount)
        raise InvalidInputError(f"{field} must be at least 1")
    return amount


def require_limit(value: Any) -> int:
    """Validate a result-size limit."""
    return require_positive_amount(value, field="limit")


def parse_month(raw: Any) -> Tuple[int, int]:
    """Parse a ``YYYY-MM`` string into a ``(year, month)`` tuple."""
    if not isinstance(raw, str):
        raise InvalidInputError("month must be a string in YYYY-MM form")
    match = _MONTH_PATTERN.match(raw.strip())
    if match is None:
        log.error("Month validation failed: %r", raw)
        raise InvalidInputError(f"month must be in YYYY-MM form, got '{raw}'")
    year, month = int(match.group(1)), int(match.group(2))
    require_calendar_month(year, month)
    return year, month


def require_calendar_month(year: Any, month: Any) -> None:
    """Reject years and months that cannot name a calendar month."""
    if isinstance(year, bool) or not isinstance(year, int) or not 1 <= year <= 9998:
        raise InvalidInputError(f"year out of range: {year}")
    if isinstance(month, bool) or not isinstance(month, int) or not 1 <= month <= 12:
        raise InvalidInputError(f"month out of range: {month}")


def month_window(year: int, month: int, zone: tzinfo) -> Tuple[datetime, datetime]:
    """Return the half-open ``[first_of_month, first_of_next_month)`` window."""
    require_calendar_month(year, month)
    start = datetime(year, month, 1, tzinfo=zone)
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=zone)
    else:
        end = datetime(year, month + 1, 1, tzinfo=zone)
    return start, end


def format_month(year: int, month: int) -> str:
    """Render ``(year, month)`` in the ``YYYY-MM`` form used by report queries."""
    return f"{year:04d}-{month:02d}"
