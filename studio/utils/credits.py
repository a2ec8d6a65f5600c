from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any


def to_credit_amount(value: Any, default: int = 0) -> int:
    """Gateway amounts arrive as numbers or strings; credits are whole units."""
    if value is None or isinstance(value, bool):
        return default

    if isinstance(value, int):
        return value

    if isinstance(value, str):
        raw = value.strip().replace(",", "")
        if not raw:
            return default
        value = raw

    try:
        dec = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return default
    if not dec.is_finite():
        return default
    return int(dec.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
