"""Decimal helpers — every price, PnL and threshold goes through here."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

ZERO = Decimal("0")
HUNDRED = Decimal("100")
_CENT = Decimal("0.01")


def to_decimal(value: Any, default: Decimal | None = None) -> Decimal | None:
    """Coerce ints, strings and floats to Decimal; unparsable → ``default``.

    Floats go through ``str()`` so 0.1 stays 0.1.
    """
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return default


def round2(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def fmt_rupees(value: Decimal | None) -> str:
    if value is None:
        return "n/a"
    return f"₹{round2(value)}"


def fmt_pct(value: Decimal | None) -> str:
    if value is None:
        return "n/a"
    return f"{round2(value)}%"
