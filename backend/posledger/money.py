"""
Fixed-point money helpers.

The business currency (OMR) has a minor unit of thousandths, so every ledger
amount is a Decimal with exactly 3 places. q3() is the one rounding function
used before anything is written; floats are refused outright.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable

MONEY_DECIMAL_PLACES = 3
MONEY_QUANTUM = Decimal("0.001")
ZERO = Decimal("0.000")
DEFAULT_ROUNDING = ROUND_HALF_UP


class MoneyFormatError(ValueError):
    """Raised when a value cannot be interpreted as a fixed-point amount."""


def q3(value: Decimal | int) -> Decimal:
    """Round to the currency's minor unit (0.001) with ROUND_HALF_UP."""
    if isinstance(value, float):
        raise MoneyFormatError("Binary floats are not accepted for money; pass a str or Decimal")
    return Decimal(value).quantize(MONEY_QUANTUM, rounding=DEFAULT_ROUNDING)


def to_money(value: Any, *, field: str = "amount") -> Decimal:
    """
    Parse client input into a 3-place Decimal.

    Accepts Decimal, int and numeric strings. Floats are rejected because
    JSON numbers with fractions cannot be trusted to 0.001.
    """
    if value is None:
        raise MoneyFormatError(f"{field} is required")
    if isinstance(value, bool):
        raise MoneyFormatError(f"{field} must be a number")
    if isinstance(value, float):
        raise MoneyFormatError(f"{field} must be sent as a string or integer, not a float")
    if isinstance(value, (Decimal, int)):
        parsed = Decimal(value)
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise MoneyFormatError(f"{field} is required")
        try:
            parsed = Decimal(stripped)
        except InvalidOperation:
            raise MoneyFormatError(f"{field} must be a decimal number")
    else:
        raise MoneyFormatError(f"{field} must be a decimal number")

    if not parsed.is_finite():
        raise MoneyFormatError(f"{field} must be finite")
    return q3(parsed)


def to_rate(value: Any, *, field: str = "rate") -> Decimal:
    """Percent rates (tax, commission) keep their own precision."""
    if value is None:
        return Decimal("0")
    if isinstance(value, float):
        # Settings rows may come back from SQLite as floats
        value = repr(value)
    try:
        parsed = Decimal(str(value).strip())
    except InvalidOperation:
        raise MoneyFormatError(f"{field} must be a decimal number")
    if not parsed.is_finite():
        raise MoneyFormatError(f"{field} must be finite")
    return parsed


def money_sum(values: Iterable[Decimal]) -> Decimal:
    return q3(sum(values, ZERO))


def money_str(value: Decimal | None) -> str | None:
    """Serialize a stored amount as a 3-place decimal string ("21.000")."""
    if value is None:
        return None
    amount = q3(value)
    if amount.is_zero():
        # Negated zero amounts render as "0.000", not "-0.000"
        amount = ZERO
    return str(amount)


def to_jsonable(value: Any) -> Any:
    """Convert Decimal and date leaves of a stats structure into strings."""
    if isinstance(value, Decimal):
        return money_str(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value
