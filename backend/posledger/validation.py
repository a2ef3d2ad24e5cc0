from __future__ import annotations

from decimal import Decimal
from typing import Any

from posledger.money import MoneyFormatError, q3, to_money


# Maximum single amount: 999,999,999.999 OMR
# This prevents Numeric(14, 3) overflow and nonsensical amounts
MAX_AMOUNT = Decimal("999999999.999")

DISCOUNT_FIXED = "fixed"
DISCOUNT_PERCENTAGE = "percentage"
VALID_DISCOUNT_TYPES = (DISCOUNT_FIXED, DISCOUNT_PERCENTAGE)


class ValidationError(ValueError):
    """400-level input problem. Raised before any ledger write."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., duplicate business code)."""


def parse_amount(value: Any, field: str = "amount", *, allow_zero: bool = False) -> Decimal:
    """Parse and range-check a money input; negative amounts are always rejected."""
    try:
        amount = to_money(value, field=field)
    except MoneyFormatError as exc:
        raise ValidationError(str(exc))

    if amount < 0:
        raise ValidationError(f"{field} must be >= 0")
    if amount == 0 and not allow_zero:
        raise ValidationError(f"{field} must be > 0")
    if amount > MAX_AMOUNT:
        raise ValidationError(f"{field} cannot exceed {MAX_AMOUNT}")
    return amount


def parse_quantity(value: Any, field: str = "quantity") -> int:
    # Integers only - reject floats, bools and "1.5"
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped.lstrip("-").isdigit():
            raise ValidationError(f"{field} must be an integer")
        value = int(stripped)
    if not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer")
    if value <= 0:
        raise ValidationError(f"{field} must be > 0")
    return value


def require_ids(**ids: Any) -> None:
    """Scope identifiers must all be present."""
    missing = [name for name, value in ids.items() if value is None or value == ""]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(sorted(missing))}")


def validate_discount(discount_type: str, value: Decimal, subtotal: Decimal) -> Decimal:
    """
    Precondition check for a manual discount or coupon.

    Returns the discount amount. Percentages above 100 and fixed amounts above
    the subtotal are rejected here, never silently clamped.
    """
    if discount_type not in VALID_DISCOUNT_TYPES:
        raise ValidationError(f"discount type must be one of {list(VALID_DISCOUNT_TYPES)}")
    if value < 0:
        raise ValidationError("discount value must be >= 0")

    if discount_type == DISCOUNT_PERCENTAGE:
        if value > 100:
            raise ValidationError("Percentage discount cannot exceed 100%")
        return q3(subtotal * value / Decimal(100))

    if value > subtotal:
        raise ValidationError("Discount exceeds order subtotal")
    return q3(value)
