from __future__ import annotations

from decimal import Decimal
from typing import Any

from ..extensions import db
from ..models import Business, BusinessSettings
from posledger.money import MoneyFormatError, ZERO, q3, to_money, to_rate
from posledger.validation import ValidationError
from .concurrency import run_with_retry
from .proration_service import PricingRules


class SettingsError(ValueError):
    pass


class SettingsNotFoundError(SettingsError):
    pass


EDITABLE_FIELDS = {
    "tax_enabled",
    "tax_rate",
    "vendor_commission_enabled",
    "default_commission_rate",
    "minimum_commission_amount",
}


def get_pricing_rules(business_id: int) -> PricingRules:
    """
    Immutable pricing snapshot for one request.

    A business without a settings row prices with everything disabled.
    """
    row = db.session.query(BusinessSettings).filter_by(business_id=business_id).first()
    if row is None:
        return PricingRules()
    return PricingRules(
        tax_enabled=bool(row.tax_enabled),
        tax_rate=to_rate(row.tax_rate, field="tax_rate"),
        vendor_commission_enabled=bool(row.vendor_commission_enabled),
        default_commission_rate=to_rate(row.default_commission_rate, field="default_commission_rate"),
        minimum_commission_amount=q3(to_rate(row.minimum_commission_amount)),
    )


def _coerce(field: str, value: Any):
    if field in ("tax_enabled", "vendor_commission_enabled"):
        if not isinstance(value, bool):
            raise ValidationError(f"{field} must be a boolean")
        return value
    try:
        if field == "minimum_commission_amount":
            parsed = to_money(value, field=field)
        else:
            parsed = to_rate(value, field=field)
    except MoneyFormatError as exc:
        raise ValidationError(str(exc))
    if parsed < 0:
        raise ValidationError(f"{field} must be >= 0")
    if field != "minimum_commission_amount" and parsed > 100:
        raise ValidationError(f"{field} cannot exceed 100")
    return parsed


def update_business_settings(business_id: int, **changes: Any) -> BusinessSettings:
    """
    Create or update a business's pricing settings.

    Concurrent edits are caught by the version_id column and retried.
    """
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown settings: {', '.join(sorted(unknown))}")
    coerced = {key: _coerce(key, value) for key, value in changes.items()}

    def _op():
        business = db.session.get(Business, business_id)
        if business is None:
            raise SettingsNotFoundError("Business not found")
        row = db.session.query(BusinessSettings).filter_by(business_id=business_id).first()
        if row is None:
            row = BusinessSettings(
                business_id=business_id,
                tax_enabled=False,
                tax_rate=Decimal("0"),
                vendor_commission_enabled=False,
                default_commission_rate=Decimal("0"),
                minimum_commission_amount=ZERO,
            )
            db.session.add(row)
        for key, value in coerced.items():
            setattr(row, key, value)
        db.session.commit()
        return row

    return run_with_retry(_op)
