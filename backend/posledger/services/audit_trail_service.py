# Overview: Service-layer operations for the overall transactions audit trail.

from __future__ import annotations

from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Optional

from flask import current_app

from ..extensions import db
from ..models import AuditTrailEntry, Branch, Business, Vendor
from posledger.money import money_str, q3
from posledger.validation import ValidationError
"""
Audit Trail Invariants (authoritative)

- Append-only business-wide log, one row per sub-event (per bucket of a sale
  or return, per manual adjustment, per tax or rental settlement).
- Not chained: no running balance, rows never reference each other.
- owner_profit_contribution is signed; returns and removals are negative.
- Rows are written inside the same DB transaction as the saga step recording them.
"""


PAYMENT_METHODS = ("cash", "card", "online")


def _jsonable_details(details: dict | None) -> dict | None:
    # JSON columns cannot hold Decimal
    if details is None:
        return None
    return {k: (money_str(v) if isinstance(v, Decimal) else v) for k, v in details.items()}


def append_audit_entry(
    *,
    business_id: int,
    branch_id: int | None,
    transaction_type: str,
    transaction_reason: str,
    amount: Decimal,
    owner_profit_contribution: Decimal,
    payment_method: str,
    vendor_id: int | None = None,
    customer_name: str | None = None,
    details: Optional[dict[str, Any]] = None,
    idempotency_key: str | None = None,
) -> AuditTrailEntry:
    """
    Append one audit row (flushed, not committed).

    - Names are snapshotted from the reference rows at write time.
    - No domain logic here; the caller decides the signs.
    """
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of {list(PAYMENT_METHODS)}")

    business = db.session.get(Business, business_id)
    if not business:
        raise ValidationError(f"Business {business_id} not found for audit entry")

    branch = db.session.get(Branch, branch_id) if branch_id is not None else None
    vendor = db.session.get(Vendor, vendor_id) if vendor_id is not None else None
    if vendor_id is not None and vendor is None:
        raise ValidationError(f"Vendor {vendor_id} not found for audit entry")

    entry = AuditTrailEntry(
        business_id=business.id,
        business_name=business.name,
        branch_id=branch.id if branch else None,
        branch_name=branch.name if branch else "",
        vendor_id=vendor.id if vendor else None,
        vendor_name=vendor.name if vendor else None,
        customer_name=customer_name,
        transaction_type=transaction_type,
        transaction_reason=transaction_reason,
        amount=q3(amount),
        owner_profit_contribution=q3(owner_profit_contribution),
        payment_method=payment_method,
        currency=current_app.config.get("LEDGER_CURRENCY", "OMR"),
        details=_jsonable_details(details),
        idempotency_key=idempotency_key,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def list_audit_entries(
    business_id: int,
    *,
    branch_id: int | None = None,
    vendor_id: int | None = None,
    transaction_type: str | None = None,
    payment_method: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    limit: int = 100,
) -> list[AuditTrailEntry]:
    """
    Read API, newest first. Date bounds are inclusive whole days.
    """
    q = db.session.query(AuditTrailEntry).filter(AuditTrailEntry.business_id == business_id)
    if branch_id is not None:
        q = q.filter(AuditTrailEntry.branch_id == branch_id)
    if vendor_id is not None:
        q = q.filter(AuditTrailEntry.vendor_id == vendor_id)
    if transaction_type:
        q = q.filter(AuditTrailEntry.transaction_type == transaction_type)
    if payment_method:
        q = q.filter(AuditTrailEntry.payment_method == payment_method)
    if start_date is not None:
        q = q.filter(AuditTrailEntry.created_at >= datetime.combine(start_date, time.min))
    if end_date is not None:
        q = q.filter(AuditTrailEntry.created_at < datetime.combine(end_date + timedelta(days=1), time.min))

    return q.order_by(AuditTrailEntry.created_at.desc(), AuditTrailEntry.id.desc()).limit(limit).all()


def entries_for_key(idempotency_key: str) -> list[AuditTrailEntry]:
    return (
        db.session.query(AuditTrailEntry)
        .filter_by(idempotency_key=idempotency_key)
        .order_by(AuditTrailEntry.id.asc())
        .all()
    )
