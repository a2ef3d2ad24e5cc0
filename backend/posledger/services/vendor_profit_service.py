# Overview: Vendor profit accumulator; appends to and reports on the per-vendor profit ledger.

"""
Vendor Profit Accumulator

WHY: For every vendor selling through a branch, the owner tracks a running
"accumulated profit": the commission earned on that vendor's products, plus
rent received, minus tax deductions, minus commission lost on returns.

INVARIANT: accumulated_profit == previous accumulated_profit + profit, with a
base of 0 per (business, branch, vendor) scope. Negative values are legal and
are reported as-is.

DESIGN: accumulate() resolves the head with the balance resolver and appends
with sequence = head.sequence + 1 under the same compare-and-swap as the cash
ledger. Callers own the transaction and the retry.
"""

from __future__ import annotations

import enum
from collections import OrderedDict
from datetime import date
from decimal import Decimal
from typing import Any

from ..extensions import db
from ..models import Branch, Business, Vendor, VendorTransaction
from posledger.money import ZERO, money_str, money_sum, q3
from posledger.time_utils import today
from posledger.validation import ValidationError
from .balance_service import VendorScope, latest_vendor_transaction, next_sequence
from .concurrency import append_with_cas


class VendorTransactionType(str, enum.Enum):
    PRODUCT_SALE = "product_sale"
    RENTAL = "rental"
    TAX = "tax"


class VendorTransactionStatus(str, enum.Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    CANCELLED = "cancelled"


TREND_PERIODS = ("daily", "weekly", "monthly")


# =============================================================================
# PAYLOAD PREPARATION
# =============================================================================

def _months_between(start: date, end: date) -> int:
    return (end.year - start.year) * 12 + end.month - start.month


def _current_tax_period() -> str:
    return today().strftime("%Y-%m")


def _prepare_product_sale(payload: dict) -> dict:
    name = payload.get("product_name")
    if not name:
        raise ValidationError("product_name is required for product_sale transactions")
    return {
        "product_name": name,
        "product_quantity": payload.get("product_quantity"),
        "unit_price": payload.get("unit_price"),
        "total_price": payload.get("total_price"),
        "notes": payload.get("notes") or f"Product sale: {name}",
    }


def _prepare_rental(payload: dict) -> dict:
    start = payload.get("rental_start_date")
    end = payload.get("rental_end_date")
    if start is None or end is None:
        raise ValidationError("rental_start_date and rental_end_date are required for rental transactions")
    if end < start:
        raise ValidationError("rental_end_date must not be before rental_start_date")
    return {
        "rental_start_date": start,
        "rental_end_date": end,
        "rental_period": payload.get("rental_period") or f"{_months_between(start, end)} months",
        "notes": payload.get("notes"),
    }


def _prepare_tax(payload: dict) -> dict:
    return {
        "tax_period": payload.get("tax_period") or _current_tax_period(),
        "tax_description": payload.get("tax_description") or "Monthly tax payment",
        "notes": payload.get("notes"),
    }


_PREPARERS = {
    VendorTransactionType.PRODUCT_SALE: _prepare_product_sale,
    VendorTransactionType.RENTAL: _prepare_rental,
    VendorTransactionType.TAX: _prepare_tax,
}


def _scope_names(scope: VendorScope) -> tuple[Business, Branch, Vendor]:
    business = db.session.get(Business, scope.business_id)
    branch = db.session.get(Branch, scope.branch_id)
    vendor = db.session.get(Vendor, scope.vendor_id)
    if business is None or branch is None or vendor is None:
        raise ValidationError(f"Unknown vendor scope {scope.as_dict()}")
    if branch.business_id != business.id:
        raise ValidationError("Branch does not belong to business")
    return business, branch, vendor


# =============================================================================
# ACCUMULATOR
# =============================================================================

def accumulate(
    scope: VendorScope,
    profit_delta: Decimal,
    transaction_type: VendorTransactionType | str,
    amount: Decimal,
    *,
    status: VendorTransactionStatus | str = VendorTransactionStatus.COMPLETED,
    idempotency_key: str | None = None,
    transaction_date: date | None = None,
    **payload: Any,
) -> VendorTransaction:
    """
    Append one vendor profit entry (flushed, not committed).

    profit_delta may be negative (returns, tax). The type-specific payload is
    validated and defaulted before the head is resolved.
    """
    try:
        transaction_type = VendorTransactionType(transaction_type)
        status = VendorTransactionStatus(status)
    except ValueError as exc:
        raise ValidationError(str(exc))

    fields = _PREPARERS[transaction_type](payload)
    business, branch, vendor = _scope_names(scope)

    profit_delta = q3(profit_delta)
    head = latest_vendor_transaction(scope, for_update=True)
    previous = q3(head.accumulated_profit) if head else ZERO
    sequence = next_sequence(head)

    entry = VendorTransaction(
        transaction_id=f"{business.code}_{branch.id}_{vendor.id}_{sequence:06d}",
        transaction_type=transaction_type.value,
        business_id=business.id,
        business_name=business.name,
        branch_id=branch.id,
        branch_name=branch.name,
        vendor_id=vendor.id,
        vendor_name=vendor.name,
        sequence=sequence,
        amount=q3(amount),
        profit=profit_delta,
        accumulated_profit=q3(previous + profit_delta),
        status=status.value,
        idempotency_key=idempotency_key,
        transaction_date=transaction_date or today(),
        **fields,
    )
    return append_with_cas(entry, scope=scope.as_dict())


# =============================================================================
# QUERIES
# =============================================================================

def _filtered_query(
    business_id: int,
    *,
    branch_id: int | None = None,
    vendor_id: int | None = None,
    transaction_type: str | None = None,
    status: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
):
    q = db.session.query(VendorTransaction).filter(VendorTransaction.business_id == business_id)
    if branch_id is not None:
        q = q.filter(VendorTransaction.branch_id == branch_id)
    if vendor_id is not None:
        q = q.filter(VendorTransaction.vendor_id == vendor_id)
    if transaction_type:
        q = q.filter(VendorTransaction.transaction_type == transaction_type)
    if status:
        q = q.filter(VendorTransaction.status == status)
    if start_date is not None:
        q = q.filter(VendorTransaction.transaction_date >= start_date)
    if end_date is not None:
        q = q.filter(VendorTransaction.transaction_date <= end_date)
    return q


def list_vendor_transactions(business_id: int, *, limit: int = 100, **filters) -> list[VendorTransaction]:
    return (
        _filtered_query(business_id, **filters)
        .order_by(VendorTransaction.created_at.desc(), VendorTransaction.id.desc())
        .limit(limit)
        .all()
    )


def get_transaction_stats(business_id: int, **filters) -> dict:
    rows = (
        _filtered_query(business_id, **filters)
        .order_by(VendorTransaction.created_at.desc(), VendorTransaction.id.desc())
        .all()
    )
    by_type: dict[str, int] = {}
    for row in rows:
        by_type[row.transaction_type] = by_type.get(row.transaction_type, 0) + 1

    return {
        "total_transactions": len(rows),
        "total_amount": money_sum(r.amount for r in rows),
        "total_profit": money_sum(r.profit for r in rows),
        "by_type": by_type,
        # Only meaningful when the filters pin a single vendor scope
        "latest_accumulated_profit": q3(rows[0].accumulated_profit) if rows else ZERO,
    }


def get_branch_profit_summary(business_id: int, branch_id: int, **filters) -> dict:
    """Profit per vendor for one branch, with a breakdown by transaction type."""
    rows = (
        _filtered_query(business_id, branch_id=branch_id, **filters)
        .order_by(VendorTransaction.sequence.asc(), VendorTransaction.id.asc())
        .all()
    )

    vendors: "OrderedDict[int, dict]" = OrderedDict()
    for row in rows:
        summary = vendors.setdefault(row.vendor_id, {
            "vendor_id": row.vendor_id,
            "vendor_name": row.vendor_name,
            "total_profit": ZERO,
            "accumulated_profit": ZERO,
            "transactions_count": 0,
            "by_type": {},
        })
        summary["total_profit"] = q3(summary["total_profit"] + row.profit)
        summary["accumulated_profit"] = q3(row.accumulated_profit)
        summary["transactions_count"] += 1
        by_type = summary["by_type"].setdefault(row.transaction_type, {"count": 0, "profit": ZERO})
        by_type["count"] += 1
        by_type["profit"] = q3(by_type["profit"] + row.profit)

    dates = [r.transaction_date for r in rows]
    return {
        "branch_total_profit": money_sum(v["total_profit"] for v in vendors.values()),
        "vendors": list(vendors.values()),
        "period": {
            "start": filters.get("start_date") or (min(dates) if dates else None),
            "end": filters.get("end_date") or (max(dates) if dates else None),
        },
    }


def _period_key(value: date, period: str) -> str:
    if period == "daily":
        return value.isoformat()
    if period == "weekly":
        year, week, _ = value.isocalendar()
        return f"{year}-W{week:02d}"
    return value.strftime("%Y-%m")


def get_branch_profit_trends(
    business_id: int,
    branch_id: int,
    period: str = "monthly",
    *,
    start_date: date | None = None,
    end_date: date | None = None,
) -> list[dict]:
    if period not in TREND_PERIODS:
        raise ValidationError(f"period must be one of {list(TREND_PERIODS)}")

    rows = _filtered_query(
        business_id, branch_id=branch_id, start_date=start_date, end_date=end_date
    ).all()

    trends: dict[str, dict] = {}
    for row in rows:
        key = _period_key(row.transaction_date, period)
        bucket = trends.setdefault(key, {
            "period": key,
            "total_profit": ZERO,
            "transaction_count": 0,
            "by_type": {},
        })
        bucket["total_profit"] = q3(bucket["total_profit"] + row.profit)
        bucket["transaction_count"] += 1
        bucket["by_type"][row.transaction_type] = q3(
            bucket["by_type"].get(row.transaction_type, ZERO) + row.profit
        )

    return [trends[key] for key in sorted(trends)]


def verify_vendor_chain(scope: VendorScope) -> list[dict]:
    """Report accumulation breaks for one scope; empty when consistent."""
    rows = (
        db.session.query(VendorTransaction)
        .filter_by(business_id=scope.business_id, branch_id=scope.branch_id, vendor_id=scope.vendor_id)
        .order_by(VendorTransaction.sequence.asc())
        .all()
    )

    breaks = []
    running = ZERO
    expected_sequence = 1
    for row in rows:
        if row.sequence != expected_sequence:
            breaks.append({"transaction_id": row.transaction_id, "problem": "sequence_gap",
                           "expected": expected_sequence, "actual": row.sequence})
        running = q3(running + row.profit)
        if q3(row.accumulated_profit) != running:
            breaks.append({"transaction_id": row.transaction_id, "problem": "accumulation",
                           "expected": money_str(running), "actual": money_str(row.accumulated_profit)})
            running = q3(row.accumulated_profit)
        expected_sequence = row.sequence + 1
    return breaks

