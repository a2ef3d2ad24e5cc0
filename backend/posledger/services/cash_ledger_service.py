# Overview: Service-layer operations for the branch cash ledger; encapsulates business logic and database work.

"""
Cash Ledger

WHY: Each branch keeps a running cash balance. Every cash movement (sale,
refund, manual deposit/withdrawal, vendor tax or rent paid in cash) appends
one immutable entry that chains off the previous one.

INVARIANTS:
- new_total_cash == previous_total_cash + cash_additions - cash_removals
- Within a (business, branch) scope, entry N+1's previous_total_cash equals
  entry N's new_total_cash.
- Entries are never updated or deleted; a correction is a new entry.

CONCURRENCY: append_cash_entry() resolves the head and writes
sequence = head.sequence + 1. A concurrent append on the same scope fails the
unique (business, branch, sequence) constraint and is retried from a fresh
head by run_with_retry().
"""

from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal

from ..extensions import db
from ..models import CashLedgerEntry
from posledger.money import ZERO, money_sum, q3
from posledger.time_utils import today
from posledger.validation import ValidationError
from .balance_service import CashScope, latest_cash_entry, next_sequence
from .concurrency import append_with_cas, run_with_retry


# =============================================================================
# REASON TAGS
# =============================================================================

REASON_SALE = "sale"
REASON_RETURN = "return"
REASON_RETURN_WITH_COMMISSION = "return with commission"


def _generate_tracking_id(prefix: str = "CSH") -> str:
    return f"{prefix}{uuid.uuid4().hex[:10].upper()}"


# =============================================================================
# LEDGER WRITER
# =============================================================================

def append_cash_entry(
    scope: CashScope,
    *,
    reason: str | None,
    cash_additions: Decimal = ZERO,
    cash_removals: Decimal = ZERO,
    total_returns: Decimal = ZERO,
    cashier_name: str | None = None,
    idempotency_key: str | None = None,
    effective_date: date | None = None,
    tracking_prefix: str = "CSH",
) -> CashLedgerEntry:
    """
    Append one entry to the scope's chain (flushed, not committed).

    Callers own the transaction: commit on success, or let run_with_retry()
    roll back and call again on ConcurrencyConflict.
    """
    cash_additions = q3(cash_additions)
    cash_removals = q3(cash_removals)
    total_returns = q3(total_returns)

    if cash_additions < 0 or cash_removals < 0 or total_returns < 0:
        raise ValidationError("Cash additions, removals and returns must be >= 0")

    head = latest_cash_entry(scope, for_update=True)
    previous_total = q3(head.new_total_cash) if head else ZERO
    new_total = q3(previous_total + cash_additions - cash_removals)

    entry = CashLedgerEntry(
        tracking_id=_generate_tracking_id(tracking_prefix),
        business_id=scope.business_id,
        branch_id=scope.branch_id,
        sequence=next_sequence(head),
        cashier_name=cashier_name,
        previous_total_cash=previous_total,
        new_total_cash=new_total,
        cash_additions=cash_additions,
        cash_removals=cash_removals,
        total_returns=total_returns,
        reason=reason,
        idempotency_key=idempotency_key,
        effective_date=effective_date or today(),
    )
    return append_with_cas(entry, scope=scope.as_dict())


def _record(commit: bool, **kwargs) -> CashLedgerEntry:
    if not commit:
        return append_cash_entry(**kwargs)

    def _op():
        entry = append_cash_entry(**kwargs)
        db.session.commit()
        return entry

    return run_with_retry(_op)


def update_cash_for_sale(
    scope: CashScope,
    cashier_name: str | None,
    sale_amount: Decimal,
    *,
    idempotency_key: str | None = None,
    commit: bool = True,
) -> CashLedgerEntry:
    """Cash received for a sale."""
    return _record(
        commit,
        scope=scope,
        reason=REASON_SALE,
        cash_additions=sale_amount,
        cashier_name=cashier_name,
        idempotency_key=idempotency_key,
    )


def update_cash_for_return(
    scope: CashScope,
    cashier_name: str | None,
    return_amount: Decimal,
    *,
    with_commission: bool = False,
    idempotency_key: str | None = None,
    commit: bool = True,
) -> CashLedgerEntry:
    """Cash refunded for a return. return_amount is the positive refund."""
    return _record(
        commit,
        scope=scope,
        reason=REASON_RETURN_WITH_COMMISSION if with_commission else REASON_RETURN,
        cash_removals=return_amount,
        total_returns=return_amount,
        cashier_name=cashier_name,
        idempotency_key=idempotency_key,
    )


def update_cash_manually(
    scope: CashScope,
    cashier_name: str | None,
    amount: Decimal,
    reason: str,
    *,
    idempotency_key: str | None = None,
    tracking_prefix: str = "CSH",
    commit: bool = True,
) -> CashLedgerEntry:
    """
    Manual adjustment. `amount` is signed: positive adds cash, negative removes it.
    """
    if not reason or not reason.strip():
        raise ValidationError("reason is required for manual cash adjustments")
    amount = q3(amount)
    if amount == 0:
        raise ValidationError("amount must be non-zero")

    return _record(
        commit,
        scope=scope,
        reason=reason.strip(),
        cash_additions=amount if amount > 0 else ZERO,
        cash_removals=-amount if amount < 0 else ZERO,
        cashier_name=cashier_name,
        idempotency_key=idempotency_key,
        tracking_prefix=tracking_prefix,
    )


# =============================================================================
# QUERIES
# =============================================================================

def _filtered_query(
    business_id: int,
    branch_id: int | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    cashier_name: str | None = None,
):
    q = db.session.query(CashLedgerEntry).filter(CashLedgerEntry.business_id == business_id)
    if branch_id is not None:
        q = q.filter(CashLedgerEntry.branch_id == branch_id)
    if start_date is not None:
        q = q.filter(CashLedgerEntry.effective_date >= start_date)
    if end_date is not None:
        q = q.filter(CashLedgerEntry.effective_date <= end_date)
    if cashier_name:
        q = q.filter(CashLedgerEntry.cashier_name == cashier_name)
    return q


def list_cash_entries(
    business_id: int,
    *,
    branch_id: int | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    cashier_name: str | None = None,
    limit: int = 100,
) -> list[CashLedgerEntry]:
    """Newest first."""
    q = _filtered_query(business_id, branch_id, start_date, end_date, cashier_name)
    return (
        q.order_by(CashLedgerEntry.created_at.desc(), CashLedgerEntry.id.desc())
        .limit(limit)
        .all()
    )


def get_cash_stats(
    business_id: int,
    *,
    branch_id: int | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
) -> dict:
    """
    Totals over a period.

    total_cash_sales only counts entries tagged "sale"; total_additions
    includes manual deposits and vendor payments as well.
    """
    rows = _filtered_query(business_id, branch_id, start_date, end_date).all()

    additions = money_sum(r.cash_additions for r in rows)
    removals = money_sum(r.cash_removals for r in rows)

    return {
        "total_cash_sales": money_sum(r.cash_additions for r in rows if r.reason == REASON_SALE),
        "total_returns": money_sum(r.total_returns for r in rows),
        "total_additions": additions,
        "total_removals": removals,
        "net_cash_flow": q3(additions - removals),
        "entry_count": len(rows),
    }


def verify_cash_chain(scope: CashScope) -> list[dict]:
    """
    Walk a scope's chain in sequence order and report every break.

    Returns an empty list when the chain invariant holds.
    """
    rows = (
        db.session.query(CashLedgerEntry)
        .filter_by(business_id=scope.business_id, branch_id=scope.branch_id)
        .order_by(CashLedgerEntry.sequence.asc())
        .all()
    )

    breaks = []
    expected_previous = ZERO
    expected_sequence = 1
    for row in rows:
        if row.sequence != expected_sequence:
            breaks.append({"tracking_id": row.tracking_id, "problem": "sequence_gap",
                           "expected": expected_sequence, "actual": row.sequence})
        if q3(row.previous_total_cash) != expected_previous:
            breaks.append({"tracking_id": row.tracking_id, "problem": "chain_break",
                           "expected": str(expected_previous), "actual": str(q3(row.previous_total_cash))})
        computed = q3(row.previous_total_cash + row.cash_additions - row.cash_removals)
        if computed != q3(row.new_total_cash):
            breaks.append({"tracking_id": row.tracking_id, "problem": "arithmetic",
                           "expected": str(computed), "actual": str(q3(row.new_total_cash))})
        expected_previous = q3(row.new_total_cash)
        expected_sequence = row.sequence + 1
    return breaks
