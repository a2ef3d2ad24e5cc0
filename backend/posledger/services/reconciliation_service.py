# Overview: Reconciliation job; finds postings that did not reach every stream.

"""
Reconciliation

The posting router never rolls back a completed step, so a crash or a failed
step can leave a cash or vendor entry with no matching audit row. This job
reports those gaps and every chain break per scope. It only reads; fixing a
gap means replaying the event with its idempotency key.
"""

from __future__ import annotations

from ..extensions import db
from ..models import AuditTrailEntry, CashLedgerEntry, PostingEvent, VendorTransaction
from .balance_service import CashScope, VendorScope
from .cash_ledger_service import verify_cash_chain
from .vendor_profit_service import verify_vendor_chain


def find_incomplete_events(business_id: int | None = None) -> list[PostingEvent]:
    q = db.session.query(PostingEvent).filter(PostingEvent.state != "DONE")
    if business_id is not None:
        q = q.filter(PostingEvent.business_id == business_id)
    return q.order_by(PostingEvent.created_at.asc(), PostingEvent.id.asc()).all()


def find_unmatched_entries(business_id: int) -> dict:
    """Cash and vendor entries whose idempotency key has no audit entry."""
    audited = {
        key for (key,) in db.session.query(AuditTrailEntry.idempotency_key)
        .filter(AuditTrailEntry.business_id == business_id)
        .filter(AuditTrailEntry.idempotency_key.isnot(None))
        .distinct()
    }

    cash = (
        db.session.query(CashLedgerEntry)
        .filter(CashLedgerEntry.business_id == business_id)
        .filter(CashLedgerEntry.idempotency_key.isnot(None))
        .order_by(CashLedgerEntry.id.asc())
        .all()
    )
    vendor = (
        db.session.query(VendorTransaction)
        .filter(VendorTransaction.business_id == business_id)
        .filter(VendorTransaction.idempotency_key.isnot(None))
        .order_by(VendorTransaction.id.asc())
        .all()
    )
    return {
        "cash": [row for row in cash if row.idempotency_key not in audited],
        "vendor": [row for row in vendor if row.idempotency_key not in audited],
    }


def reconcile_business(business_id: int) -> dict:
    cash_scopes = {
        CashScope(business_id, branch_id)
        for (branch_id,) in db.session.query(CashLedgerEntry.branch_id)
        .filter(CashLedgerEntry.business_id == business_id).distinct()
    }
    vendor_scopes = {
        VendorScope(business_id, branch_id, vendor_id)
        for branch_id, vendor_id in db.session.query(VendorTransaction.branch_id, VendorTransaction.vendor_id)
        .filter(VendorTransaction.business_id == business_id).distinct()
    }

    chain_breaks = []
    for scope in sorted(cash_scopes, key=lambda s: s.branch_id):
        for problem in verify_cash_chain(scope):
            chain_breaks.append(dict(problem, ledger="cash", **scope.as_dict()))
    for scope in sorted(vendor_scopes, key=lambda s: (s.branch_id, s.vendor_id)):
        for problem in verify_vendor_chain(scope):
            chain_breaks.append(dict(problem, ledger="vendor", **scope.as_dict()))

    unmatched = find_unmatched_entries(business_id)
    incomplete = find_incomplete_events(business_id)

    return {
        "business_id": business_id,
        "incomplete_events": [e.to_dict() for e in incomplete],
        "unmatched_cash_entries": [e.to_dict() for e in unmatched["cash"]],
        "unmatched_vendor_transactions": [e.to_dict() for e in unmatched["vendor"]],
        "chain_breaks": chain_breaks,
        "ok": not (incomplete or unmatched["cash"] or unmatched["vendor"] or chain_breaks),
    }
