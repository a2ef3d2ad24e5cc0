# Overview: Balance resolver; finds the head of a ledger chain for a scope.

"""
Balance Resolver

Read-only. Given a scope key, returns the head entry of that scope's chain
(or its balance), which the ledger writers use as the new entry's starting
point.

ORDERING: by the per-scope `sequence`. Sequences are assigned at append time
under a unique constraint, so sequence order is creation order with ties
already broken. Never order by amount or by id across scopes.

FAILURES: a store error propagates as ResolutionError. An unreadable ledger
is never reported as an empty one.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.exc import OperationalError

from ..extensions import db
from ..models import CashLedgerEntry, VendorTransaction
from posledger.money import ZERO, q3
from .concurrency import ResolutionError, lock_for_update


@dataclass(frozen=True)
class CashScope:
    business_id: int
    branch_id: int

    def as_dict(self) -> dict:
        return {"business_id": self.business_id, "branch_id": self.branch_id}


@dataclass(frozen=True)
class VendorScope:
    business_id: int
    branch_id: int
    vendor_id: int

    def as_dict(self) -> dict:
        return {
            "business_id": self.business_id,
            "branch_id": self.branch_id,
            "vendor_id": self.vendor_id,
        }


def latest_cash_entry(scope: CashScope, *, for_update: bool = False) -> CashLedgerEntry | None:
    """Head of the cash chain for (business, branch), or None for an empty ledger."""
    try:
        q = (
            db.session.query(CashLedgerEntry)
            .filter_by(business_id=scope.business_id, branch_id=scope.branch_id)
            .order_by(CashLedgerEntry.sequence.desc())
        )
        if for_update:
            q = lock_for_update(q)
        return q.first()
    except OperationalError as exc:
        raise ResolutionError(f"Could not resolve cash balance for {scope.as_dict()}") from exc


def latest_vendor_transaction(scope: VendorScope, *, for_update: bool = False) -> VendorTransaction | None:
    """Head of the vendor profit chain for (business, branch, vendor)."""
    try:
        q = (
            db.session.query(VendorTransaction)
            .filter_by(
                business_id=scope.business_id,
                branch_id=scope.branch_id,
                vendor_id=scope.vendor_id,
            )
            .order_by(VendorTransaction.sequence.desc())
        )
        if for_update:
            q = lock_for_update(q)
        return q.first()
    except OperationalError as exc:
        raise ResolutionError(f"Could not resolve accumulated profit for {scope.as_dict()}") from exc


def resolve_cash_balance(scope: CashScope) -> Decimal:
    head = latest_cash_entry(scope)
    if head is None:
        return ZERO
    return q3(head.new_total_cash)


def resolve_vendor_profit(scope: VendorScope) -> Decimal:
    head = latest_vendor_transaction(scope)
    if head is None:
        return ZERO
    return q3(head.accumulated_profit)


def next_sequence(head) -> int:
    return 1 if head is None else head.sequence + 1
