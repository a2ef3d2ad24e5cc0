from __future__ import annotations

from decimal import Decimal

from ..extensions import db
from posledger.money import money_str
from posledger.time_utils import to_iso_date, to_utc_z

class CashLedgerEntry(db.Model):
    """
    One immutable row per cash-affecting event for a (business, branch) scope.

    CHAIN: for consecutive entries of a scope, e[i+1].previous_total_cash ==
    e[i].new_total_cash. `sequence` is the per-scope insertion number; the
    unique constraint on (business_id, branch_id, sequence) is the
    compare-and-swap that keeps two writers from chaining off the same head.

    IMMUTABLE: Corrections are new compensating entries, never updates.
    """
    __tablename__ = "cash_ledger_entries"
    __table_args__ = (
        db.UniqueConstraint("business_id", "branch_id", "sequence", name="uq_cash_ledger_scope_sequence"),
        db.Index("ix_cash_ledger_scope_date", "business_id", "branch_id", "effective_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tracking_id = db.Column(db.String(32), nullable=False, unique=True)

    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    sequence = db.Column(db.Integer, nullable=False)

    cashier_name = db.Column(db.String(128), nullable=True)

    # Amounts (3 decimal places, OMR)
    previous_total_cash = db.Column(db.Numeric(14, 3), nullable=False)
    new_total_cash = db.Column(db.Numeric(14, 3), nullable=False)
    cash_additions = db.Column(db.Numeric(14, 3), nullable=False, default=Decimal("0"))
    cash_removals = db.Column(db.Numeric(14, 3), nullable=False, default=Decimal("0"))
    total_returns = db.Column(db.Numeric(14, 3), nullable=False, default=Decimal("0"))

    # "sale", "return", "return with commission", or a free-text manual reason
    reason = db.Column(db.String(255), nullable=True)

    idempotency_key = db.Column(db.String(64), nullable=True, index=True)

    effective_date = db.Column(db.Date, nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    business = db.relationship("Business")
    branch = db.relationship("Branch")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tracking_id": self.tracking_id,
            "business_id": self.business_id,
            "branch_id": self.branch_id,
            "sequence": self.sequence,
            "cashier_name": self.cashier_name,
            "previous_total_cash": money_str(self.previous_total_cash),
            "new_total_cash": money_str(self.new_total_cash),
            "cash_additions": money_str(self.cash_additions),
            "cash_removals": money_str(self.cash_removals),
            "total_returns": money_str(self.total_returns),
            "reason": self.reason,
            "idempotency_key": self.idempotency_key,
            "effective_date": to_iso_date(self.effective_date),
            "created_at": to_utc_z(self.created_at),
        }

class VendorTransaction(db.Model):
    """
    Vendor profit ledger row for a (business, branch, vendor) scope.

    ACCUMULATION: accumulated_profit == previous row's accumulated_profit +
    profit (base 0). Profit is the owner's take from this event: commission on
    a sale (negated on return), a negative tax deduction, or the full rental.

    TRANSACTION TYPES:
    - product_sale: product_name, product_quantity, unit_price, total_price
    - rental: rental_start_date, rental_end_date, rental_period
    - tax: tax_period, tax_description
    """
    __tablename__ = "vendor_transactions"
    __table_args__ = (
        db.UniqueConstraint(
            "business_id", "branch_id", "vendor_id", "sequence",
            name="uq_vendor_transactions_scope_sequence",
        ),
        db.Index("ix_vendor_transactions_scope_date", "business_id", "branch_id", "transaction_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.String(96), nullable=False, unique=True)
    transaction_type = db.Column(db.String(16), nullable=False, index=True)

    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    business_name = db.Column(db.String(255), nullable=False)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    branch_name = db.Column(db.String(120), nullable=False)
    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id"), nullable=False, index=True)
    vendor_name = db.Column(db.String(255), nullable=False)
    sequence = db.Column(db.Integer, nullable=False)

    amount = db.Column(db.Numeric(14, 3), nullable=False)
    profit = db.Column(db.Numeric(14, 3), nullable=False)
    accumulated_profit = db.Column(db.Numeric(14, 3), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="completed", index=True)
    notes = db.Column(db.Text, nullable=True)

    # Product sale fields
    product_name = db.Column(db.Text, nullable=True)
    product_quantity = db.Column(db.Integer, nullable=True)
    unit_price = db.Column(db.Numeric(14, 3), nullable=True)
    total_price = db.Column(db.Numeric(14, 3), nullable=True)

    # Rental fields
    rental_start_date = db.Column(db.Date, nullable=True)
    rental_end_date = db.Column(db.Date, nullable=True)
    rental_period = db.Column(db.String(64), nullable=True)

    # Tax fields
    tax_period = db.Column(db.String(16), nullable=True)
    tax_description = db.Column(db.String(255), nullable=True)

    idempotency_key = db.Column(db.String(64), nullable=True, index=True)

    transaction_date = db.Column(db.Date, nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "transaction_type": self.transaction_type,
            "business_id": self.business_id,
            "business_name": self.business_name,
            "branch_id": self.branch_id,
            "branch_name": self.branch_name,
            "vendor_id": self.vendor_id,
            "vendor_name": self.vendor_name,
            "sequence": self.sequence,
            "amount": money_str(self.amount),
            "profit": money_str(self.profit),
            "accumulated_profit": money_str(self.accumulated_profit),
            "status": self.status,
            "notes": self.notes,
            "product_name": self.product_name,
            "product_quantity": self.product_quantity,
            "unit_price": money_str(self.unit_price),
            "total_price": money_str(self.total_price),
            "rental_start_date": to_iso_date(self.rental_start_date),
            "rental_end_date": to_iso_date(self.rental_end_date),
            "rental_period": self.rental_period,
            "tax_period": self.tax_period,
            "tax_description": self.tax_description,
            "idempotency_key": self.idempotency_key,
            "transaction_date": to_iso_date(self.transaction_date),
            "created_at": to_utc_z(self.created_at),
        }

class AuditTrailEntry(db.Model):
    """
    Business-wide "overall transactions" log.

    Append-only, not chained: each row stands alone and carries a denormalized
    snapshot (names, amounts, payment method) so reports never have to join
    the two balance ledgers.
    """
    __tablename__ = "transactions_overall"
    __table_args__ = (
        db.Index("ix_transactions_overall_business_created", "business_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    business_name = db.Column(db.String(255), nullable=False)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True, index=True)
    branch_name = db.Column(db.String(120), nullable=False)
    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id"), nullable=True, index=True)
    vendor_name = db.Column(db.String(255), nullable=True)
    customer_name = db.Column(db.String(255), nullable=True)

    transaction_type = db.Column(db.String(32), nullable=False, index=True)
    transaction_reason = db.Column(db.String(255), nullable=False)

    # Signed: negative on returns and cash removals
    amount = db.Column(db.Numeric(14, 3), nullable=False)
    owner_profit_contribution = db.Column(db.Numeric(14, 3), nullable=False)

    payment_method = db.Column(db.String(16), nullable=False, index=True)
    currency = db.Column(db.String(3), nullable=False, default="OMR")

    details = db.Column(db.JSON, nullable=True)

    idempotency_key = db.Column(db.String(64), nullable=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "business_name": self.business_name,
            "branch_id": self.branch_id,
            "branch_name": self.branch_name,
            "vendor_id": self.vendor_id,
            "vendor_name": self.vendor_name,
            "customer_name": self.customer_name,
            "transaction_type": self.transaction_type,
            "transaction_reason": self.transaction_reason,
            "amount": money_str(self.amount),
            "owner_profit_contribution": money_str(self.owner_profit_contribution),
            "payment_method": self.payment_method,
            "currency": self.currency,
            "details": self.details,
            "idempotency_key": self.idempotency_key,
            "created_at": to_utc_z(self.created_at),
        }
