from __future__ import annotations

from decimal import Decimal

from ..extensions import db
from posledger.money import money_str
from posledger.time_utils import to_utc_z

class Receipt(db.Model):
    """
    Sale document written by the posting router.

    Totals are the proration result's order-level figures; the receipt
    formatter (outside this service) renders from these rows only.
    """
    __tablename__ = "receipts"
    __table_args__ = (
        db.Index("ix_receipts_scope_created", "business_id", "branch_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    receipt_id = db.Column(db.String(32), nullable=False, unique=True)

    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    cashier_name = db.Column(db.String(128), nullable=True)
    customer_name = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(32), nullable=True)

    payment_method = db.Column(db.String(16), nullable=False)

    subtotal = db.Column(db.Numeric(14, 3), nullable=False)
    discount = db.Column(db.Numeric(14, 3), nullable=False, default=Decimal("0"))
    discount_type = db.Column(db.String(16), nullable=True)
    discount_value = db.Column(db.Numeric(14, 3), nullable=True)
    coupon_code = db.Column(db.String(64), nullable=True)
    tax_rate = db.Column(db.Numeric(7, 4), nullable=False, default=Decimal("0"))
    tax_amount = db.Column(db.Numeric(14, 3), nullable=False, default=Decimal("0"))
    commission_amount_from_vendors = db.Column(db.Numeric(14, 3), nullable=False, default=Decimal("0"))
    total_amount = db.Column(db.Numeric(14, 3), nullable=False)

    receipt_note = db.Column(db.Text, nullable=True)
    idempotency_key = db.Column(db.String(64), nullable=True, unique=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "receipt_id": self.receipt_id,
            "business_id": self.business_id,
            "branch_id": self.branch_id,
            "cashier_name": self.cashier_name,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "payment_method": self.payment_method,
            "subtotal": money_str(self.subtotal),
            "discount": money_str(self.discount),
            "discount_type": self.discount_type,
            "discount_value": money_str(self.discount_value),
            "coupon_code": self.coupon_code,
            "tax_rate": str(self.tax_rate) if self.tax_rate is not None else None,
            "tax_amount": money_str(self.tax_amount),
            "commission_amount_from_vendors": money_str(self.commission_amount_from_vendors),
            "total_amount": money_str(self.total_amount),
            "receipt_note": self.receipt_note,
            "idempotency_key": self.idempotency_key,
            "created_at": to_utc_z(self.created_at),
        }

class SoldProduct(db.Model):
    """
    One sold line, written for downstream receipt rendering and for returns.

    commission_for_business_from_vendor is per unit and already reflects the
    minimum-commission threshold that applied at sale time; returns read it
    back instead of recomputing from current settings.
    """
    __tablename__ = "sold_products"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sold_product_id = db.Column(db.String(36), nullable=False, unique=True)
    receipt_id = db.Column(db.String(32), db.ForeignKey("receipts.receipt_id"), nullable=False, index=True)

    product_id = db.Column(db.String(64), nullable=False)
    product_name = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)

    unit_price_original = db.Column(db.Numeric(14, 3), nullable=False)
    unit_price_by_business = db.Column(db.Numeric(14, 3), nullable=False)
    total_price = db.Column(db.Numeric(14, 3), nullable=False)

    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id"), nullable=True, index=True)
    vendor_name = db.Column(db.String(255), nullable=True)
    commission_for_business_from_vendor = db.Column(db.Numeric(14, 3), nullable=True)

    # Units already taken back; only grows, and never past quantity
    returned_quantity = db.Column(db.Integer, nullable=False, default=0, server_default="0")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    receipt = db.relationship("Receipt", backref=db.backref("sold_products", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sold_product_id": self.sold_product_id,
            "receipt_id": self.receipt_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_price_original": money_str(self.unit_price_original),
            "unit_price_by_business": money_str(self.unit_price_by_business),
            "total_price": money_str(self.total_price),
            "vendor_id": self.vendor_id,
            "vendor_name": self.vendor_name,
            "commission_for_business_from_vendor": money_str(self.commission_for_business_from_vendor),
            "returned_quantity": self.returned_quantity,
            "created_at": to_utc_z(self.created_at),
        }

class ReturnReceipt(db.Model):
    """Return document referencing the original receipt."""
    __tablename__ = "return_receipts"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    return_receipt_id = db.Column(db.String(40), nullable=False, unique=True)
    original_receipt_id = db.Column(db.String(32), db.ForeignKey("receipts.receipt_id"), nullable=False, index=True)

    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    cashier_name = db.Column(db.String(128), nullable=True)
    return_reason = db.Column(db.String(255), nullable=True)
    refund_method = db.Column(db.String(16), nullable=False)

    # Positive refund figures (the ledgers carry the signs)
    subtotal = db.Column(db.Numeric(14, 3), nullable=False, default=Decimal("0"))
    discount = db.Column(db.Numeric(14, 3), nullable=False, default=Decimal("0"))
    tax_amount = db.Column(db.Numeric(14, 3), nullable=False, default=Decimal("0"))
    total_amount = db.Column(db.Numeric(14, 3), nullable=False)
    commission_amount = db.Column(db.Numeric(14, 3), nullable=False, default=Decimal("0"))

    idempotency_key = db.Column(db.String(64), nullable=True, unique=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    original_receipt = db.relationship("Receipt")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "return_receipt_id": self.return_receipt_id,
            "original_receipt_id": self.original_receipt_id,
            "business_id": self.business_id,
            "branch_id": self.branch_id,
            "cashier_name": self.cashier_name,
            "return_reason": self.return_reason,
            "refund_method": self.refund_method,
            "subtotal": money_str(self.subtotal),
            "discount": money_str(self.discount),
            "tax_amount": money_str(self.tax_amount),
            "total_amount": money_str(self.total_amount),
            "commission_amount": money_str(self.commission_amount),
            "idempotency_key": self.idempotency_key,
            "created_at": to_utc_z(self.created_at),
        }

class ReturnedProduct(db.Model):
    __tablename__ = "returned_products"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    return_receipt_id = db.Column(
        db.String(40), db.ForeignKey("return_receipts.return_receipt_id"), nullable=False, index=True
    )
    sold_product_id = db.Column(db.String(36), db.ForeignKey("sold_products.sold_product_id"), nullable=False, index=True)
    product_name = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(14, 3), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    return_receipt = db.relationship("ReturnReceipt", backref=db.backref("lines", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "return_receipt_id": self.return_receipt_id,
            "sold_product_id": self.sold_product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_price": money_str(self.unit_price),
            "created_at": to_utc_z(self.created_at),
        }
