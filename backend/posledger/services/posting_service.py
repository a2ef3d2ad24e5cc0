# Overview: Transaction router; posts sales, returns and cash settlements across the ledgers.

"""
Transaction Router

WHY: A sale moves money in three places that cannot share one DB transaction
with the client round-trips in between: the branch cash ledger, the vendor
profit ledger and the audit trail. The router runs them as an explicit saga.

STATE MACHINE (per event, persisted on PostingEvent.state):
    RECEIVED -> PRORATED -> LEDGER_WRITTEN -> VENDOR_POSTED -> AUDITED -> DONE
    any step  -> FAILED(reason)

SAGA RULES:
- Every event has an idempotency key (caller-supplied or generated).
- Each step commits its ledger row and its PostingStep row together, so a
  step is either fully done or not done at all.
- Completed steps are never rolled back. A failure after at least one
  completed step raises PartialPostError naming what completed and what
  failed; the event is marked FAILED.
- Replaying the same key skips completed steps, so a retry never posts a
  second cash entry or double-counts vendor profit.

CASH TRUTH DOMINATES: once the cash step has completed, money has physically
moved. Callers (see routes) report that as a recorded sale with a warning,
not as a failed sale.

STEP ORDER (every kind):
1. document (receipt / return receipt), sale and return only
2. cash, only when the payment method is cash
3. vendor:<id>, one per vendor bucket / affected vendor
4. audit:*, one per bucket or one per settlement
"""

from __future__ import annotations

import enum
import hashlib
import uuid
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Sequence

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..extensions import db
from ..models import (
    Branch,
    Business,
    PostingEvent,
    PostingStep,
    Receipt,
    ReturnedProduct,
    ReturnReceipt,
    SoldProduct,
    Vendor,
)
from posledger.money import ZERO, money_sum, q3
from posledger.validation import ConflictError, ValidationError, parse_amount, parse_quantity, require_ids
from . import audit_trail_service, cash_ledger_service, vendor_profit_service
from .balance_service import CashScope, VendorScope
from .concurrency import ConcurrencyConflict, run_with_retry
from .proration_service import (
    CartLine,
    Discount,
    PricingRules,
    ProrationBucket,
    ProrationResult,
    RefundedTotals,
    ReturnLine,
    prorate,
    prorate_return,
)
from .settings_service import get_pricing_rules
from .vendor_profit_service import VendorTransactionType


# =============================================================================
# TAGS
# =============================================================================

class EventKind(str, enum.Enum):
    SALE = "sale"
    RETURN = "return"
    CASH_ADDITION = "cash_addition"
    CASH_REMOVAL = "cash_removal"
    MONTHLY_TAX = "monthly_tax"
    VENDOR_RENTAL = "vendor_rental"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    CARD = "card"
    ONLINE = "online"


class PostingState(str, enum.Enum):
    RECEIVED = "RECEIVED"
    PRORATED = "PRORATED"
    LEDGER_WRITTEN = "LEDGER_WRITTEN"
    VENDOR_POSTED = "VENDOR_POSTED"
    AUDITED = "AUDITED"
    DONE = "DONE"
    FAILED = "FAILED"


STREAM_DOCUMENT = "document"
STREAM_CASH = "cash"
STREAM_VENDOR = "vendor"
STREAM_AUDIT = "audit"

# State reached once a step of the stream has completed
STREAM_STATES = {
    STREAM_DOCUMENT: PostingState.PRORATED,
    STREAM_CASH: PostingState.LEDGER_WRITTEN,
    STREAM_VENDOR: PostingState.VENDOR_POSTED,
    STREAM_AUDIT: PostingState.AUDITED,
}

AUDIT_SALE_REASON = "Regular sale"
AUDIT_RETURN_REASON = "Product return"
DEFAULT_RENTAL_REASON = "Vendor Space Rental Payment"

MAX_IDEMPOTENCY_KEY_LENGTH = 64


# =============================================================================
# ERRORS & RESULTS
# =============================================================================

class PartialPostError(Exception):
    """
    Some steps of an event completed and a later one failed.

    Nothing is rolled back. Retry with the same idempotency key to resume, or
    leave it to the reconciliation job.
    """
    def __init__(
        self,
        message: str,
        *,
        idempotency_key: str,
        kind: EventKind,
        completed_steps: list[str],
        failed_step: str,
        entries: dict[str, int] | None = None,
    ):
        super().__init__(message)
        self.idempotency_key = idempotency_key
        self.kind = kind
        self.completed_steps = list(completed_steps)
        self.failed_step = failed_step
        self.entries = dict(entries or {})

    @property
    def cash_posted(self) -> bool:
        return STREAM_CASH in self.completed_steps

    def to_dict(self) -> dict:
        return {
            "idempotency_key": self.idempotency_key,
            "kind": self.kind.value,
            "completed_steps": self.completed_steps,
            "failed_step": self.failed_step,
            "reason": str(self),
        }


@dataclass
class PostingResult:
    idempotency_key: str
    kind: EventKind
    state: PostingState
    completed_steps: list[str] = field(default_factory=list)
    entries: dict[str, int] = field(default_factory=dict)
    replayed_steps: list[str] = field(default_factory=list)
    document: dict | None = None
    proration: ProrationResult | None = None

    def to_dict(self) -> dict:
        return {
            "idempotency_key": self.idempotency_key,
            "kind": self.kind.value,
            "state": self.state.value,
            "completed_steps": self.completed_steps,
            "replayed_steps": self.replayed_steps,
            "entries": self.entries,
            "document": self.document,
            "proration": self.proration.to_dict() if self.proration else None,
        }


@dataclass(frozen=True)
class ReturnItem:
    sold_product_id: str
    quantity: int


@dataclass(frozen=True)
class _Step:
    name: str
    stream: str
    write: Callable[[], Any]


# =============================================================================
# SAGA ENGINE
# =============================================================================

def _new_idempotency_key(key: str | None) -> str:
    if key is None or key == "":
        return uuid.uuid4().hex
    key = str(key).strip()
    if not key or len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise ValidationError(f"idempotency_key must be 1-{MAX_IDEMPOTENCY_KEY_LENGTH} characters")
    return key


def _request_hash(*parts: Any) -> str:
    return hashlib.sha256(repr(parts).encode("utf-8")).hexdigest()


def _document_id(prefix: str, key: str) -> str:
    # Deterministic per event, so a resumed event never writes a second document
    return f"{prefix}{uuid.uuid5(uuid.NAMESPACE_URL, key).hex[:12].upper()}"


def _begin_event(
    key: str,
    kind: EventKind,
    business_id: int,
    branch_id: int,
    request_hash: str,
    pricing_rules: PricingRules | None = None,
) -> PostingEvent:
    def _lookup():
        return db.session.query(PostingEvent).filter_by(idempotency_key=key).first()

    event = _lookup()
    if event is None:
        event = PostingEvent(
            idempotency_key=key,
            kind=kind.value,
            business_id=business_id,
            branch_id=branch_id,
            state=PostingState.RECEIVED.value,
            request_hash=request_hash,
            pricing_rules=pricing_rules.to_dict() if pricing_rules is not None else None,
        )
        db.session.add(event)
        try:
            db.session.commit()
            return event
        except IntegrityError:
            # Same key registered concurrently; fall through to the replay checks
            db.session.rollback()
            event = _lookup()

    if (
        event.kind != kind.value
        or event.business_id != business_id
        or event.branch_id != branch_id
        or (event.request_hash and event.request_hash != request_hash)
    ):
        raise ConflictError(f"Idempotency key {key} was already used for a different request")
    return event


def _event_rules(event: PostingEvent | None) -> PricingRules | None:
    if event is None or not event.pricing_rules:
        return None
    return PricingRules.from_dict(event.pricing_rules)


def _saved_rules(key: str) -> PricingRules | None:
    """Rules an already registered event was first prorated with."""
    return _event_rules(db.session.query(PostingEvent).filter_by(idempotency_key=key).first())


def _completed_steps(key: str) -> dict[str, PostingStep]:
    rows = db.session.query(PostingStep).filter_by(idempotency_key=key).order_by(PostingStep.id.asc()).all()
    return {row.step: row for row in rows}


def _set_state(key: str, state: PostingState, failure_reason: str | None = None) -> None:
    event = db.session.query(PostingEvent).filter_by(idempotency_key=key).first()
    event.state = state.value
    event.failure_reason = failure_reason


def _mark_failed(key: str, step: str, exc: Exception) -> None:
    db.session.rollback()
    reason = f"{step}: {type(exc).__name__}: {exc}"[:255]
    try:
        _set_state(key, PostingState.FAILED, reason)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Could not record failure of posting %s", key)


def _run_step(key: str, step: _Step) -> int | None:
    """
    Execute one step and record it in the same transaction.

    Returns the written entry id, or None when a concurrent replay already
    completed the step.
    """
    def _op():
        if db.session.query(PostingStep).filter_by(idempotency_key=key, step=step.name).first():
            return None
        row = step.write()
        db.session.add(PostingStep(idempotency_key=key, step=step.name, stream=step.stream, entry_id=row.id))
        _set_state(key, STREAM_STATES[step.stream])
        try:
            db.session.commit()
        except IntegrityError as exc:
            db.session.rollback()
            raise ConcurrencyConflict(f"Step {step.name} of {key} recorded concurrently") from exc
        return row.id

    return run_with_retry(_op)


def _run_saga(
    key: str,
    kind: EventKind,
    steps: Sequence[_Step],
    *,
    document_loader: Callable[[dict[str, int]], dict | None] | None = None,
    proration: ProrationResult | None = None,
) -> PostingResult:
    done = _completed_steps(key)
    entries = {name: row.entry_id for name, row in done.items()}
    replayed = [s.name for s in steps if s.name in done]
    completed = list(replayed)

    if not done:
        _set_state(key, PostingState.PRORATED)
        db.session.commit()

    for step in steps:
        if step.name in done:
            continue
        try:
            entry_id = _run_step(key, step)
        except Exception as exc:
            _mark_failed(key, step.name, exc)
            current_app.logger.warning(
                "Posting %s (%s) failed at step %s after %s: %s",
                key, kind.value, step.name, completed or "no steps", exc,
            )
            if not completed:
                raise
            raise PartialPostError(
                f"{kind.value} partially posted: step {step.name} failed ({exc})",
                idempotency_key=key,
                kind=kind,
                completed_steps=completed,
                failed_step=step.name,
                entries=entries,
            ) from exc

        if entry_id is not None:
            entries[step.name] = entry_id
        completed.append(step.name)
        current_app.logger.info("Posting %s (%s): step %s complete", key, kind.value, step.name)

    _set_state(key, PostingState.DONE)
    db.session.commit()

    return PostingResult(
        idempotency_key=key,
        kind=kind,
        state=PostingState.DONE,
        completed_steps=completed,
        entries=entries,
        replayed_steps=replayed,
        document=document_loader(entries) if document_loader else None,
        proration=proration,
    )


# =============================================================================
# VALIDATION HELPERS
# =============================================================================

def _parse_payment_method(value: Any, field_name: str = "payment_method") -> PaymentMethod:
    try:
        return PaymentMethod(value)
    except ValueError:
        raise ValidationError(f"{field_name} must be one of {[m.value for m in PaymentMethod]}")


def _load_scope(business_id: int, branch_id: int) -> tuple[Business, Branch]:
    require_ids(business_id=business_id, branch_id=branch_id)
    business = db.session.get(Business, business_id)
    if business is None or not business.is_active:
        raise ValidationError(f"Business {business_id} not found")
    branch = db.session.get(Branch, branch_id)
    if branch is None or branch.business_id != business.id:
        raise ValidationError(f"Branch {branch_id} not found for business {business_id}")
    return business, branch


def _load_vendor(vendor_id: int) -> Vendor:
    require_ids(vendor_id=vendor_id)
    vendor = db.session.get(Vendor, vendor_id)
    if vendor is None:
        raise ValidationError(f"Vendor {vendor_id} not found")
    return vendor


def _attach_vendor_names(lines: Sequence[CartLine]) -> list[CartLine]:
    attached = []
    for line in lines:
        if line.is_vendor:
            vendor = _load_vendor(line.vendor_id)
            line = replace(line, vendor_name=vendor.name)
        attached.append(line)
    return attached


def _bucket_product_fields(bucket: ProrationBucket, *, returned: bool = False) -> dict:
    lines = bucket.lines
    fields = {
        "product_name": ", ".join(line.product_name for line in lines),
        "product_quantity": bucket.quantity,
        "unit_price": lines[0].original_price if len(lines) == 1 else None,
        "total_price": bucket.vendor_subtotal,
    }
    details = ", ".join(f"{l.product_name} ({l.quantity} x {q3(l.original_price)})" for l in lines)
    if returned:
        fields["notes"] = f"Return through POS - Products: {details}"
    elif len(lines) > 1:
        fields["notes"] = f"Bulk sale through POS - Products: {details}"
    return fields


def _bucket_details(bucket: ProrationBucket, document_id: str) -> dict:
    return {
        "document_id": document_id,
        "quantity": bucket.quantity,
        "subtotal": bucket.subtotal,
        "vendor_subtotal": bucket.vendor_subtotal,
        "commission": bucket.commission,
        "discount_share": bucket.discount_share,
        "tax": bucket.tax,
        "total": bucket.total,
    }


# =============================================================================
# SALE
# =============================================================================

def post_sale(
    *,
    business_id: int,
    branch_id: int,
    lines: Sequence[CartLine],
    payment_method: str,
    cashier_name: str | None = None,
    customer_name: str | None = None,
    customer_phone: str | None = None,
    discount: Discount | None = None,
    receipt_note: str | None = None,
    idempotency_key: str | None = None,
    rules: PricingRules | None = None,
) -> PostingResult:
    """
    Post a checkout.

    Writes the receipt and sold lines, one cash entry (cash payments only),
    one vendor profit entry per vendor bucket (profit = commission) and one
    audit entry per bucket.

    The pricing rules are saved on the event; a retry with the same key
    prorates with them instead of the current settings.
    """
    key = _new_idempotency_key(idempotency_key)
    method = _parse_payment_method(payment_method)
    _load_scope(business_id, branch_id)
    lines = _attach_vendor_names(lines)

    # A resumed event owes what its first attempt owed, whatever the settings are now
    rules = _saved_rules(key) or rules or get_pricing_rules(business_id)
    proration = prorate(lines, rules, discount)

    event = _begin_event(
        key, EventKind.SALE, business_id, branch_id,
        _request_hash(business_id, branch_id, tuple(lines), method.value, discount),
        pricing_rules=rules,
    )
    saved = _event_rules(event)
    if saved is not None and saved != rules:
        # Registered concurrently under other settings
        rules = saved
        proration = prorate(lines, rules, discount)

    receipt_id = _document_id("RCP", key)
    cash_scope = CashScope(business_id, branch_id)

    def _write_receipt():
        receipt = Receipt(
            receipt_id=receipt_id,
            business_id=business_id,
            branch_id=branch_id,
            cashier_name=cashier_name,
            customer_name=customer_name,
            customer_phone=customer_phone,
            payment_method=method.value,
            subtotal=proration.grand_subtotal,
            discount=proration.total_discount,
            discount_type=discount.discount_type if discount else None,
            discount_value=discount.value if discount else None,
            coupon_code=discount.coupon_code if discount else None,
            tax_rate=proration.tax_rate,
            tax_amount=proration.tax_amount,
            commission_amount_from_vendors=proration.commission_total,
            total_amount=proration.grand_total,
            receipt_note=receipt_note,
            idempotency_key=key,
        )
        db.session.add(receipt)
        for bucket in proration.buckets:
            for line in bucket.lines:
                db.session.add(SoldProduct(
                    sold_product_id=str(uuid.uuid4()),
                    receipt_id=receipt_id,
                    product_id=line.product_id,
                    product_name=line.product_name,
                    quantity=line.quantity,
                    unit_price_original=q3(line.original_price),
                    unit_price_by_business=q3(line.unit_price),
                    total_price=line.line_total,
                    vendor_id=line.vendor_id,
                    vendor_name=line.vendor_name,
                    commission_for_business_from_vendor=bucket.commission_per_unit(line) if line.is_vendor else None,
                ))
        db.session.flush()
        return receipt

    steps = [_Step("receipt", STREAM_DOCUMENT, _write_receipt)]

    if method is PaymentMethod.CASH and proration.grand_total > 0:
        steps.append(_Step("cash", STREAM_CASH, lambda: cash_ledger_service.update_cash_for_sale(
            cash_scope, cashier_name, proration.grand_total, idempotency_key=key, commit=False,
        )))

    for bucket in proration.vendor_buckets:
        steps.append(_Step(f"vendor:{bucket.vendor_id}", STREAM_VENDOR, _vendor_writer(
            VendorScope(business_id, branch_id, bucket.vendor_id),
            bucket.commission,
            bucket.vendor_subtotal,
            key,
            **_bucket_product_fields(bucket),
        )))

    for bucket in proration.buckets:
        step_name = "audit:owner" if bucket.is_owner else f"audit:vendor:{bucket.vendor_id}"
        steps.append(_Step(step_name, STREAM_AUDIT, _audit_writer(
            business_id=business_id,
            branch_id=branch_id,
            vendor_id=bucket.vendor_id,
            customer_name=customer_name,
            transaction_type="sale",
            transaction_reason=AUDIT_SALE_REASON,
            amount=bucket.total,
            owner_profit_contribution=bucket.total if bucket.is_owner else bucket.commission,
            payment_method=method.value,
            details=_bucket_details(bucket, receipt_id),
            idempotency_key=key,
        )))

    return _run_saga(key, EventKind.SALE, steps, document_loader=lambda _: _receipt_document(receipt_id), proration=proration)


def _vendor_writer(scope: VendorScope, profit, amount, key: str, transaction_type=VendorTransactionType.PRODUCT_SALE, **payload):
    return lambda: vendor_profit_service.accumulate(
        scope, profit, transaction_type, amount, idempotency_key=key, **payload
    )


def _audit_writer(**kwargs):
    return lambda: audit_trail_service.append_audit_entry(**kwargs)


def _receipt_document(receipt_id: str) -> dict | None:
    receipt = db.session.query(Receipt).filter_by(receipt_id=receipt_id).first()
    if receipt is None:
        return None
    doc = receipt.to_dict()
    doc["sold_products"] = [sp.to_dict() for sp in sorted(receipt.sold_products, key=lambda sp: sp.id)]
    return doc


# =============================================================================
# RETURN
# =============================================================================

def _returned_quantity(sold_product_id: str, exclude_key: str) -> int:
    total = (
        db.session.query(func.coalesce(func.sum(ReturnedProduct.quantity), 0))
        .join(ReturnReceipt, ReturnReceipt.return_receipt_id == ReturnedProduct.return_receipt_id)
        .filter(ReturnedProduct.sold_product_id == sold_product_id)
        .filter((ReturnReceipt.idempotency_key.is_(None)) | (ReturnReceipt.idempotency_key != exclude_key))
        .scalar()
    )
    return int(total or 0)


def _refunded_totals(original_receipt_id: str, key: str) -> RefundedTotals:
    """What returns posted against the receipt before this one already gave back."""
    rows = (
        db.session.query(ReturnReceipt)
        .filter_by(original_receipt_id=original_receipt_id)
        .order_by(ReturnReceipt.id.asc())
        .all()
    )
    earlier = []
    for row in rows:
        if row.idempotency_key == key:
            break
        earlier.append(row)
    return RefundedTotals(
        subtotal=money_sum(r.subtotal for r in earlier),
        discount=money_sum(r.discount for r in earlier),
        tax=money_sum(r.tax_amount for r in earlier),
    )


def _take_returned_units(line: ReturnLine) -> None:
    # Conditional on what is still left, so two returns can never both take the last units
    taken = (
        db.session.query(SoldProduct)
        .filter(SoldProduct.sold_product_id == line.sold_product_id)
        .filter(SoldProduct.quantity - SoldProduct.returned_quantity >= line.quantity)
        .update(
            {SoldProduct.returned_quantity: SoldProduct.returned_quantity + line.quantity},
            synchronize_session=False,
        )
    )
    if taken != 1:
        raise ValidationError(f"Cannot return {line.quantity} of {line.product_name}; already returned")


def _build_return_lines(receipt: Receipt, items: Sequence[ReturnItem], key: str) -> list[ReturnLine]:
    if not items:
        raise ValidationError("No items selected for return")

    sold = {sp.sold_product_id: sp for sp in receipt.sold_products}
    requested: dict[str, int] = {}
    for item in items:
        if item.sold_product_id not in sold:
            raise ValidationError(f"Sold product {item.sold_product_id} is not on receipt {receipt.receipt_id}")
        requested[item.sold_product_id] = requested.get(item.sold_product_id, 0) + parse_quantity(item.quantity)

    lines = []
    for sold_product_id, quantity in requested.items():
        sp = sold[sold_product_id]
        available = sp.quantity - _returned_quantity(sold_product_id, key)
        if quantity > available:
            raise ValidationError(
                f"Cannot return {quantity} of {sp.product_name}; only {available} left to return"
            )
        lines.append(ReturnLine(
            product_id=sp.product_id,
            product_name=sp.product_name,
            unit_price=q3(sp.unit_price_by_business),
            quantity=quantity,
            vendor_id=sp.vendor_id,
            vendor_name=sp.vendor_name,
            original_unit_price=q3(sp.unit_price_original),
            commission_per_unit=q3(sp.commission_for_business_from_vendor or ZERO),
            sold_product_id=sold_product_id,
        ))
    return lines


def post_return(
    *,
    business_id: int,
    branch_id: int,
    original_receipt_id: str,
    items: Sequence[ReturnItem],
    cashier_name: str | None = None,
    return_reason: str | None = None,
    refund_method: str | None = None,
    idempotency_key: str | None = None,
) -> PostingResult:
    """
    Post a return against an earlier receipt; every figure is the sale's negation.

    - Commission comes from the sold lines, not from current settings.
    - Tax uses the rate recorded on the receipt.
    - Discount and tax come out of what earlier returns left on the receipt.
    - Returned units are taken off the sold line inside the document step;
      a line already returned in full fails there with ValidationError.
    - Refund method defaults to the receipt's payment method.
    """
    key = _new_idempotency_key(idempotency_key)
    _load_scope(business_id, branch_id)
    require_ids(original_receipt_id=original_receipt_id)

    receipt = db.session.query(Receipt).filter_by(receipt_id=original_receipt_id).first()
    if receipt is None or receipt.business_id != business_id:
        raise ValidationError(f"Receipt {original_receipt_id} not found")

    method = _parse_payment_method(refund_method or receipt.payment_method, "refund_method")
    lines = _build_return_lines(receipt, items, key)

    # Everything a return needs was recorded by the sale; current settings play no part
    rules = PricingRules().with_tax_rate(Decimal(receipt.tax_rate or 0))
    proration = prorate_return(
        lines, rules, receipt.subtotal, receipt.discount,
        original_tax=receipt.tax_amount,
        refunded=_refunded_totals(original_receipt_id, key),
    )
    refund_total = -proration.grand_total
    commission_lost = -proration.commission_total

    _begin_event(
        key, EventKind.RETURN, business_id, branch_id,
        _request_hash(business_id, branch_id, original_receipt_id, tuple(lines), method.value),
        pricing_rules=rules,
    )

    return_receipt_id = _document_id("RET-", key)
    cash_scope = CashScope(business_id, branch_id)

    def _write_return_receipt():
        for line in lines:
            _take_returned_units(line)
        doc = ReturnReceipt(
            return_receipt_id=return_receipt_id,
            original_receipt_id=original_receipt_id,
            business_id=business_id,
            branch_id=branch_id,
            cashier_name=cashier_name,
            return_reason=return_reason,
            refund_method=method.value,
            subtotal=-proration.grand_subtotal,
            discount=-proration.total_discount,
            tax_amount=-proration.tax_amount,
            total_amount=refund_total,
            commission_amount=commission_lost,
            idempotency_key=key,
        )
        db.session.add(doc)
        for line in lines:
            db.session.add(ReturnedProduct(
                return_receipt_id=return_receipt_id,
                sold_product_id=line.sold_product_id,
                product_name=line.product_name,
                quantity=line.quantity,
                unit_price=line.unit_price,
            ))
        db.session.flush()
        return doc

    steps = [_Step("return_receipt", STREAM_DOCUMENT, _write_return_receipt)]

    if method is PaymentMethod.CASH and refund_total > 0:
        steps.append(_Step("cash", STREAM_CASH, lambda: cash_ledger_service.update_cash_for_return(
            cash_scope, cashier_name, refund_total,
            with_commission=commission_lost != 0, idempotency_key=key, commit=False,
        )))

    for bucket in proration.vendor_buckets:
        steps.append(_Step(f"vendor:{bucket.vendor_id}", STREAM_VENDOR, _vendor_writer(
            VendorScope(business_id, branch_id, bucket.vendor_id),
            bucket.commission,
            bucket.vendor_subtotal,
            key,
            **_bucket_product_fields(bucket, returned=True),
        )))

    for bucket in proration.buckets:
        step_name = "audit:owner" if bucket.is_owner else f"audit:vendor:{bucket.vendor_id}"
        steps.append(_Step(step_name, STREAM_AUDIT, _audit_writer(
            business_id=business_id,
            branch_id=branch_id,
            vendor_id=bucket.vendor_id,
            customer_name=receipt.customer_name,
            transaction_type="return",
            transaction_reason=return_reason or AUDIT_RETURN_REASON,
            amount=bucket.total,
            # Vendor returns lose the commission only; owner returns lose the whole amount
            owner_profit_contribution=bucket.total if bucket.is_owner else bucket.commission,
            payment_method=method.value,
            details=dict(_bucket_details(bucket, return_receipt_id), original_receipt_id=original_receipt_id),
            idempotency_key=key,
        )))

    return _run_saga(key, EventKind.RETURN, steps, document_loader=lambda _: _return_document(return_receipt_id), proration=proration)


def _return_document(return_receipt_id: str) -> dict | None:
    doc = db.session.query(ReturnReceipt).filter_by(return_receipt_id=return_receipt_id).first()
    if doc is None:
        return None
    data = doc.to_dict()
    data["lines"] = [line.to_dict() for line in sorted(doc.lines, key=lambda l: l.id)]
    return data


# =============================================================================
# SETTLEMENTS (no proration)
# =============================================================================

def post_cash_adjustment(
    *,
    business_id: int,
    branch_id: int,
    kind: EventKind | str,
    amount: Any,
    reason: str,
    cashier_name: str | None = None,
    idempotency_key: str | None = None,
) -> PostingResult:
    """Manual drawer deposit (cash_addition) or withdrawal (cash_removal)."""
    key = _new_idempotency_key(idempotency_key)
    try:
        kind = EventKind(kind)
    except ValueError:
        raise ValidationError("kind must be cash_addition or cash_removal")
    if kind not in (EventKind.CASH_ADDITION, EventKind.CASH_REMOVAL):
        raise ValidationError("kind must be cash_addition or cash_removal")
    if not reason or not str(reason).strip():
        raise ValidationError("reason is required")
    reason = str(reason).strip()

    amount = parse_amount(amount)
    _load_scope(business_id, branch_id)
    signed = amount if kind is EventKind.CASH_ADDITION else -amount

    _begin_event(key, kind, business_id, branch_id, _request_hash(business_id, branch_id, kind.value, amount, reason))

    steps = [
        _Step("cash", STREAM_CASH, lambda: cash_ledger_service.update_cash_manually(
            CashScope(business_id, branch_id), cashier_name, signed, reason,
            idempotency_key=key, commit=False,
        )),
        _Step("audit", STREAM_AUDIT, _audit_writer(
            business_id=business_id,
            branch_id=branch_id,
            transaction_type=kind.value,
            transaction_reason=reason,
            amount=signed,
            owner_profit_contribution=signed,
            payment_method=PaymentMethod.CASH.value,
            details={"cashier_name": cashier_name},
            idempotency_key=key,
        )),
    ]
    return _run_saga(key, kind, steps)


def post_monthly_tax(
    *,
    business_id: int,
    branch_id: int,
    vendor_id: int,
    amount: Any,
    month: int,
    year: int,
    payment_method: str = PaymentMethod.CASH.value,
    cashier_name: str | None = None,
    idempotency_key: str | None = None,
) -> PostingResult:
    """
    Vendor pays the owner its monthly tax.

    Cash +amount (cash payments only), vendor profit -amount, audit owner
    profit +amount.
    """
    key = _new_idempotency_key(idempotency_key)
    amount = parse_amount(amount)
    method = _parse_payment_method(payment_method)
    if not isinstance(month, int) or not 1 <= month <= 12:
        raise ValidationError("month must be between 1 and 12")
    if not isinstance(year, int) or year < 2000:
        raise ValidationError("year must be a four-digit year")

    _load_scope(business_id, branch_id)
    vendor = _load_vendor(vendor_id)
    reason = f"Monthly tax payment from {vendor.name} for {month:02d}/{year}"
    tax_period = f"{year}-{month:02d}"

    _begin_event(
        key, EventKind.MONTHLY_TAX, business_id, branch_id,
        _request_hash(business_id, branch_id, vendor_id, amount, tax_period, method.value),
    )

    steps = []
    if method is PaymentMethod.CASH:
        steps.append(_Step("cash", STREAM_CASH, lambda: cash_ledger_service.update_cash_manually(
            CashScope(business_id, branch_id), cashier_name, amount, reason,
            idempotency_key=key, tracking_prefix="TAX", commit=False,
        )))
    steps.append(_Step(f"vendor:{vendor_id}", STREAM_VENDOR, _vendor_writer(
        VendorScope(business_id, branch_id, vendor_id),
        -amount,
        -amount,
        key,
        transaction_type=VendorTransactionType.TAX,
        tax_period=tax_period,
        tax_description=reason,
        notes=reason,
    )))
    steps.append(_Step("audit", STREAM_AUDIT, _audit_writer(
        business_id=business_id,
        branch_id=branch_id,
        vendor_id=vendor_id,
        transaction_type="tax",
        transaction_reason=reason,
        amount=amount,
        owner_profit_contribution=amount,
        payment_method=method.value,
        details={"month": month, "year": year, "tax_type": "monthly"},
        idempotency_key=key,
    )))
    return _run_saga(key, EventKind.MONTHLY_TAX, steps)


def post_vendor_rental(
    *,
    business_id: int,
    branch_id: int,
    vendor_id: int,
    amount: Any,
    rental_start_date: date,
    rental_end_date: date,
    payment_method: str = PaymentMethod.CASH.value,
    rental_period: str | None = None,
    reason: str | None = None,
    cashier_name: str | None = None,
    idempotency_key: str | None = None,
) -> PostingResult:
    """Vendor pays rent for shelf space: cash +amount (cash only), vendor profit +amount, audit +amount."""
    key = _new_idempotency_key(idempotency_key)
    amount = parse_amount(amount)
    method = _parse_payment_method(payment_method)
    if rental_start_date is None or rental_end_date is None:
        raise ValidationError("rental_start_date and rental_end_date are required")
    if rental_end_date < rental_start_date:
        raise ValidationError("rental_end_date must not be before rental_start_date")

    _load_scope(business_id, branch_id)
    _load_vendor(vendor_id)
    reason = (reason or "").strip() or DEFAULT_RENTAL_REASON

    _begin_event(
        key, EventKind.VENDOR_RENTAL, business_id, branch_id,
        _request_hash(business_id, branch_id, vendor_id, amount, rental_start_date, rental_end_date, method.value),
    )

    steps = []
    if method is PaymentMethod.CASH:
        steps.append(_Step("cash", STREAM_CASH, lambda: cash_ledger_service.update_cash_manually(
            CashScope(business_id, branch_id), cashier_name, amount, reason,
            idempotency_key=key, tracking_prefix="RNT", commit=False,
        )))
    steps.append(_Step(f"vendor:{vendor_id}", STREAM_VENDOR, _vendor_writer(
        VendorScope(business_id, branch_id, vendor_id),
        amount,
        amount,
        key,
        transaction_type=VendorTransactionType.RENTAL,
        rental_start_date=rental_start_date,
        rental_end_date=rental_end_date,
        rental_period=rental_period,
        notes=reason,
    )))
    steps.append(_Step("audit", STREAM_AUDIT, _audit_writer(
        business_id=business_id,
        branch_id=branch_id,
        vendor_id=vendor_id,
        transaction_type="rental_income",
        transaction_reason=reason,
        amount=amount,
        owner_profit_contribution=amount,
        payment_method=method.value,
        details={
            "rental_start_date": rental_start_date.isoformat(),
            "rental_end_date": rental_end_date.isoformat(),
        },
        idempotency_key=key,
    )))
    return _run_saga(key, EventKind.VENDOR_RENTAL, steps)


# =============================================================================
# DISPATCH
# =============================================================================

POSTERS: dict[EventKind, Callable[..., PostingResult]] = {
    EventKind.SALE: post_sale,
    EventKind.RETURN: post_return,
    EventKind.CASH_ADDITION: lambda **kw: post_cash_adjustment(kind=EventKind.CASH_ADDITION, **kw),
    EventKind.CASH_REMOVAL: lambda **kw: post_cash_adjustment(kind=EventKind.CASH_REMOVAL, **kw),
    EventKind.MONTHLY_TAX: post_monthly_tax,
    EventKind.VENDOR_RENTAL: post_vendor_rental,
}


def post_event(kind: EventKind | str, **kwargs) -> PostingResult:
    """Route an event to its poster. Every EventKind must have an entry in POSTERS."""
    try:
        kind = EventKind(kind)
    except ValueError:
        raise ValidationError(f"Unknown event kind {kind!r}")
    return POSTERS[kind](**kwargs)


def get_event(idempotency_key: str) -> dict | None:
    event = db.session.query(PostingEvent).filter_by(idempotency_key=idempotency_key).first()
    if event is None:
        return None
    data = event.to_dict()
    data["steps"] = [s.to_dict() for s in sorted(event.steps, key=lambda s: s.id)]
    return data
