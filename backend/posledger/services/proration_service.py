# Overview: Proration engine; splits a cart or a return into vendor and owner buckets.

"""
Proration Engine

Pure computation: no database access, no writes. The posting router feeds it
cart lines and the business's PricingRules and posts whatever comes back.

BUCKETS:
- One bucket per vendor, in order of first appearance in the cart.
- One owner bucket (lines with no vendor), always last.

FIGURES PER BUCKET:
- subtotal: customer-facing gross, sum(selling price x quantity)
- vendor_subtotal: sum(original price x quantity), vendor buckets only
- commission: sum((selling - original) x quantity) when commission is enabled
  and vendor_subtotal >= minimum_commission_amount, else 0 (all-or-nothing)
- discount_share: order discount apportioned by subtotal
- tax: order tax apportioned by (subtotal - discount_share)
- total: subtotal - discount_share + tax

ORDER OF OPERATIONS: discount first, then tax on the discounted amount. The
same order is used for sales and returns.

ROUNDING: every apportioned figure is rounded to 0.001 and the remainder goes
to the last bucket with a non-zero weight, so shares always sum exactly to the
order-level figure. Across returns the receipt plays the same role: each
return takes its share of what is left, and the last one takes the rest.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Iterable, Sequence

from posledger.money import ZERO, money_str, q3
from posledger.validation import ValidationError, validate_discount


HUNDRED = Decimal(100)


# =============================================================================
# INPUT TYPES
# =============================================================================

@dataclass(frozen=True)
class PricingRules:
    """
    Business pricing configuration, built once per request.

    Rates are percentages (5 means 5%).
    """
    tax_enabled: bool = False
    tax_rate: Decimal = Decimal("0")
    vendor_commission_enabled: bool = False
    default_commission_rate: Decimal = Decimal("0")
    minimum_commission_amount: Decimal = ZERO

    @property
    def effective_tax_rate(self) -> Decimal:
        return self.tax_rate if self.tax_enabled else Decimal("0")

    def with_tax_rate(self, tax_rate: Decimal) -> "PricingRules":
        """Copy with a fixed tax rate, e.g. the rate recorded on a receipt."""
        return replace(self, tax_enabled=tax_rate > 0, tax_rate=tax_rate)

    def to_dict(self) -> dict:
        return {
            "tax_enabled": self.tax_enabled,
            "tax_rate": str(self.tax_rate),
            "vendor_commission_enabled": self.vendor_commission_enabled,
            "default_commission_rate": str(self.default_commission_rate),
            "minimum_commission_amount": money_str(self.minimum_commission_amount),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PricingRules":
        return cls(
            tax_enabled=bool(data.get("tax_enabled")),
            tax_rate=Decimal(data.get("tax_rate") or "0"),
            vendor_commission_enabled=bool(data.get("vendor_commission_enabled")),
            default_commission_rate=Decimal(data.get("default_commission_rate") or "0"),
            minimum_commission_amount=q3(Decimal(data.get("minimum_commission_amount") or "0")),
        )


@dataclass(frozen=True)
class CartLine:
    product_id: str
    product_name: str
    unit_price: Decimal
    quantity: int
    vendor_id: int | None = None
    vendor_name: str | None = None
    # Pre-commission price; only meaningful on vendor lines
    original_unit_price: Decimal | None = None

    @property
    def is_vendor(self) -> bool:
        return self.vendor_id is not None

    @property
    def original_price(self) -> Decimal:
        if self.original_unit_price is None:
            return self.unit_price
        return self.original_unit_price

    @property
    def line_total(self) -> Decimal:
        return q3(self.unit_price * self.quantity)


@dataclass(frozen=True)
class ReturnLine(CartLine):
    """A sold line being returned, carrying the commission recorded at sale time."""
    commission_per_unit: Decimal = ZERO
    sold_product_id: str | None = None


@dataclass(frozen=True)
class Discount:
    discount_type: str
    value: Decimal
    coupon_code: str | None = None


@dataclass(frozen=True)
class RefundedTotals:
    """What earlier returns against the same receipt already gave back (positive)."""
    subtotal: Decimal = ZERO
    discount: Decimal = ZERO
    tax: Decimal = ZERO


# =============================================================================
# OUTPUT TYPES
# =============================================================================

@dataclass(frozen=True)
class ProrationBucket:
    vendor_id: int | None
    vendor_name: str | None
    lines: tuple = ()
    subtotal: Decimal = ZERO
    vendor_subtotal: Decimal = ZERO
    commission: Decimal = ZERO
    commission_counted: bool = False
    discount_share: Decimal = ZERO
    tax: Decimal = ZERO
    total: Decimal = ZERO

    @property
    def is_owner(self) -> bool:
        return self.vendor_id is None

    @property
    def quantity(self) -> int:
        return sum(line.quantity for line in self.lines)

    def commission_per_unit(self, line: CartLine) -> Decimal:
        """Per-unit commission to record on a sold line of this bucket."""
        if not self.commission_counted or not line.is_vendor:
            return ZERO
        return q3(line.unit_price - line.original_price)

    def negate(self) -> "ProrationBucket":
        return replace(
            self,
            subtotal=-self.subtotal,
            vendor_subtotal=-self.vendor_subtotal,
            commission=-self.commission,
            discount_share=-self.discount_share,
            tax=-self.tax,
            total=-self.total,
        )

    def to_dict(self) -> dict:
        return {
            "vendor_id": self.vendor_id,
            "vendor_name": self.vendor_name,
            "quantity": self.quantity,
            "subtotal": money_str(self.subtotal),
            "vendor_subtotal": money_str(self.vendor_subtotal),
            "commission": money_str(self.commission),
            "discount_share": money_str(self.discount_share),
            "tax": money_str(self.tax),
            "total": money_str(self.total),
        }


@dataclass(frozen=True)
class ProrationResult:
    buckets: tuple = field(default_factory=tuple)
    grand_subtotal: Decimal = ZERO
    total_discount: Decimal = ZERO
    tax_rate: Decimal = Decimal("0")
    tax_amount: Decimal = ZERO
    commission_total: Decimal = ZERO
    grand_total: Decimal = ZERO

    @property
    def vendor_buckets(self) -> list[ProrationBucket]:
        return [b for b in self.buckets if not b.is_owner]

    @property
    def owner_bucket(self) -> ProrationBucket | None:
        for bucket in self.buckets:
            if bucket.is_owner:
                return bucket
        return None

    def negate(self) -> "ProrationResult":
        return replace(
            self,
            buckets=tuple(b.negate() for b in self.buckets),
            grand_subtotal=-self.grand_subtotal,
            total_discount=-self.total_discount,
            tax_amount=-self.tax_amount,
            commission_total=-self.commission_total,
            grand_total=-self.grand_total,
        )

    def to_dict(self) -> dict:
        return {
            "buckets": [b.to_dict() for b in self.buckets],
            "grand_subtotal": money_str(self.grand_subtotal),
            "total_discount": money_str(self.total_discount),
            "tax_rate": str(self.tax_rate),
            "tax_amount": money_str(self.tax_amount),
            "commission_total": money_str(self.commission_total),
            "grand_total": money_str(self.grand_total),
        }


# =============================================================================
# HELPERS
# =============================================================================

def _allocate(total: Decimal, weights: Sequence[Decimal]) -> list[Decimal]:
    """
    Split `total` proportionally to `weights`, rounded to 0.001.

    The last bucket with a non-zero weight absorbs the rounding remainder.
    """
    shares = [ZERO] * len(weights)
    weight_sum = sum(weights, ZERO)
    if total == 0 or weight_sum == 0:
        return shares

    last = max(i for i, w in enumerate(weights) if w != 0)
    allocated = ZERO
    for i, weight in enumerate(weights):
        if i == last:
            continue
        shares[i] = q3(total * weight / weight_sum)
        allocated += shares[i]
    shares[last] = q3(total - allocated)
    return shares


def _check_lines(lines: Sequence[CartLine]) -> None:
    if not lines:
        raise ValidationError("Cart is empty")
    for line in lines:
        if line.quantity is None or line.quantity <= 0:
            raise ValidationError(f"Quantity for {line.product_name} must be > 0")
        if line.unit_price < 0 or line.original_price < 0:
            raise ValidationError(f"Price for {line.product_name} must be >= 0")
        # Commission is the markup; a vendor line may not sell below its original price
        if line.is_vendor and line.original_price > line.unit_price:
            raise ValidationError(
                f"Original price for {line.product_name} must not exceed its selling price"
            )


def _partition(lines: Iterable[CartLine]) -> list[tuple[int | None, str | None, list[CartLine]]]:
    groups: dict[int, list[CartLine]] = {}
    names: dict[int, str | None] = {}
    owner_lines: list[CartLine] = []
    for line in lines:
        if line.is_vendor:
            if line.vendor_id not in groups:
                groups[line.vendor_id] = []
                names[line.vendor_id] = line.vendor_name
            groups[line.vendor_id].append(line)
        else:
            owner_lines.append(line)

    partitioned = [(vid, names[vid], group) for vid, group in groups.items()]
    if owner_lines:
        partitioned.append((None, None, owner_lines))
    return partitioned


def _tax_on(base: Decimal, tax_rate: Decimal) -> Decimal:
    return q3(base * tax_rate / HUNDRED)


def _finish(
    buckets: list[ProrationBucket],
    total_discount: Decimal,
    tax_rate: Decimal,
    tax_amount: Decimal | None = None,
) -> ProrationResult:
    """
    Apportion discount then tax across buckets and compute totals.

    tax_amount overrides the order tax computed from tax_rate.
    """
    grand_subtotal = q3(sum((b.subtotal for b in buckets), ZERO))
    total_discount = min(q3(total_discount), grand_subtotal)

    discount_shares = _allocate(total_discount, [b.subtotal for b in buckets])
    taxable = [q3(b.subtotal - share) for b, share in zip(buckets, discount_shares)]

    if tax_amount is None:
        tax_amount = _tax_on(grand_subtotal - total_discount, tax_rate)
    tax_amount = q3(tax_amount)
    tax_shares = _allocate(tax_amount, taxable)

    finished = []
    for bucket, share, base, tax in zip(buckets, discount_shares, taxable, tax_shares):
        finished.append(replace(bucket, discount_share=share, tax=tax, total=q3(base + tax)))

    return ProrationResult(
        buckets=tuple(finished),
        grand_subtotal=grand_subtotal,
        total_discount=total_discount,
        tax_rate=tax_rate,
        tax_amount=tax_amount,
        commission_total=q3(sum((b.commission for b in finished), ZERO)),
        grand_total=q3(grand_subtotal - total_discount + tax_amount),
    )


# =============================================================================
# SALE
# =============================================================================

def prorate(
    lines: Sequence[CartLine],
    rules: PricingRules,
    discount: Discount | None = None,
) -> ProrationResult:
    """
    Split a checkout cart into buckets.

    Raises ValidationError for an empty cart, non-positive quantities,
    negative prices, a vendor line priced below its original price, or a
    discount that fails validate_discount().
    """
    _check_lines(lines)

    buckets = []
    for vendor_id, vendor_name, group in _partition(lines):
        subtotal = q3(sum((l.unit_price * l.quantity for l in group), ZERO))
        if vendor_id is None:
            buckets.append(ProrationBucket(vendor_id=None, vendor_name=None, lines=tuple(group), subtotal=subtotal))
            continue

        vendor_subtotal = q3(sum((l.original_price * l.quantity for l in group), ZERO))
        markup = q3(sum(((l.unit_price - l.original_price) * l.quantity for l in group), ZERO))
        counted = (
            rules.vendor_commission_enabled
            and vendor_subtotal >= q3(rules.minimum_commission_amount)
        )
        buckets.append(ProrationBucket(
            vendor_id=vendor_id,
            vendor_name=vendor_name,
            lines=tuple(group),
            subtotal=subtotal,
            vendor_subtotal=vendor_subtotal,
            commission=markup if counted else ZERO,
            commission_counted=counted,
        ))

    total_discount = ZERO
    if discount is not None:
        grand_subtotal = q3(sum((b.subtotal for b in buckets), ZERO))
        total_discount = validate_discount(discount.discount_type, discount.value, grand_subtotal)

    return _finish(buckets, total_discount, rules.effective_tax_rate)


# =============================================================================
# RETURN
# =============================================================================

def prorate_return(
    lines: Sequence[ReturnLine],
    rules: PricingRules,
    original_subtotal: Decimal,
    original_discount: Decimal = ZERO,
    *,
    original_tax: Decimal | None = None,
    refunded: RefundedTotals | None = None,
) -> ProrationResult:
    """
    Split returned sold lines into buckets and negate the result.

    Commission comes from each line's recorded commission_per_unit, never from
    the current rules. Pass rules carrying the receipt's tax rate
    (PricingRules.with_tax_rate) so the refund matches what was paid.

    DISCOUNT AND TAX: shares are taken from what the receipt has left after
    the returns in `refunded`, never from the original figures. The return
    that brings the refunded subtotal up to the receipt's subtotal takes the
    remaining discount and tax whole, so a receipt returned piece by piece
    refunds exactly its total. With original_tax unset the tax is computed
    from the rate alone.
    """
    _check_lines(lines)
    refunded = refunded or RefundedTotals()

    buckets = []
    for vendor_id, vendor_name, group in _partition(lines):
        subtotal = q3(sum((l.unit_price * l.quantity for l in group), ZERO))
        if vendor_id is None:
            buckets.append(ProrationBucket(vendor_id=None, vendor_name=None, lines=tuple(group), subtotal=subtotal))
            continue

        commission = q3(sum((l.commission_per_unit * l.quantity for l in group), ZERO))
        buckets.append(ProrationBucket(
            vendor_id=vendor_id,
            vendor_name=vendor_name,
            lines=tuple(group),
            subtotal=subtotal,
            vendor_subtotal=q3(sum((l.original_price * l.quantity for l in group), ZERO)),
            commission=commission,
            commission_counted=commission != 0,
        ))

    returned_subtotal = q3(sum((b.subtotal for b in buckets), ZERO))
    remaining_subtotal = q3(Decimal(original_subtotal or 0) - refunded.subtotal)
    remaining_discount = max(q3(Decimal(original_discount or 0) - refunded.discount), ZERO)
    closes_receipt = returned_subtotal >= remaining_subtotal

    total_discount = ZERO
    if remaining_subtotal > 0 and remaining_discount > 0:
        if closes_receipt:
            total_discount = remaining_discount
        else:
            total_discount = q3(remaining_discount * returned_subtotal / remaining_subtotal)
    total_discount = min(total_discount, returned_subtotal)

    tax_amount = None
    if original_tax is not None:
        remaining_tax = max(q3(Decimal(original_tax) - refunded.tax), ZERO)
        if closes_receipt:
            tax_amount = remaining_tax
        else:
            tax_amount = min(_tax_on(returned_subtotal - total_discount, rules.effective_tax_rate), remaining_tax)

    return _finish(buckets, total_discount, rules.effective_tax_rate, tax_amount).negate()
