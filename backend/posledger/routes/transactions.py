# Overview: Flask API routes for sale and return postings; parses input and returns JSON responses.

# backend/posledger/routes/transactions.py
"""
Transaction Posting API Routes

WHY: The POS client submits a checkout or a return once; the router fans it
out to the cash ledger, the vendor profit ledger and the audit trail.

RESPONSES:
- 201: every step posted
- 207: a later step failed after cash moved; the sale IS recorded and the
  response carries a warning plus the completed steps (retry with the same
  Idempotency-Key to finish it)
- 400: invalid input, nothing written
- 409: idempotency key reused for another request, or ledger contention
  outlasted the retries
- 502: a step failed before any cash moved
- 503: ledger balance could not be read
"""

from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from ..money import MoneyFormatError, to_money
from ..services import audit_trail_service, posting_service
from ..services.concurrency import ConcurrencyConflict, ResolutionError
from ..services.posting_service import PartialPostError, ReturnItem
from ..services.proration_service import CartLine, Discount, prorate
from ..services.settings_service import get_pricing_rules
from ..validation import ConflictError, ValidationError, parse_amount, parse_quantity
from .params import date_arg, idempotency_key, int_arg, int_value, json_body, limit_arg


transactions_bp = Blueprint("transactions", __name__, url_prefix="/api/transactions")


# =============================================================================
# PAYLOAD PARSING
# =============================================================================

def _parse_cart_lines(items) -> list[CartLine]:
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")

    lines = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"items[{index}] must be an object")
        product_id = item.get("product_id")
        if product_id is None or str(product_id).strip() == "":
            raise ValidationError(f"items[{index}].product_id is required")

        vendor_id = int_value(item.get("vendor_id"), f"items[{index}].vendor_id", required=False)
        original = item.get("original_unit_price")
        lines.append(CartLine(
            product_id=str(product_id),
            product_name=item.get("product_name") or str(product_id),
            unit_price=parse_amount(item.get("unit_price"), f"items[{index}].unit_price", allow_zero=True),
            quantity=parse_quantity(item.get("quantity"), f"items[{index}].quantity"),
            vendor_id=vendor_id,
            original_unit_price=(
                parse_amount(original, f"items[{index}].original_unit_price", allow_zero=True)
                if vendor_id is not None and original is not None else None
            ),
        ))
    return lines


def _parse_discount(data) -> Discount | None:
    if not data:
        return None
    if not isinstance(data, dict):
        raise ValidationError("discount must be an object")
    try:
        value = to_money(data.get("value"), field="discount.value")
    except MoneyFormatError as exc:
        raise ValidationError(str(exc))
    return Discount(
        discount_type=data.get("type"),
        value=value,
        coupon_code=data.get("coupon_code"),
    )


def _parse_return_items(items) -> list[ReturnItem]:
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")
    parsed = []
    for index, item in enumerate(items):
        if not isinstance(item, dict) or not item.get("sold_product_id"):
            raise ValidationError(f"items[{index}].sold_product_id is required")
        parsed.append(ReturnItem(
            sold_product_id=str(item["sold_product_id"]),
            quantity=parse_quantity(item.get("quantity"), f"items[{index}].quantity"),
        ))
    return parsed


def posting_response(post, action: str):
    """
    Run a posting callable and translate its outcome into a JSON response.

    Shared by every blueprint that posts through the router.
    """
    try:
        result = post()
        return jsonify({"posting": result.to_dict()}), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except ConcurrencyConflict as e:
        return jsonify({"error": str(e), "scope": e.scope}), 409
    except ResolutionError as e:
        return jsonify({"error": str(e)}), 503
    except PartialPostError as e:
        if e.cash_posted:
            # Cash has physically moved: the operation is recorded
            return jsonify({
                "posting": e.to_dict(),
                "warning": f"{action} recorded, {e.failed_step} posting failed - will be reconciled",
            }), 207
        return jsonify({"error": str(e), "posting": e.to_dict()}), 502
    except Exception:
        current_app.logger.exception("Failed to post %s", action)
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# SALES & RETURNS
# =============================================================================

@transactions_bp.post("/sales")
def post_sale_route():
    """
    Post a checkout.

    Request body:
    {
        "business_id": 1,
        "branch_id": 1,
        "payment_method": "cash",
        "cashier_name": "Sara",
        "customer_name": "...",       (optional)
        "items": [
            {"product_id": "P1", "product_name": "Tea", "unit_price": "10.000", "quantity": 2},
            {"product_id": "V7", "unit_price": "8.800", "original_unit_price": "8.000",
             "quantity": 1, "vendor_id": 3}
        ],
        "discount": {"type": "percentage", "value": "10", "coupon_code": "EID"},  (optional)
        "idempotency_key": "..."      (optional, or Idempotency-Key header)
    }
    """
    try:
        data = json_body()
        kwargs = dict(
            business_id=int_value(data.get("business_id"), "business_id"),
            branch_id=int_value(data.get("branch_id"), "branch_id"),
            lines=_parse_cart_lines(data.get("items")),
            payment_method=data.get("payment_method"),
            cashier_name=data.get("cashier_name"),
            customer_name=data.get("customer_name"),
            customer_phone=data.get("customer_phone"),
            discount=_parse_discount(data.get("discount")),
            receipt_note=data.get("note"),
            idempotency_key=idempotency_key(data),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    return posting_response(lambda: posting_service.post_sale(**kwargs), "sale")


@transactions_bp.post("/returns")
def post_return_route():
    """
    Post a return against an earlier receipt.

    Request body:
    {
        "business_id": 1,
        "branch_id": 1,
        "original_receipt_id": "RCP...",
        "items": [{"sold_product_id": "...", "quantity": 1}],
        "refund_method": "cash",      (optional, defaults to the receipt's method)
        "return_reason": "Damaged"    (optional)
    }
    """
    try:
        data = json_body()
        kwargs = dict(
            business_id=int_value(data.get("business_id"), "business_id"),
            branch_id=int_value(data.get("branch_id"), "branch_id"),
            original_receipt_id=data.get("original_receipt_id"),
            items=_parse_return_items(data.get("items")),
            cashier_name=data.get("cashier_name"),
            return_reason=data.get("return_reason"),
            refund_method=data.get("refund_method"),
            idempotency_key=idempotency_key(data),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    return posting_response(lambda: posting_service.post_return(**kwargs), "return")


@transactions_bp.post("/prorate")
def prorate_preview_route():
    """Preview the bucket split for a cart. Writes nothing."""
    try:
        data = json_body()
        business_id = int_value(data.get("business_id"), "business_id")
        result = prorate(
            _parse_cart_lines(data.get("items")),
            get_pricing_rules(business_id),
            _parse_discount(data.get("discount")),
        )
        return jsonify({"proration": result.to_dict()}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to prorate cart")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# READ API
# =============================================================================

@transactions_bp.get("/audit")
def list_audit_route():
    """
    List audit trail entries, newest first.

    Query params: business_id (required), branch_id, vendor_id,
    transaction_type, payment_method, start_date, end_date, limit
    """
    try:
        entries = audit_trail_service.list_audit_entries(
            int_arg("business_id", required=True),
            branch_id=int_arg("branch_id"),
            vendor_id=int_arg("vendor_id"),
            transaction_type=request.args.get("transaction_type"),
            payment_method=request.args.get("payment_method"),
            start_date=date_arg("start_date"),
            end_date=date_arg("end_date"),
            limit=limit_arg(),
        )
        return jsonify({"entries": [e.to_dict() for e in entries]}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to list audit entries")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.get("/events/<string:key>")
def get_event_route(key: str):
    """Saga state and completed steps for one idempotency key."""
    try:
        event = posting_service.get_event(key)
        if event is None:
            return jsonify({"error": "Posting event not found"}), 404
        return jsonify({"event": event}), 200
    except Exception:
        current_app.logger.exception("Failed to load posting event")
        return jsonify({"error": "Internal server error"}), 500
