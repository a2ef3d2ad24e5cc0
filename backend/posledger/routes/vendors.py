# Overview: Flask API routes for vendor profit transactions; parses input and returns JSON responses.

from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from ..money import to_jsonable
from ..services import posting_service, vendor_profit_service
from ..validation import ValidationError
from .params import date_arg, date_value, idempotency_key, int_arg, int_value, json_body, limit_arg
from .transactions import posting_response


vendor_transactions_bp = Blueprint("vendor_transactions", __name__, url_prefix="/api/vendor-transactions")


def _filters() -> dict:
    return {
        "branch_id": int_arg("branch_id"),
        "vendor_id": int_arg("vendor_id"),
        "transaction_type": request.args.get("transaction_type"),
        "status": request.args.get("status"),
        "start_date": date_arg("start_date"),
        "end_date": date_arg("end_date"),
    }


# =============================================================================
# READ API
# =============================================================================

@vendor_transactions_bp.get("")
def list_route():
    try:
        rows = vendor_profit_service.list_vendor_transactions(
            int_arg("business_id", required=True), limit=limit_arg(), **_filters()
        )
        return jsonify({"transactions": [r.to_dict() for r in rows]}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to list vendor transactions")
        return jsonify({"error": "Internal server error"}), 500


@vendor_transactions_bp.get("/stats")
def stats_route():
    try:
        stats = vendor_profit_service.get_transaction_stats(int_arg("business_id", required=True), **_filters())
        return jsonify({"stats": to_jsonable(stats)}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to compute vendor transaction stats")
        return jsonify({"error": "Internal server error"}), 500


@vendor_transactions_bp.get("/summary")
def summary_route():
    """Per-vendor profit for one branch. Query params: business_id, branch_id (required)."""
    try:
        filters = _filters()
        branch_id = int_value(filters.pop("branch_id"), "branch_id")
        summary = vendor_profit_service.get_branch_profit_summary(
            int_arg("business_id", required=True), branch_id, **filters
        )
        return jsonify({"summary": to_jsonable(summary)}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to build branch profit summary")
        return jsonify({"error": "Internal server error"}), 500


@vendor_transactions_bp.get("/trends")
def trends_route():
    """Profit per day, ISO week or month. Query param period: daily|weekly|monthly."""
    try:
        trends = vendor_profit_service.get_branch_profit_trends(
            int_arg("business_id", required=True),
            int_arg("branch_id", required=True),
            request.args.get("period", "monthly"),
            start_date=date_arg("start_date"),
            end_date=date_arg("end_date"),
        )
        return jsonify({"trends": to_jsonable(trends)}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to build branch profit trends")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# SETTLEMENTS
# =============================================================================

@vendor_transactions_bp.post("/monthly-tax")
def monthly_tax_route():
    """
    Vendor pays the owner its monthly tax.

    Request body:
    {
        "business_id": 1, "branch_id": 1, "vendor_id": 3,
        "amount": "12.500", "month": 5, "year": 2026,
        "payment_method": "cash"
    }
    """
    try:
        data = json_body()
        kwargs = dict(
            business_id=int_value(data.get("business_id"), "business_id"),
            branch_id=int_value(data.get("branch_id"), "branch_id"),
            vendor_id=int_value(data.get("vendor_id"), "vendor_id"),
            amount=data.get("amount"),
            month=int_value(data.get("month"), "month"),
            year=int_value(data.get("year"), "year"),
            payment_method=data.get("payment_method", "cash"),
            cashier_name=data.get("cashier_name"),
            idempotency_key=idempotency_key(data),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    return posting_response(lambda: posting_service.post_monthly_tax(**kwargs), "monthly tax")


@vendor_transactions_bp.post("/rentals")
def rental_route():
    """
    Vendor pays rent for shelf space.

    Request body:
    {
        "business_id": 1, "branch_id": 1, "vendor_id": 3,
        "amount": "100.000",
        "rental_start_date": "2026-01-01", "rental_end_date": "2026-04-01",
        "payment_method": "cash",
        "reason": "Q1 shelf rent"     (optional)
    }
    """
    try:
        data = json_body()
        kwargs = dict(
            business_id=int_value(data.get("business_id"), "business_id"),
            branch_id=int_value(data.get("branch_id"), "branch_id"),
            vendor_id=int_value(data.get("vendor_id"), "vendor_id"),
            amount=data.get("amount"),
            rental_start_date=date_value(data.get("rental_start_date"), "rental_start_date", required=True),
            rental_end_date=date_value(data.get("rental_end_date"), "rental_end_date", required=True),
            payment_method=data.get("payment_method", "cash"),
            rental_period=data.get("rental_period"),
            reason=data.get("reason"),
            cashier_name=data.get("cashier_name"),
            idempotency_key=idempotency_key(data),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    return posting_response(lambda: posting_service.post_vendor_rental(**kwargs), "vendor rental")
