# Overview: Flask API routes for the branch cash ledger; parses input and returns JSON responses.

from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from ..money import money_str, to_jsonable
from ..services import cash_ledger_service, posting_service
from ..services.balance_service import CashScope, resolve_cash_balance
from ..services.concurrency import ResolutionError
from ..validation import ValidationError
from .params import date_arg, idempotency_key, int_arg, int_value, json_body, limit_arg
from .transactions import posting_response


cash_bp = Blueprint("cash", __name__, url_prefix="/api/cash")


@cash_bp.get("/entries")
def list_entries_route():
    """
    Cash ledger entries, newest first.

    Query params: business_id (required), branch_id, start_date, end_date,
    cashier_name, limit
    """
    try:
        entries = cash_ledger_service.list_cash_entries(
            int_arg("business_id", required=True),
            branch_id=int_arg("branch_id"),
            start_date=date_arg("start_date"),
            end_date=date_arg("end_date"),
            cashier_name=request.args.get("cashier_name"),
            limit=limit_arg(),
        )
        return jsonify({"entries": [e.to_dict() for e in entries]}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to list cash entries")
        return jsonify({"error": "Internal server error"}), 500


@cash_bp.get("/balance")
def balance_route():
    """Current drawer balance for a (business, branch) scope."""
    try:
        scope = CashScope(
            int_arg("business_id", required=True),
            int_arg("branch_id", required=True),
        )
        balance = resolve_cash_balance(scope)
        return jsonify({"scope": scope.as_dict(), "balance": money_str(balance)}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ResolutionError as e:
        return jsonify({"error": str(e)}), 503
    except Exception:
        current_app.logger.exception("Failed to resolve cash balance")
        return jsonify({"error": "Internal server error"}), 500


@cash_bp.get("/stats")
def stats_route():
    try:
        stats = cash_ledger_service.get_cash_stats(
            int_arg("business_id", required=True),
            branch_id=int_arg("branch_id"),
            start_date=date_arg("start_date"),
            end_date=date_arg("end_date"),
        )
        return jsonify({"stats": to_jsonable(stats)}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to compute cash stats")
        return jsonify({"error": "Internal server error"}), 500


@cash_bp.post("/adjustments")
def adjustment_route():
    """
    Manual drawer deposit or withdrawal.

    Request body:
    {
        "business_id": 1,
        "branch_id": 1,
        "type": "deposit" | "withdrawal",
        "amount": "50.000",
        "reason": "Float top-up",
        "cashier_name": "Sara"
    }
    """
    try:
        data = json_body()
        adjustment_type = data.get("type")
        if adjustment_type not in ("deposit", "withdrawal"):
            raise ValidationError("type must be deposit or withdrawal")
        kwargs = dict(
            business_id=int_value(data.get("business_id"), "business_id"),
            branch_id=int_value(data.get("branch_id"), "branch_id"),
            kind="cash_addition" if adjustment_type == "deposit" else "cash_removal",
            amount=data.get("amount"),
            reason=data.get("reason"),
            cashier_name=data.get("cashier_name"),
            idempotency_key=idempotency_key(data),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    return posting_response(lambda: posting_service.post_cash_adjustment(**kwargs), "cash adjustment")
