# backend/posledger/routes/system.py
"""
System health and version endpoints.

Health checks the store and the ledgers the posting router depends on, and
reports postings that stopped before DONE so operators know to reconcile.
"""

import sys
import time

from flask import Blueprint, current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Branch, Business, CashLedgerEntry, PostingEvent
from ..services.balance_service import CashScope, resolve_cash_balance
from ..services.concurrency import ResolutionError
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        business_count = db.session.query(Business).count()
        branch_count = db.session.query(Branch).count()
        entry_count = db.session.query(CashLedgerEntry).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "businesses": business_count,
                "branches": branch_count,
                "cash_entries": entry_count,
            }
        }
    except SQLAlchemyError:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_ledger_health() -> dict:
    """
    Resolve one cash head to prove the balance resolver can read the store.
    """
    start_time = time.time()
    try:
        branch = db.session.query(Branch).order_by(Branch.id).first()
        if branch is not None:
            resolve_cash_balance(CashScope(branch.business_id, branch.id))

        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
        }
    except (ResolutionError, SQLAlchemyError):
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Ledger health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Ledger head could not be resolved"
        }


def check_posting_health() -> dict:
    """
    Postings stuck before DONE leave the streams out of step until replayed.
    """
    start_time = time.time()
    try:
        failed = db.session.query(PostingEvent).filter(PostingEvent.state == "FAILED").count()
        in_flight = (
            db.session.query(PostingEvent)
            .filter(PostingEvent.state.notin_(("DONE", "FAILED")))
            .count()
        )
        elapsed_ms = (time.time() - start_time) * 1000

        details = {"failed": failed, "in_flight": in_flight}
        if failed:
            return {
                "status": "degraded",
                "latency_ms": round(elapsed_ms, 2),
                "warning": f"{failed} posting(s) need reconciliation",
                "details": details,
            }
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": details,
        }
    except SQLAlchemyError:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Posting health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Posting events could not be read"
        }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: healthy, or degraded (failed postings waiting for a replay)
    - 503: the store or a ledger head cannot be read
    """
    start_time = time.time()

    checks = {
        "database": check_database_health(),
        "ledger": check_ledger_health(),
        "postings": check_posting_health(),
    }
    statuses = [check["status"] for check in checks.values()]

    if "unhealthy" in statuses:
        overall_status = "unhealthy"
        http_status = 503
    elif "degraded" in statuses:
        overall_status = "degraded"
        http_status = 200  # Degraded is still operational
    else:
        overall_status = "healthy"
        http_status = 200

    return {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": checks,
    }, http_status


@system_bp.get("/version")
def version():
    """Non-sensitive deployment information."""
    env = "production" if not current_app.debug else "development"

    return {
        "api_version": "1.0.0",
        "environment": env,
        "currency": current_app.config["LEDGER_CURRENCY"],
        "python_version": sys.version.split()[0],
        "server_time": to_utc_z(utcnow()),
    }
