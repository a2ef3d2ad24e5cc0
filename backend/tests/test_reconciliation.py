"""
Reconciliation job and ledger CLI tests.
"""

from decimal import Decimal
from unittest import mock

import pytest

from posledger.models import CashLedgerEntry
from posledger.services import posting_service, reconciliation_service
from posledger.services.posting_service import PartialPostError
from posledger.services.proration_service import CartLine


D = Decimal


def _vendor_sale(branch, vendor, key):
    return posting_service.post_sale(
        business_id=branch.business_id,
        branch_id=branch.id,
        lines=[CartLine(
            product_id="V1", product_name="Dates 1kg", unit_price=D("8.800"), quantity=1,
            vendor_id=vendor.id, original_unit_price=D("8.000"),
        )],
        payment_method="cash",
        idempotency_key=key,
    )


def test_clean_business_reconciles(db_session, branch, vendor, make_settings):
    make_settings()
    _vendor_sale(branch, vendor, "clean-1")

    report = reconciliation_service.reconcile_business(branch.business_id)
    assert report["ok"]
    assert report["chain_breaks"] == []


def test_failed_audit_step_is_reported_until_replayed(db_session, branch, vendor, make_settings):
    make_settings()

    with mock.patch(
        "posledger.services.audit_trail_service.append_audit_entry",
        side_effect=RuntimeError("audit store offline"),
    ):
        with pytest.raises(PartialPostError):
            _vendor_sale(branch, vendor, "gap-1")

    report = reconciliation_service.reconcile_business(branch.business_id)
    assert not report["ok"]
    assert [e["idempotency_key"] for e in report["incomplete_events"]] == ["gap-1"]
    assert [e["idempotency_key"] for e in report["unmatched_cash_entries"]] == ["gap-1"]
    assert [e["idempotency_key"] for e in report["unmatched_vendor_transactions"]] == ["gap-1"]

    _vendor_sale(branch, vendor, "gap-1")

    assert reconciliation_service.reconcile_business(branch.business_id)["ok"]


def test_chain_breaks_carry_scope(db_session, branch, make_settings):
    make_settings()
    for amount in ("10", "5"):
        posting_service.post_cash_adjustment(
            business_id=branch.business_id, branch_id=branch.id,
            kind="cash_addition", amount=amount, reason="Float",
        )

    tampered = db_session.query(CashLedgerEntry).filter_by(sequence=2).one()
    tampered.new_total_cash = D("99.000")
    db_session.commit()

    report = reconciliation_service.reconcile_business(branch.business_id)
    assert not report["ok"]
    assert report["chain_breaks"][0]["ledger"] == "cash"
    assert report["chain_breaks"][0]["branch_id"] == branch.id


def test_other_business_is_not_reported(db_session, branch, other_business, make_settings):
    make_settings()
    with mock.patch(
        "posledger.services.audit_trail_service.append_audit_entry",
        side_effect=RuntimeError("audit store offline"),
    ):
        with pytest.raises(PartialPostError):
            posting_service.post_cash_adjustment(
                business_id=branch.business_id, branch_id=branch.id,
                kind="cash_addition", amount="1", reason="Float",
            )

    assert reconciliation_service.reconcile_business(other_business.id)["ok"]


# =============================================================================
# CLI
# =============================================================================

def test_ledger_verify_cli(app, db_session, branch, make_settings):
    make_settings()
    runner = app.test_cli_runner()

    posting_service.post_cash_adjustment(
        business_id=branch.business_id, branch_id=branch.id,
        kind="cash_addition", amount="10", reason="Float",
    )
    result = runner.invoke(args=["ledger", "verify", "--business-id", str(branch.business_id)])
    assert result.exit_code == 0
    assert "PASS" in result.output

    entry = db_session.query(CashLedgerEntry).one()
    entry.cash_additions = D("11.000")
    db_session.commit()

    result = runner.invoke(args=["ledger", "verify", "--business-id", str(branch.business_id)])
    assert result.exit_code == 1
    assert "arithmetic" in result.output


def test_businesses_settings_cli(app, db_session, business):
    runner = app.test_cli_runner()
    result = runner.invoke(args=[
        "businesses", "settings", "--business-id", str(business.id),
        "--tax-enabled", "--tax-rate", "5", "--min-commission", "5.000",
    ])

    assert result.exit_code == 0
    assert "Tax:        on (5" in result.output
    assert "minimum 5.000" in result.output
