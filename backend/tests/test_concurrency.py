"""
Concurrent appends to one ledger scope.

Runs against a file-backed SQLite database so that worker threads get their
own connections, the way request handlers do.
"""

import os
import tempfile
import threading
import unittest
from decimal import Decimal
from unittest import mock

from posledger import create_app
from posledger.extensions import db
from posledger.models import Branch, Business, CashLedgerEntry, ReturnReceipt, SoldProduct, Vendor
from posledger.services import balance_service, cash_ledger_service, posting_service, vendor_profit_service
from posledger.services.balance_service import CashScope, VendorScope, resolve_cash_balance, resolve_vendor_profit
from posledger.services.concurrency import ConcurrencyConflict, run_with_retry
from posledger.services.posting_service import ReturnItem
from posledger.services.proration_service import CartLine
from posledger.validation import ValidationError


D = Decimal


class LedgerConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "LEDGER_RETRY_ATTEMPTS": 10,
            "LEDGER_RETRY_BACKOFF": 0.01,
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            business = Business(code="SOUQ", name="Souq Store", is_active=True)
            db.session.add(business)
            db.session.commit()
            branch = Branch(business_id=business.id, name="Muscat")
            vendor = Vendor(code="V001", name="Dates Co", is_active=True)
            db.session.add_all([branch, vendor])
            db.session.commit()

            self.scope = CashScope(business.id, branch.id)
            self.vendor_scope = VendorScope(business.id, branch.id, vendor.id)
            cash_ledger_service.update_cash_manually(self.scope, None, D("100"), "Opening float")

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _run_workers(self, targets):
        errors = []
        lock = threading.Lock()
        barrier = threading.Barrier(len(targets))

        def worker(target):
            with self.app.app_context():
                try:
                    barrier.wait()
                    target()
                except Exception as exc:
                    with lock:
                        errors.append(exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=worker, args=(t,)) for t in targets]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return errors

    def test_concurrent_cash_additions_chain_once(self):
        def add(amount):
            return lambda: posting_service.post_cash_adjustment(
                business_id=self.scope.business_id,
                branch_id=self.scope.branch_id,
                kind="cash_addition",
                amount=amount,
                reason="Float top-up",
            )

        errors = self._run_workers([add("50"), add("30")])
        self.assertFalse(errors)

        with self.app.app_context():
            entries = (
                db.session.query(CashLedgerEntry)
                .order_by(CashLedgerEntry.sequence.asc())
                .all()
            )
            self.assertEqual([e.sequence for e in entries], [1, 2, 3])
            previous = [e.previous_total_cash for e in entries[1:]]
            self.assertEqual(previous[0], D("100.000"))
            self.assertIn(previous[1], (D("150.000"), D("130.000")))
            self.assertEqual(resolve_cash_balance(self.scope), D("180.000"))
            self.assertEqual(cash_ledger_service.verify_cash_chain(self.scope), [])

    def test_concurrent_vendor_accumulation(self):
        def accumulate(profit):
            def _op():
                vendor_profit_service.accumulate(
                    self.vendor_scope, D(profit), "product_sale", D("10"), product_name="Dates 1kg",
                )
                db.session.commit()
            return lambda: run_with_retry(_op)

        errors = self._run_workers([accumulate("0.800"), accumulate("1.200"), accumulate("0.500")])
        self.assertFalse(errors)

        with self.app.app_context():
            self.assertEqual(resolve_vendor_profit(self.vendor_scope), D("2.500"))
            self.assertEqual(vendor_profit_service.verify_vendor_chain(self.vendor_scope), [])

    def test_concurrent_returns_of_one_line_refund_once(self):
        with self.app.app_context():
            sale = posting_service.post_sale(
                business_id=self.scope.business_id,
                branch_id=self.scope.branch_id,
                lines=[CartLine(product_id="P1", product_name="Tea", unit_price=D("10.000"), quantity=2)],
                payment_method="cash",
            )
            receipt_id = sale.document["receipt_id"]
            sold_product_id = sale.document["sold_products"][0]["sold_product_id"]

        def return_all():
            return lambda: posting_service.post_return(
                business_id=self.scope.business_id,
                branch_id=self.scope.branch_id,
                original_receipt_id=receipt_id,
                items=[ReturnItem(sold_product_id, 2)],
            )

        errors = self._run_workers([return_all(), return_all()])

        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], ValidationError)

        with self.app.app_context():
            self.assertEqual(db.session.query(ReturnReceipt).count(), 1)
            sold = db.session.query(SoldProduct).filter_by(sold_product_id=sold_product_id).one()
            self.assertEqual(sold.returned_quantity, 2)
            self.assertEqual(resolve_cash_balance(self.scope), D("100.000"))
            self.assertEqual(cash_ledger_service.verify_cash_chain(self.scope), [])

    def test_stale_head_is_rejected_then_retried(self):
        with self.app.app_context():
            cash_ledger_service.update_cash_manually(self.scope, None, D("20"), "Float top-up")
            stale = balance_service.latest_cash_entry(self.scope)
            stale_id = stale.id

            # Another writer appends after our head was read
            cash_ledger_service.update_cash_manually(self.scope, None, D("5"), "Float top-up")

            real = balance_service.latest_cash_entry
            calls = []

            def flaky_head(scope, **kwargs):
                calls.append(scope)
                if len(calls) == 1:
                    return db.session.get(CashLedgerEntry, stale_id)
                return real(scope, **kwargs)

            with mock.patch.object(cash_ledger_service, "latest_cash_entry", side_effect=flaky_head):
                with self.assertRaises(ConcurrencyConflict):
                    cash_ledger_service.append_cash_entry(self.scope, reason="sale", cash_additions=D("1"))

                calls.clear()
                entry = cash_ledger_service.update_cash_for_sale(self.scope, None, D("1"))

            self.assertEqual(len(calls), 2)
            self.assertEqual(entry.sequence, 4)
            self.assertEqual(entry.previous_total_cash, D("125.000"))
            self.assertEqual(resolve_cash_balance(self.scope), D("126.000"))


if __name__ == "__main__":
    unittest.main()
