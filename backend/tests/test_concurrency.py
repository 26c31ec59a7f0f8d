# Overview: Threaded concurrency tests for the stock write discipline (file-backed SQLite).

import os
import sqlite3
import tempfile
import threading
import unittest
from datetime import timedelta

from posledger import create_app
from posledger.config import OrderSettings
from posledger.errors import ConcurrencyConflict, InsufficientStock
from posledger.extensions import db
from posledger.models import LedgerEntry, Order, Product, StockBatch
from posledger.services import batch_service, expiry_service, order_service
from posledger.services.concurrency import run_with_retry
from posledger.services.ledger_service import replay_quantity
from posledger.time_utils import utcnow
from posledger.validation import CreateOrderInput, OrderItemInput, PaymentInput, StockInInput


def _order(product_id, quantity, channel="IN_PERSON"):
    return CreateOrderInput(
        channel=channel,
        items=(OrderItemInput(product_id=product_id, quantity=quantity),),
        payment=PaymentInput(method="CASH", amount_cents=1_000_000),
    )


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "STOCK_RETRY_ATTEMPTS": 5,
            "STOCK_RETRY_BACKOFF_MS": 20,
        })
        self.settings = OrderSettings()

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            product = Product(name="Concurrent Product", unit="pcs", min_stock=0, is_active=True)
            db.session.add(product)
            db.session.commit()
            self.product_id = product.id

            for quantity, code in ((6, "LOT-A"), (4, "LOT-B")):
                batch_service.stock_in(StockInInput(
                    product_id=self.product_id,
                    quantity=quantity,
                    purchase_price_cents=400,
                    selling_price_cents=1000,
                    batch_code=code,
                ))

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _run_threads(self, targets):
        threads = [threading.Thread(target=t) for t in targets]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

    def _assert_ledger_consistent(self):
        with self.app.app_context():
            for batch in StockBatch.query.all():
                self.assertGreaterEqual(batch.quantity, 0)
                self.assertEqual(replay_quantity(batch.id), batch.quantity)

    def test_concurrent_in_person_orders_never_oversell(self):
        results = []
        lock = threading.Lock()

        def worker():
            with self.app.app_context():
                try:
                    order = order_service.create_order(_order(self.product_id, 2), self.settings)
                    with lock:
                        results.append(order.invoice_number)
                except (InsufficientStock, ConcurrencyConflict) as exc:
                    with lock:
                        results.append(exc)
                finally:
                    db.session.remove()

        self._run_threads([worker for _ in range(8)])

        invoices = [r for r in results if isinstance(r, str)]
        failures = [r for r in results if not isinstance(r, str)]
        self.assertEqual(len(results), 8)
        self.assertLessEqual(len(invoices) * 2, 10)
        self.assertEqual(len(invoices), len(set(invoices)))
        self.assertTrue(all(isinstance(f, (InsufficientStock, ConcurrencyConflict)) for f in failures))

        with self.app.app_context():
            on_hand = batch_service.total_quantity(self.product_id)
            self.assertEqual(on_hand, 10 - 2 * len(invoices))
            self.assertEqual(Order.query.count(), len(invoices))
        self._assert_ledger_consistent()

    def test_concurrent_confirms_never_oversell(self):
        with self.app.app_context():
            order_ids = [
                order_service.create_order(_order(self.product_id, 4, channel="ONLINE"), self.settings).id
                for _ in range(4)
            ]

        confirmed = []
        lock = threading.Lock()

        def worker(order_id):
            def run():
                with self.app.app_context():
                    try:
                        order_service.confirm_order(order_id)
                        with lock:
                            confirmed.append(order_id)
                    except (InsufficientStock, ConcurrencyConflict):
                        pass
                    finally:
                        db.session.remove()
            return run

        self._run_threads([worker(order_id) for order_id in order_ids])

        self.assertLessEqual(len(confirmed) * 4, 10)
        with self.app.app_context():
            on_hand = batch_service.total_quantity(self.product_id)
            self.assertEqual(on_hand, 10 - 4 * len(confirmed))
            statuses = {o.id: o.status for o in Order.query.all()}
            for order_id in order_ids:
                expected = "COMPLETED" if order_id in confirmed else "PENDING"
                self.assertEqual(statuses[order_id], expected)
        self._assert_ledger_consistent()

    def test_locked_database_exhausts_retries_without_partial_writes(self):
        impatient = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{self.db_path}",
            "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"timeout": 0.05}},
            "STOCK_RETRY_ATTEMPTS": 2,
            "STOCK_RETRY_BACKOFF_MS": 1,
        })
        with self.app.app_context():
            entries_before = LedgerEntry.query.count()

        blocker = sqlite3.connect(self.db_path, isolation_level=None)
        try:
            blocker.execute("BEGIN IMMEDIATE")
            with impatient.app_context():
                try:
                    with self.assertRaises(ConcurrencyConflict) as ctx:
                        batch_service.stock_in(StockInInput(
                            product_id=self.product_id,
                            quantity=5,
                            purchase_price_cents=400,
                            selling_price_cents=1000,
                            batch_code="LOT-C",
                        ))
                    self.assertTrue(ctx.exception.retryable)
                    self.assertEqual(ctx.exception.details["attempts"], 2)
                finally:
                    db.session.remove()
                    db.engine.dispose()
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()

        with self.app.app_context():
            self.assertEqual(LedgerEntry.query.count(), entries_before)
            self.assertIsNone(StockBatch.query.filter_by(batch_code="LOT-C").first())

            calls = []

            def short():
                calls.append(1)
                raise InsufficientStock("Insufficient stock")

            with self.assertRaises(InsufficientStock):
                run_with_retry(short, attempts=3, backoff_base=0)
            self.assertEqual(len(calls), 1)
        self._assert_ledger_consistent()

    def test_expiry_sweep_racing_sales_never_double_counts(self):
        with self.app.app_context():
            product = Product(name="Yoghurt", unit="pcs", min_stock=0, is_active=True)
            db.session.add(product)
            db.session.commit()
            product_id = product.id
            batch, _ = batch_service.stock_in(StockInInput(
                product_id=product_id,
                quantity=4,
                purchase_price_cents=300,
                selling_price_cents=800,
                batch_code="YOG-1",
                expiry_date=utcnow() + timedelta(hours=1),
            ))
            batch_id = batch.id

        sold = []
        lock = threading.Lock()

        def sweeper():
            with self.app.app_context():
                try:
                    expiry_service.sweep(now=utcnow() + timedelta(hours=2))
                except ConcurrencyConflict:
                    pass
                finally:
                    db.session.remove()

        def seller():
            with self.app.app_context():
                try:
                    order_service.create_order(_order(product_id, 2), self.settings)
                    with lock:
                        sold.append(2)
                except (InsufficientStock, ConcurrencyConflict):
                    pass
                finally:
                    db.session.remove()

        self._run_threads([sweeper, seller, seller])

        with self.app.app_context():
            batch = db.session.get(StockBatch, batch_id)
            written_off = -sum(
                e.quantity_delta
                for e in LedgerEntry.query.filter_by(batch_id=batch_id, type="EXPIRED")
            )
            self.assertGreaterEqual(batch.quantity, 0)
            self.assertEqual(replay_quantity(batch_id), batch.quantity)
            self.assertEqual(sum(sold) + written_off + batch.quantity, 4)
        self._assert_ledger_consistent()


if __name__ == "__main__":
    unittest.main()
