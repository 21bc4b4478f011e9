"""
Concurrency tests for the inventory ledger, checkout and webhook delivery.

These run against a file-backed SQLite database so that each thread gets
its own connection; the in-memory database used elsewhere is per
connection and cannot be shared.
"""
import os
import tempfile
import threading
import unittest

from sqlalchemy.exc import OperationalError

from storefront import create_app
from storefront.errors import InsufficientStock
from storefront.extensions import db
from storefront.models import InventoryItem, InventoryMovement, Order, OrderStatusHistory, Payment
from storefront.services import catalog_service, checkout_service, inventory_service
from storefront.services.checkout_service import CartInvalid
from storefront.validation import parse_checkout_payload

from conftest import TestConfig, checkout_payload, sign, webhook_body


STOCK = 5
WORKERS = 12


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")

        config = type("ConcurrencyConfig", (TestConfig,), {
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
        })
        self.app = create_app(config)

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            product = catalog_service.create_product(name="Limited Print")
            self.product_id = product.id
            variant = catalog_service.create_variant(
                product_id=product.id, name="A2", sku="PRINT-A2", price_cents=3000,
            )
            self.variant_id = variant.id
            item = db.session.query(InventoryItem).filter_by(variant_id=variant.id).one()
            self.item_id = item.id
            inventory_service.adjust(item.id, STOCK, "Seed inventory", movement_type="purchase")

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _run(self, target, workers=WORKERS):
        results = []
        lock = threading.Lock()
        # Release every thread at once so the attempts actually overlap
        start = threading.Barrier(workers)

        def worker():
            with self.app.app_context():
                try:
                    start.wait()
                    outcome = target()
                    with lock:
                        results.append(outcome)
                except Exception as exc:
                    with lock:
                        results.append(exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=worker) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return results

    def _assert_only_expected_failures(self, results, expected):
        for result in results:
            if isinstance(result, Exception):
                self.assertIsInstance(result, expected + (OperationalError,), repr(result))

    def test_concurrent_reservations_never_oversell(self):
        results = self._run(lambda: inventory_service.reserve(self.variant_id, 1).id)

        self._assert_only_expected_failures(results, (InsufficientStock,))
        successes = sum(1 for r in results if not isinstance(r, Exception))

        with self.app.app_context():
            item = db.session.get(InventoryItem, self.item_id)
            reservations = db.session.query(InventoryMovement).filter_by(
                inventory_item_id=self.item_id, type="reserved",
            ).count()

            self.assertLessEqual(successes, STOCK)
            self.assertEqual(item.reserved_quantity, successes)
            self.assertEqual(reservations, successes)
            self.assertLessEqual(item.reserved_quantity, item.quantity)

    def test_concurrent_checkouts_never_oversell(self):
        def checkout():
            payload = checkout_payload([{"variant_id": self.variant_id, "quantity": 1}],
                                       payment_method="bank_transfer")
            result = checkout_service.create_order(parse_checkout_payload(payload))
            return result.order.id

        results = self._run(checkout)

        self._assert_only_expected_failures(results, (InsufficientStock, CartInvalid))
        successes = sum(1 for r in results if not isinstance(r, Exception))

        with self.app.app_context():
            item = db.session.get(InventoryItem, self.item_id)
            orders = db.session.query(Order).count()

            self.assertLessEqual(successes, STOCK)
            self.assertEqual(orders, successes)
            self.assertEqual(item.reserved_quantity, successes)


    def test_two_buyers_for_the_last_unit(self):
        with self.app.app_context():
            last = catalog_service.create_variant(
                product_id=self.product_id, name="A1", sku="PRINT-A1", price_cents=5000,
            )
            last_id = last.id
            item = db.session.query(InventoryItem).filter_by(variant_id=last_id).one()
            last_item_id = item.id
            inventory_service.adjust(item.id, 1, "Seed inventory", movement_type="purchase")

        results = self._run(lambda: inventory_service.reserve(last_id, 1).id, workers=2)

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        self.assertEqual(len(successes), 1, results)
        self.assertEqual(len(failures), 1, results)
        self.assertIsInstance(failures[0], InsufficientStock)

        with self.app.app_context():
            item = db.session.get(InventoryItem, last_item_id)
            reservations = db.session.query(InventoryMovement).filter_by(
                inventory_item_id=last_item_id, type="reserved",
            ).count()

            self.assertEqual((item.quantity, item.reserved_quantity), (1, 1))
            self.assertEqual(reservations, 1)

    def test_duplicate_completed_webhooks_settle_once(self):
        with self.app.app_context():
            payload = checkout_payload([{"variant_id": self.variant_id, "quantity": 2}],
                                       payment_method="card")
            result = checkout_service.create_order(parse_checkout_payload(payload))
            order_id = result.order.id
            session_id = db.session.get(Payment, result.payment_id).external_id

        body = webhook_body("payment.completed", session_id, status="completed", transactionId="txn_dup")
        headers = sign(body)

        def deliver():
            client = self.app.test_client()
            return client.post("/api/payment/webhook", data=body, headers=headers).status_code

        results = self._run(deliver, workers=6)

        self.assertEqual(results, [200] * 6)
        with self.app.app_context():
            order = db.session.get(Order, order_id)
            item = db.session.get(InventoryItem, self.item_id)
            sales = db.session.query(InventoryMovement).filter_by(
                inventory_item_id=self.item_id, type="sale",
            ).count()
            paid_rows = db.session.query(OrderStatusHistory).filter_by(
                order_id=order_id, to_status="paid",
            ).count()

            self.assertEqual((order.status, order.stock_state), ("paid", "settled"))
            self.assertEqual(db.session.get(Payment, result.payment_id).status, "completed")
            self.assertEqual((item.quantity, item.reserved_quantity), (STOCK - 2, 0))
            self.assertEqual(sales, 1)
            self.assertEqual(paid_rows, 1)


if __name__ == "__main__":
    unittest.main()
