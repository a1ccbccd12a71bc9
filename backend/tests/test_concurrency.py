"""
Concurrency tests for the reconciliation engine.

Runs against a file-backed SQLite database so every worker thread gets its
own connection, the way separate requests would.
"""

import os
import tempfile
import threading
import unittest

from storefront import create_app
from storefront.config import TestingConfig
from storefront.extensions import db
from storefront.models import OperationalAnomaly, Order, User
from storefront.models.auth import ROLE_ADMIN
from storefront.services import inventory_service
from storefront.services.reconciliation_service import (
    SOURCE_CONFIRM,
    SOURCE_WEBHOOK,
    apply_gateway_result,
    update_order_status,
)
from storefront.validation import StatusUpdateRequest

from conftest import FakeGateway, make_product, make_user, place_order


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")

        class ConcurrencyConfig(TestingConfig):
            SQLALCHEMY_DATABASE_URI = f"sqlite:///{db_path}"
            SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"timeout": 30, "check_same_thread": False}}

        self.gateway = FakeGateway()
        self.app = create_app(ConcurrencyConfig, gateway=self.gateway)

        with self.app.app_context():
            db.drop_all()
            db.create_all()
            self.customer_ids = [
                make_user(f"buyer{i}@example.com").id for i in range(6)
            ]
            self.admin_id = make_user("ops@example.com", role=ROLE_ADMIN).id
            self.product_id = make_product("CONCUR-1", price_cents=1000, stock=3).id

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _place(self, customer_id, quantity):
        user = db.session.get(User, customer_id)
        product = inventory_service.get_product(self.product_id)
        created = place_order(user, [(product, quantity)])
        self.gateway.set_intent_status(created["payment_intent_id"], "succeeded")
        return created

    def _run_workers(self, targets):
        results = []
        errors = []
        lock = threading.Lock()
        barrier = threading.Barrier(len(targets))

        def worker(target):
            with self.app.app_context():
                try:
                    barrier.wait()
                    outcome = target()
                    with lock:
                        results.append(outcome)
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
        return results, errors

    def test_concurrent_duplicate_success_debits_once(self):
        with self.app.app_context():
            created = self._place(self.customer_ids[0], 2)
        intent_id = created["payment_intent_id"]

        def deliver(source):
            return lambda: apply_gateway_result(self.gateway.retrieve_intent(intent_id), source=source)

        targets = [deliver(SOURCE_CONFIRM if i % 2 else SOURCE_WEBHOOK) for i in range(8)]
        results, errors = self._run_workers(targets)

        self.assertFalse(errors)
        self.assertEqual(len(results), 8)
        self.assertEqual(sum(1 for r in results if not r.noop), 1)
        self.assertTrue(all(r.payment_status == "paid" for r in results))

        with self.app.app_context():
            self.assertEqual(inventory_service.get_stock(self.product_id), 1)
            order = db.session.get(Order, created["order_id"])
            self.assertEqual(order.items[0].debited_quantity, 2)

    def test_concurrent_orders_never_oversell(self):
        with self.app.app_context():
            orders = [self._place(customer_id, 1) for customer_id in self.customer_ids]

        def deliver(intent_id):
            return lambda: apply_gateway_result(self.gateway.retrieve_intent(intent_id), source=SOURCE_WEBHOOK)

        results, errors = self._run_workers([deliver(o["payment_intent_id"]) for o in orders])

        self.assertFalse(errors)
        self.assertTrue(all((r.order_status, r.payment_status) == ("confirmed", "paid") for r in results))
        self.assertEqual(sum(len(r.anomalies) for r in results), 3)

        with self.app.app_context():
            self.assertEqual(inventory_service.get_stock(self.product_id), 0)
            underflows = db.session.query(OperationalAnomaly).filter_by(kind="STOCK_UNDERFLOW").count()
            self.assertEqual(underflows, 3)
            debited = sum(
                item.debited_quantity
                for order in db.session.query(Order).all()
                for item in order.items
            )
            self.assertEqual(debited, 3)

    def test_concurrent_cancels_credit_once(self):
        with self.app.app_context():
            created = self._place(self.customer_ids[0], 2)
            apply_gateway_result(
                self.gateway.retrieve_intent(created["payment_intent_id"]), source=SOURCE_CONFIRM
            )
            self.assertEqual(inventory_service.get_stock(self.product_id), 1)

        def cancel():
            admin = db.session.get(User, self.admin_id)
            return update_order_status(created["order_id"], StatusUpdateRequest(status="cancelled"), admin)

        results, errors = self._run_workers([cancel for _ in range(4)])

        self.assertFalse(errors)
        self.assertEqual(sum(1 for r in results if r["restocked"]), 1)
        with self.app.app_context():
            self.assertEqual(inventory_service.get_stock(self.product_id), 3)


if __name__ == "__main__":
    unittest.main()
