# Overview: Thread-level concurrency tests against a file-backed SQLite database.

"""
Concurrent writers must serialize on the stock row: two sales racing for the
last units can never both succeed, and the ledger must still replay.
"""

import os
import tempfile
import threading
import unittest

from posledger import create_app
from posledger.authorization import Actor
from posledger.errors import ConcurrencyConflict, InsufficientStock
from posledger.extensions import db
from posledger.models import Product, Shop, User
from posledger.services import stock_ledger
from posledger.services.transaction_service import LineRequest, create_transaction


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "LOCK_TIMEOUT_SECONDS": 10,
            "LOCK_RETRY_BACKOFF": 0.01,
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            shop = Shop(name="Concurrency Shop")
            db.session.add(shop)
            db.session.commit()
            self.shop_id = shop.id

            user = User(name="Concurrent User", email="concurrent@example.com", role="super_admin", shop_id=self.shop_id)
            db.session.add(user)
            db.session.commit()
            self.actor = Actor(user_id=user.id, role="super_admin")

            product = Product(sku="CONCUR-1", name="Concurrent Product", selling_price=10, purchase_price=4)
            db.session.add(product)
            db.session.commit()
            self.product_id = product.id

            stock_ledger.adjust(self.actor, self.product_id, self.shop_id, 8, "purchase", notes="Seed stock")

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _race(self, work, workers):
        results = []
        errors = []
        lock = threading.Lock()
        barrier = threading.Barrier(workers)

        def worker():
            with self.app.app_context():
                barrier.wait()
                try:
                    outcome = work()
                    with lock:
                        results.append(outcome)
                except InsufficientStock as exc:
                    with lock:
                        errors.append(exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=worker) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return results, errors

    def test_concurrent_stock_debits_never_oversell(self):
        def work():
            return stock_ledger.adjust(self.actor, self.product_id, self.shop_id, -5, "sale").stock

        results, errors = self._race(work, 2)

        self.assertEqual(results, [3])
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0].available, 3)

        with self.app.app_context():
            self.assertEqual(stock_ledger.get_stock(self.product_id, self.shop_id), 3)
            self.assertEqual(stock_ledger.verify_ledger(), [])

    def test_concurrent_sales_get_unique_invoices(self):
        def work():
            transaction = create_transaction(
                self.actor, self.shop_id, "sale",
                items=[LineRequest(product_id=self.product_id, quantity=1)],
            )
            return transaction.invoice_number

        results, errors = self._race(work, 4)

        self.assertEqual(errors, [])
        self.assertEqual(len(results), 4)
        self.assertEqual(len(set(results)), 4)

        with self.app.app_context():
            self.assertEqual(stock_ledger.get_stock(self.product_id, self.shop_id), 4)
            self.assertEqual(stock_ledger.verify_ledger(), [])

    def test_lock_timeout_surfaces_as_conflict(self):
        self.app.config["LOCK_TIMEOUT_SECONDS"] = 0.2
        self.app.config["LOCK_RETRY_ATTEMPTS"] = 2

        with self.app.app_context():
            blocker = db.engine.connect()
            try:
                blocker.exec_driver_sql("BEGIN IMMEDIATE")

                with self.assertRaises(ConcurrencyConflict):
                    stock_ledger.adjust(self.actor, self.product_id, self.shop_id, -1, "sale")
            finally:
                blocker.rollback()
                blocker.close()

            self.assertEqual(stock_ledger.get_stock(self.product_id, self.shop_id), 8)
            self.assertEqual(stock_ledger.verify_ledger(), [])


if __name__ == "__main__":
    unittest.main()
