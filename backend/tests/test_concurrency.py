# Overview: Threaded concurrency tests for the sale engine against a file-backed SQLite database.

"""
Concurrency tests for the sale engine.

Each test runs real threads, each with its own app context and session, so
SQLite's write lock is actually contended.
"""
import os
import tempfile
import threading
import unittest

from resale_pos import create_app
from resale_pos.extensions import db
from resale_pos.models import Customer, Sale, StockItem, User
from resale_pos.models.enums import StockStatus, UserRole
from resale_pos.results import ErrorCode, Failure, Replayed, SaleCancelled, SaleCreated


def _payload(stock_item_id, phone="1155550000"):
    return {
        "sale_date": "2026-03-01T14:00:00Z",
        "customer": {"name": "Concurrent Buyer", "phone": phone},
        "items": [{"stock_item_id": stock_item_id, "qty": 1, "sale_price_cents": 120000}],
        "payment_method": "cash",
        "currency": "ARS",
    }


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            sellers = [User(name=f"Seller {n}", role=UserRole.SELLER, is_active=True) for n in range(2)]
            admin = User(name="Admin", role=UserRole.ADMIN, is_active=True)
            unit = StockItem(brand="Apple", model="iPhone 13", status=StockStatus.AVAILABLE, purchase_cost_cents=80000)
            db.session.add_all(sellers + [admin, unit])
            db.session.commit()
            self.seller_ids = [seller.id for seller in sellers]
            self.admin_id = admin.id
            self.stock_item_id = unit.id

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _run_threads(self, targets):
        results = []
        lock = threading.Lock()

        def wrap(target):
            def worker():
                with self.app.app_context():
                    try:
                        outcome = target(self.app.extensions["sale_orchestrator"])
                    except Exception as exc:
                        outcome = exc
                    finally:
                        db.session.remove()
                    with lock:
                        results.append(outcome)
            return worker

        threads = [threading.Thread(target=wrap(target)) for target in targets]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return results

    def test_two_sellers_race_for_one_unit(self):
        targets = [
            lambda engine, seller_id=seller_id, n=n: engine.create_sale(
                seller_id, _payload(self.stock_item_id, phone=f"11555500{n}0")
            )
            for n, seller_id in enumerate(self.seller_ids)
        ]

        results = self._run_threads(targets)

        created = [r for r in results if isinstance(r, SaleCreated)]
        conflicts = [r for r in results if isinstance(r, Failure) and r.code == ErrorCode.STOCK_CONFLICT]
        self.assertEqual(len(created), 1, results)
        self.assertEqual(len(conflicts), 1, results)

        with self.app.app_context():
            self.assertEqual(db.session.query(Sale).count(), 1)
            unit = db.session.get(StockItem, self.stock_item_id)
            self.assertEqual(unit.status, StockStatus.SOLD)
            self.assertEqual(unit.sale_id, created[0].sale_id)
            # The losing request left no customer behind
            self.assertEqual(db.session.query(Customer).count(), 1)

    def test_duplicate_submission_creates_one_sale(self):
        seller_id = self.seller_ids[0]
        targets = [
            lambda engine: engine.create_sale(seller_id, _payload(self.stock_item_id), idempotency_key="double-click")
            for _ in range(2)
        ]

        results = self._run_threads(targets)

        created = [r for r in results if isinstance(r, SaleCreated)]
        self.assertEqual(len(created), 1, results)
        other = next(r for r in results if not isinstance(r, SaleCreated))
        self.assertTrue(
            isinstance(other, Replayed) or (isinstance(other, Failure) and other.code == ErrorCode.IN_PROGRESS),
            other,
        )

        with self.app.app_context():
            self.assertEqual(db.session.query(Sale).count(), 1)

    def test_concurrent_cancel_releases_once(self):
        with self.app.app_context():
            engine = self.app.extensions["sale_orchestrator"]
            sale_id = engine.create_sale(self.seller_ids[0], _payload(self.stock_item_id)).sale_id
            db.session.remove()

        targets = [
            lambda engine: engine.cancel_sale(self.admin_id, sale_id, {"reason": "customer returned it"})
            for _ in range(2)
        ]

        results = self._run_threads(targets)

        self.assertTrue(all(isinstance(r, SaleCancelled) for r in results), results)
        self.assertEqual(sorted(r.already_cancelled for r in results), [False, True])

        with self.app.app_context():
            unit = db.session.get(StockItem, self.stock_item_id)
            self.assertEqual(unit.status, StockStatus.AVAILABLE)
            self.assertIsNone(unit.sale_id)


if __name__ == "__main__":
    unittest.main(verbosity=2)
