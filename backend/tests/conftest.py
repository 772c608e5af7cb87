"""
Pytest fixtures for resale POS backend tests.

Provides the test database, a test client, user/stock factories and a sale
orchestrator wired to an in-memory audit repository.
"""

import pytest

from resale_pos import create_app
from resale_pos.extensions import db
from resale_pos.models import StockItem, User
from resale_pos.models.enums import StockStatus, UserRole
from resale_pos.services.audit_service import AuditRecorder
from resale_pos.services.idempotency_service import IdempotencyCoordinator, SqlIdempotencyRepository
from resale_pos.services.sales_service import SaleOrchestrator

from fakes import InMemoryAuditRepository


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def make_user(db_session):
    def _make(name="Seller", role=UserRole.SELLER, is_active=True):
        user = User(name=name, role=role, is_active=is_active)
        db_session.add(user)
        db_session.commit()
        return user
    return _make


@pytest.fixture(scope='function')
def seller(make_user):
    return make_user("Sofia Seller", UserRole.SELLER)


@pytest.fixture(scope='function')
def admin(make_user):
    return make_user("Ada Admin", UserRole.ADMIN)


@pytest.fixture(scope='function')
def make_stock(db_session):
    def _make(brand="Apple", model="iPhone 13", imei=None, cost_cents=80000, warranty_days=None,
              status=StockStatus.AVAILABLE):
        unit = StockItem(
            brand=brand,
            model=model,
            imei=imei,
            purchase_cost_cents=cost_cents,
            warranty_days=warranty_days,
            status=status,
        )
        db_session.add(unit)
        db_session.commit()
        return unit
    return _make


@pytest.fixture(scope='function')
def audit_repo():
    return InMemoryAuditRepository()


@pytest.fixture(scope='function')
def orchestrator(db_session, audit_repo):
    return SaleOrchestrator(
        audit=AuditRecorder(audit_repo),
        idempotency=IdempotencyCoordinator(SqlIdempotencyRepository()),
        default_warranty_days=90,
    )


@pytest.fixture(scope='function')
def sale_payload():
    """Build a create-sale payload for the given stock ids (1200.00 ARS each by default)."""
    def _build(stock_item_ids, price_cents=120000, **overrides):
        payload = {
            "sale_date": "2026-03-01T14:00:00Z",
            "customer": {"name": "Ana Buyer", "phone": "1155550000"},
            "items": [
                {"stock_item_id": stock_item_id, "qty": 1, "sale_price_cents": price_cents}
                for stock_item_id in stock_item_ids
            ],
            "payment_method": "cash",
            "currency": "ARS",
        }
        payload.update(overrides)
        return payload
    return _build
