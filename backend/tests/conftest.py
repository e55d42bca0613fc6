"""
Pytest fixtures for posledger tests.

Provides an in-memory application, a per-test clean database, two shops,
users with different roles and the reference data most engines need.
"""

from decimal import Decimal

import pytest

from posledger import create_app
from posledger.authorization import Actor
from posledger.extensions import db
from posledger.models import (
    Customer,
    PaymentMethod,
    PriceCategory,
    Product,
    Shop,
    Supplier,
    User,
)
from posledger.services import stock_ledger


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LOCK_RETRY_BACKOFF': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Clear all data but keep schema."""
    db.session.remove()
    for table in reversed(db.metadata.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()

    yield db.session

    db.session.rollback()
    db.session.remove()


@pytest.fixture(scope='function')
def shop(db_session):
    shop = Shop(name="Main Shop", is_active=True)
    db_session.add(shop)
    db_session.commit()
    return shop


@pytest.fixture(scope='function')
def other_shop(db_session):
    shop = Shop(name="Branch Shop", is_active=True)
    db_session.add(shop)
    db_session.commit()
    return shop


def _make_user(db_session, name, email, role, shop_id):
    user = User(name=name, email=email, role=role, shop_id=shop_id, is_active=True)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def admin_user(db_session, shop):
    return _make_user(db_session, "Alice Admin", "admin@test.local", "super_admin", shop.id)


@pytest.fixture(scope='function')
def cashier_user(db_session, shop):
    return _make_user(db_session, "Carl Cashier", "cashier@test.local", "cashier", shop.id)


@pytest.fixture(scope='function')
def admin(admin_user):
    """Super admin actor: may act in every shop."""
    return Actor(user_id=admin_user.id, role="super_admin")


@pytest.fixture(scope='function')
def cashier(cashier_user, shop):
    """Cashier actor confined to the main shop."""
    return Actor(user_id=cashier_user.id, role="cashier", shop_ids=frozenset({shop.id}))


@pytest.fixture(scope='function')
def product(db_session):
    product = Product(
        sku="WID-001",
        name="Widget",
        selling_price=Decimal("100.00"),
        purchase_price=Decimal("60.00"),
        uses_stock=True,
        is_active=True,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def service_product(db_session):
    """Product that does not track stock (e.g. a repair service)."""
    product = Product(
        sku="SRV-001",
        name="Gift Wrapping",
        selling_price=Decimal("5.00"),
        purchase_price=Decimal("0.00"),
        uses_stock=False,
        is_active=True,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def cash(db_session):
    method = PaymentMethod(name="Cash", is_active=True)
    db_session.add(method)
    db_session.commit()
    return method


@pytest.fixture(scope='function')
def retail(db_session):
    category = PriceCategory(name="Retail")
    db_session.add(category)
    db_session.commit()
    return category


@pytest.fixture(scope='function')
def customer(db_session):
    customer = Customer(name="Dana Customer", points=0)
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def supplier(db_session):
    supplier = Supplier(name="Acme Wholesale")
    db_session.add(supplier)
    db_session.commit()
    return supplier


@pytest.fixture(scope='function')
def stock_up(admin):
    """Helper: add stock for a product in a shop through the ledger."""
    def _stock_up(product, shop, quantity):
        return stock_ledger.adjust(admin, product.id, shop.id, quantity, "purchase", notes="Opening stock")
    return _stock_up
