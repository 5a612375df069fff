"""
Pytest fixtures for possale tests.

Provides an in-memory application, a clean database per test, seeded
products and a coordinator wired from app config.
"""

from decimal import Decimal

import pytest

from possale import create_app
from possale.extensions import db
from possale.models import Product
from possale.services.sales_service import build_sale_coordinator


TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'SALE_RETRY_BACKOFF': 0.0,
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


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


def make_product(session, *, sku, price, quantity, is_active=True, name=None) -> Product:
    product = Product(
        sku=sku,
        name=name or sku,
        unit_price=Decimal(price),
        quantity_on_hand=quantity,
        is_active=is_active,
    )
    session.add(product)
    session.commit()
    return product


def stock_of(session, product_id: int) -> int:
    """Read stock straight from the table, bypassing the identity map."""
    return session.execute(
        db.select(Product.quantity_on_hand).where(Product.id == product_id)
    ).scalar_one()


@pytest.fixture(scope='function')
def product_p(db_session):
    """Product P: stock 5, price 10.00."""
    return make_product(db_session, sku="P-001", price="10.00", quantity=5)


@pytest.fixture(scope='function')
def product_q(db_session):
    """Product Q: stock 10, price 2.50."""
    return make_product(db_session, sku="Q-001", price="2.50", quantity=10)


@pytest.fixture(scope='function')
def coordinator(db_session):
    return build_sale_coordinator()
