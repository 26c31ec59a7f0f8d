"""
Pytest fixtures for the stock ledger backend tests.

Provides test database setup, catalog fixtures, stock helpers, and test client.
"""

from datetime import timedelta

import pytest

from posledger import create_app
from posledger.config import OrderSettings
from posledger.extensions import db
from posledger.models import Product
from posledger.services import batch_service, notification_service
from posledger.time_utils import utcnow
from posledger.validation import (
    CreateOrderInput,
    OrderItemInput,
    PaymentInput,
    StockInInput,
)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'STOCK_RETRY_BACKOFF_MS': 1,
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
        notification_service.set_dispatcher(app, None)

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def settings():
    """Order settings with no tax and default payment windows."""
    return OrderSettings()


@pytest.fixture(scope='function')
def product(db_session):
    """Active product with a low-stock threshold of 3."""
    product = Product(name="Milk 1L", unit="pcs", min_stock=3, is_active=True)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def product_b(db_session):
    product = Product(name="Bread", unit="pcs", min_stock=0, is_active=True)
    db_session.add(product)
    db_session.commit()
    return product


def receive(product_id: int, quantity: int, *, price: int = 1000, cost: int = 600,
            expiry_days: int | None = None, batch_code: str | None = None):
    """Stock-in helper returning the batch; expiry is relative to now."""
    expiry = utcnow() + timedelta(days=expiry_days) if expiry_days is not None else None
    batch, _entry = batch_service.stock_in(StockInInput(
        product_id=product_id,
        quantity=quantity,
        purchase_price_cents=cost,
        selling_price_cents=price,
        batch_code=batch_code,
        expiry_date=expiry,
    ))
    return batch


def order_input(items, *, channel: str = "IN_PERSON", method: str = "CASH",
                amount_cents: int = 10_000_000, transfer_confirmed: bool = False,
                discount_cents: int = 0, customer_phone: str | None = None) -> CreateOrderInput:
    """Build a CreateOrderInput from (product_id, quantity) pairs."""
    return CreateOrderInput(
        channel=channel,
        items=tuple(OrderItemInput(product_id=pid, quantity=qty) for pid, qty in items),
        payment=PaymentInput(
            method=method,
            amount_cents=amount_cents,
            transfer_confirmed=transfer_confirmed,
        ),
        discount_cents=discount_cents,
        customer_phone=customer_phone,
    )
