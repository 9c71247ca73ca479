"""Pytest fixtures for order service tests."""

import itertools
from decimal import Decimal
import os

# Settings are read at import time
os.environ["OTEL_ENABLED"] = "false"
os.environ["LOG_FORMAT"] = "text"

import pytest

from ordercore.db import database
from ordercore.models.product import Product, ProductStatus
from ordercore.models.schemas import Address, OrderCreate, OrderItemCreate, Principal, Role
from ordercore.services.notifications import NotificationDispatcher
from ordercore.services.order_numbers import OrderNumberGenerator
from ordercore.services.order_service import OrderLifecycleEngine


ADDRESS = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "address1": "12 Analytical Row",
    "city": "London",
    "state": "Greater London",
    "postal_code": "N1 9GU",
    "country": "GB",
}


class RecordingTransport:
    """Keeps every delivered event in memory"""

    def __init__(self):
        self.deliveries = []

    def deliver(self, event, channels):
        self.deliveries.append((event, list(channels)))

    def events(self, event_type=None):
        return [
            event for event, _ in self.deliveries
            if event_type is None or event.type == event_type
        ]


def order_request(*lines, **kwargs):
    """OrderCreate for (product_id, quantity) pairs with a valid shipping address"""
    kwargs.setdefault("shipping_address", Address(**ADDRESS))
    return OrderCreate(
        items=[OrderItemCreate(product_id=product_id, quantity=quantity) for product_id, quantity in lines],
        **kwargs,
    )


@pytest.fixture
def db_engine():
    """Fresh in-memory database per test."""
    engine = database.init_database("sqlite://")
    database.create_tables()
    yield engine
    database.drop_tables()
    engine.dispose()


@pytest.fixture
def db(db_engine):
    session = database.SessionLocal()
    yield session
    session.close()


@pytest.fixture
def make_product(db):
    """Insert a product and return its id."""
    skus = itertools.count(1)

    def _make(
        id=None,
        name="Widget",
        price="10.00",
        stock=10,
        min_stock=2,
        status=ProductStatus.ACTIVE,
        is_active=True,
        sku=None,
    ):
        product = Product(
            id=id,
            name=name,
            sku=sku or f"SKU-{next(skus):04d}",
            price=Decimal(price),
            stock=stock,
            min_stock=min_stock,
            status=status,
            is_active=is_active,
        )
        db.add(product)
        db.commit()
        return product.id

    return _make


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def dispatcher(transport):
    return NotificationDispatcher([transport])


@pytest.fixture
def token_hex():
    """Deterministic, distinct order number suffixes."""
    counter = itertools.count(1)
    return lambda nbytes: f"{next(counter):0{nbytes * 2}x}"


@pytest.fixture
def service(dispatcher, token_hex):
    return OrderLifecycleEngine(dispatcher, number_generator=OrderNumberGenerator(token_hex=token_hex))


@pytest.fixture
def admin():
    return Principal(id=1, role=Role.ADMIN)


@pytest.fixture
def manager():
    return Principal(id=2, role=Role.MANAGER)


@pytest.fixture
def customer():
    return Principal(id=42, role=Role.CLIENT)
