import itertools
import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("ENVIRONMENT", "test")

import mongomock
import pytest

from cart import CartStore
from catalog import CatalogStore
from checkout import CheckoutOrchestrator
from database import ensure_indexes
from identity import IdentityProvider
from notifications import NotificationSink
from orders import OrderLedger
from reviews import ReviewLedger
from schemas import Category, ProductCreate, Role, UserCreate


class TickingClock:
    """Returns a later instant on every call so newest-first order is deterministic."""

    def __init__(self, start=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture()
def db():
    client = mongomock.MongoClient()
    database = client["craftnest_test"]
    ensure_indexes(database)
    yield database
    client.close()


@pytest.fixture()
def clock():
    return TickingClock()


@pytest.fixture()
def catalog(db):
    return CatalogStore(db)


@pytest.fixture()
def identity(db):
    return IdentityProvider(db)


@pytest.fixture()
def notifications(db):
    return NotificationSink(db)


@pytest.fixture()
def orders(db, catalog, clock):
    return OrderLedger(db, catalog, clock=clock)


@pytest.fixture()
def reviews(db, catalog, identity, clock):
    return ReviewLedger(db, catalog, identity, min_comment_length=5, clock=clock)


@pytest.fixture()
def carts(db, catalog, clock):
    return CartStore(db, catalog, clock=clock)


@pytest.fixture()
def checkout(orders, catalog, carts, notifications):
    return CheckoutOrchestrator(orders, catalog, carts, notifications)


@pytest.fixture()
def make_user(identity):
    counter = itertools.count(1)

    def _make(name="Ada Potter", role=Role.CUSTOMER):
        email = f"user{next(counter)}@example.com"
        return identity.create(UserCreate(name=name, email=email, role=role))

    return _make


@pytest.fixture()
def customer(make_user):
    return make_user("Casey Customer", Role.CUSTOMER)


@pytest.fixture()
def vendor(make_user):
    return make_user("Vera Vendor", Role.VENDOR)


@pytest.fixture()
def make_product(catalog):
    def _make(vendor, name="Stoneware Mug", price=29.99, stock=10, category=Category.POTTERY, approved=True):
        product = catalog.create(
            ProductCreate(
                name=name,
                description=f"Handmade {name.lower()}",
                price=price,
                category=category,
                images=[f"https://img.example.com/{name.lower().replace(' ', '-')}.jpg"],
                stock=stock,
            ),
            vendor_id=vendor.id,
            vendor_name=vendor.name,
        )
        if approved:
            product = catalog.set_approval(product.id, True)
        return product

    return _make


@pytest.fixture()
def principal_for(identity):
    def _principal(user):
        return identity.authenticate(user.id)

    return _principal
