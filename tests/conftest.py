"""Shared fixtures: an in-memory Mongo, a recording notifier and an API client."""

import itertools
from datetime import timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from database import create_document, utcnow
from schemas import Campaign, Category, Product

_seq = itertools.count(1)


class RecordingNotifier:
    """Stands in for the SMTP notifier and remembers what it was asked to send."""

    def __init__(self):
        self.calls = []

    def order_placed(self, order):
        self.calls.append(("order_placed", order))

    def batch_placed(self, orders, total):
        self.calls.append(("batch_placed", orders, total))

    def status_changed(self, order, previous, current):
        self.calls.append(("status_changed", order, previous, current))

    def names(self):
        return [c[0] for c in self.calls]


@pytest.fixture
def db():
    return mongomock.MongoClient()["storefront_test"]


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_product(db):
    def _make(price=29.99, sizes=None, allows_custom_logo=False, name=None, stock=100):
        n = next(_seq)
        category_id = create_document(db, "category", Category(name="Shoes", slug=f"shoes-{n}"))
        product_id = create_document(db, "product", Product(
            name=name or f"Test Product {n}",
            price=price,
            category_id=category_id,
            allows_custom_logo=allows_custom_logo,
            stock_quantity=stock,
        ))
        if sizes:
            db["size_stock"].insert_many([
                {"product_id": product_id, "size": str(size), "quantity": qty}
                for size, qty in sizes.items()
            ])
        return product_id
    return _make


@pytest.fixture
def make_campaign(db):
    def _make(product_id, price, starts=-1, ends=1, is_active=True):
        now = utcnow()
        return create_document(db, "campaign", Campaign(
            name="Summer sale",
            product_id=product_id,
            price=price,
            start_date=now + timedelta(days=starts),
            end_date=now + timedelta(days=ends),
            is_active=is_active,
        ))
    return _make


@pytest.fixture
def customer():
    return {
        "customer_full_name": "Test Customer",
        "customer_email": "test.customer@gmail.com",
        "customer_phone": "+383 49 000 000",
        "customer_address": "Rr. Nena Tereze 12",
        "customer_city": "Prishtina",
        "customer_country": "kosovo",
    }


@pytest.fixture
def stock_of(db):
    def _stock(product_id, size):
        row = db["size_stock"].find_one({"product_id": product_id, "size": size})
        return row["quantity"] if row else None
    return _stock


@pytest.fixture
def admin_headers(db):
    db["user"].insert_one({"name": "Admin", "email": "admin@gmail.com", "password_hash": "x",
                           "is_admin": True, "api_token": "admin-token"})
    return {"Authorization": "Bearer admin-token"}


@pytest.fixture
def shopper_headers(db):
    db["user"].insert_one({"name": "Shopper", "email": "shopper@gmail.com", "password_hash": "x",
                           "is_admin": False, "api_token": "shopper-token"})
    return {"Authorization": "Bearer shopper-token"}


@pytest.fixture
def client(db, notifier):
    main.app.dependency_overrides[main.get_db] = lambda: db
    main.app.dependency_overrides[main.get_notifier] = lambda: notifier
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()
