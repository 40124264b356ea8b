from datetime import datetime, timedelta, timezone
from decimal import Decimal

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
from schemas import Address, Coupon, Product

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
ADMIN_KEY = "test-admin-key"


class FrozenClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def db(monkeypatch):
    """Point the persistence layer at a fresh in-memory MongoDB."""
    mock_db = mongomock.MongoClient()["storefront_test"]
    monkeypatch.setattr(database, "db", mock_db)
    return mock_db


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def client(db, clock, monkeypatch):
    from main import app, get_clock

    monkeypatch.setenv("ADMIN_API_KEY", ADMIN_KEY)
    app.dependency_overrides[get_clock] = lambda: clock
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return {"x-api-key": ADMIN_KEY}


@pytest.fixture
def make_product(db):
    def _make(**overrides):
        fields = {"name": "Wireless Mouse", "model": "WM-100", "price": Decimal("49.90")}
        fields.update(overrides)
        return database.create_document("product", Product(**fields))

    return _make


@pytest.fixture
def make_coupon(db):
    def _make(**overrides):
        fields = {
            "code": "SAVE10",
            "description": "10% off",
            "discount_type": "percentage",
            "value": Decimal("10"),
            "expires_at": NOW + timedelta(days=30),
        }
        fields.update(overrides)
        return database.create_document("coupon", Coupon(**fields))

    return _make


@pytest.fixture
def make_address(db):
    def _make(user_id="user-1", **overrides):
        fields = {
            "user_id": user_id,
            "postal_code": "01310-100",
            "street": "Avenida Paulista",
            "number": "1000",
            "district": "Bela Vista",
            "city": "São Paulo",
            "state": "SP",
        }
        fields.update(overrides)
        return database.create_document("address", Address(**fields))

    return _make
