"""Integration tests for the delivery tracking endpoints via TestClient."""

from datetime import timedelta
from decimal import Decimal

import pytest
from bson import ObjectId

import main
from conftest import NOW


@pytest.fixture
def order_id(client, make_product, make_address):
    product_id = make_product(price=Decimal("25.00"))
    response = client.post(
        "/api/orders",
        json={
            "user_id": "user-1",
            "address_id": make_address(),
            "items": [{"product_id": product_id, "quantity": 1}],
        },
    )
    return response.json()["order"]["id"]


def test_get_delivery(client, order_id):
    response = client.get(f"/api/delivery/{order_id}")

    assert response.status_code == 200
    body = response.json()
    assert body["order_id"] == order_id
    assert body["status"] == "AWAITING_SHIPMENT"
    assert body["delivered_at"] is None
    assert body["estimated_at"].startswith("2025-06-08")


def test_get_delivery_for_another_user(client, order_id):
    response = client.get(f"/api/delivery/{order_id}", params={"user_id": "intruder"})
    assert response.status_code == 404


def test_get_delivery_unknown_order(client):
    assert client.get("/api/delivery/64b7f0c2a1b2c3d4e5f60718").status_code == 404


def test_update_requires_admin(client, order_id):
    response = client.put(f"/api/delivery/{order_id}", json={"status": "IN_TRANSIT"})
    assert response.status_code == 401


def test_ship_then_deliver(client, clock, admin_headers, order_id):
    response = client.put(
        f"/api/delivery/{order_id}",
        json={"status": "IN_TRANSIT", "tracking_code": "BR123456789", "carrier": "Correios"},
        headers=admin_headers,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "IN_TRANSIT"
    assert body["tracking_code"] == "BR123456789"
    assert body["carrier"] == "Correios"
    assert body["delivered_at"] is None

    clock.now = NOW + timedelta(days=3)
    body = client.put(
        f"/api/delivery/{order_id}", json={"status": "DELIVERED"}, headers=admin_headers
    ).json()

    assert body["status"] == "DELIVERED"
    assert body["delivered_at"].startswith("2025-06-04")
    assert body["tracking_code"] == "BR123456789"


def test_cannot_skip_to_delivered(client, admin_headers, order_id):
    response = client.put(
        f"/api/delivery/{order_id}", json={"status": "DELIVERED"}, headers=admin_headers
    )

    assert response.status_code == 409
    assert client.get(f"/api/delivery/{order_id}").json()["status"] == "AWAITING_SHIPMENT"


def test_update_estimate_only(client, admin_headers, order_id):
    response = client.put(
        f"/api/delivery/{order_id}",
        json={"estimated_at": "2025-06-10T09:00:00Z"},
        headers=admin_headers,
    )

    assert response.status_code == 200
    assert response.json()["estimated_at"].startswith("2025-06-10T09:00:00")
    assert response.json()["status"] == "AWAITING_SHIPMENT"


def test_update_unknown_order(client, admin_headers):
    response = client.put(
        "/api/delivery/64b7f0c2a1b2c3d4e5f60718",
        json={"status": "IN_TRANSIT"},
        headers=admin_headers,
    )
    assert response.status_code == 404


def test_update_loses_to_concurrent_change(client, db, monkeypatch, admin_headers, order_id):
    read_delivery = main._find_delivery

    def lose_after_read(ref):
        delivery = read_delivery(ref)
        db["delivery"].update_one({"_id": ObjectId(delivery["id"])}, {"$set": {"status": "LOST"}})
        return delivery

    monkeypatch.setattr(main, "_find_delivery", lose_after_read)

    response = client.put(
        f"/api/delivery/{order_id}", json={"status": "IN_TRANSIT"}, headers=admin_headers
    )

    assert response.status_code == 409
    assert db["delivery"].find_one({"order_id": order_id})["status"] == "LOST"
