from datetime import datetime, timedelta, timezone

import pytest


def place_order(stores, order_id, user_id, minutes_ago=0, status="pending"):
    stores.orders.orders[order_id] = {
        "order_id": order_id,
        "user_id": user_id,
        "products": [{"product_id": "p1", "name": "Mug", "price": 10.0, "quantity": 1, "image": None}],
        "total_amount": 10.0,
        "shipping_address": "1 Main St",
        "payment_method": "card",
        "status": status,
        "created_at": datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
    }


@pytest.fixture
def shopper(make_user, login):
    user = make_user()
    return user, login()


def test_list_orders_most_recent_first(client, stores, shopper):
    user, headers = shopper
    place_order(stores, "old", user["user_id"], minutes_ago=30)
    place_order(stores, "new", user["user_id"], minutes_ago=1)
    place_order(stores, "theirs", "someone-else")

    res = client.get("/api/orders", headers=headers)
    assert res.status_code == 200
    body = res.json()
    assert body["count"] == 2
    assert [o["order_id"] for o in body["orders"]] == ["new", "old"]


def test_delete_own_order(client, stores, shopper):
    user, headers = shopper
    place_order(stores, "o1", user["user_id"])
    res = client.delete("/api/orders/o1", headers=headers)
    assert res.status_code == 200
    assert res.json() == {"success": True}
    assert "o1" not in stores.orders.orders


def test_delete_other_users_order_fails(client, stores, shopper):
    _, headers = shopper
    place_order(stores, "o1", "someone-else")
    res = client.delete("/api/orders/o1", headers=headers)
    assert res.status_code == 404
    assert res.json()["error"] == "Order not found or not authorized."
    assert "o1" in stores.orders.orders


def test_delete_order_by_body(client, stores, shopper):
    user, headers = shopper
    place_order(stores, "o1", user["user_id"])
    assert client.request("DELETE", "/api/orders", json={}, headers=headers).status_code == 400
    res = client.request("DELETE", "/api/orders", json={"order_id": "o1"}, headers=headers)
    assert res.status_code == 200
    assert stores.orders.orders == {}


def test_status_update_requires_admin(client, stores, shopper):
    user, headers = shopper
    place_order(stores, "o1", user["user_id"])
    res = client.patch("/api/orders/o1/status", json={"status": "shipped"}, headers=headers)
    assert res.status_code == 403
    assert stores.orders.orders["o1"]["status"] == "pending"


def test_status_transitions(client, stores, make_user, login):
    make_user(email="boss@example.com", is_admin=True)
    headers = login("boss@example.com")
    place_order(stores, "o1", "u-x")

    assert client.patch("/api/orders/o1/status", json={"status": "delivered"}, headers=headers).status_code == 400
    assert client.patch("/api/orders/o1/status", json={"status": "shipped"}, headers=headers).status_code == 200
    assert client.patch("/api/orders/o1/status", json={"status": "cancelled"}, headers=headers).status_code == 400
    assert client.patch("/api/orders/o1/status", json={"status": "delivered"}, headers=headers).status_code == 200
    assert stores.orders.orders["o1"]["status"] == "delivered"

    assert client.patch("/api/orders/o1/status", json={"status": "lost"}, headers=headers).status_code == 400
    assert client.patch("/api/orders/nope/status", json={"status": "shipped"}, headers=headers).status_code == 404
