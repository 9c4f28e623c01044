import asyncio

import pytest

from checkout import CheckoutOrchestrator, UserLocks
from errors import EmptyCart
from fakes import MemoryCartStore, MemoryOrderStore

CART = [
    {"product_id": "p1", "name": "Mug", "price": 10.0, "image": "/mug.jpg", "quantity": 2, "stock": None},
    {"product_id": "p2", "name": "Pen", "price": 5.0, "image": None, "quantity": 1, "stock": 4},
]


class FlakyCartStore(MemoryCartStore):
    async def delete(self, user_id):
        raise ConnectionError("store went away")


@pytest.fixture
def carts():
    return MemoryCartStore()


@pytest.fixture
def orders():
    return MemoryOrderStore()


def test_checkout_creates_pending_order_and_removes_cart(carts, orders):
    carts.carts["u1"] = {"user_id": "u1", "items": [dict(i) for i in CART]}
    orchestrator = CheckoutOrchestrator(carts, orders, UserLocks())

    order_id = asyncio.run(orchestrator.checkout("u1", "1 Main St", "card"))

    order = orders.orders[order_id]
    assert order["total_amount"] == 25
    assert order["status"] == "pending"
    assert order["user_id"] == "u1"
    assert order["shipping_address"] == "1 Main St"
    assert [(p["product_id"], p["quantity"], p["price"]) for p in order["products"]] == [
        ("p1", 2, 10.0),
        ("p2", 1, 5.0),
    ]
    assert order["products"][0]["image"] == "/mug.jpg"
    assert "u1" not in carts.carts


@pytest.mark.parametrize("cart", [None, {"user_id": "u1", "items": []}])
def test_checkout_without_items_fails(carts, orders, cart):
    if cart is not None:
        carts.carts["u1"] = cart
    orchestrator = CheckoutOrchestrator(carts, orders, UserLocks())
    with pytest.raises(EmptyCart):
        asyncio.run(orchestrator.checkout("u1", "1 Main St", "card"))
    assert orders.orders == {}


def test_concurrent_checkouts_create_one_order(carts, orders):
    carts.carts["u1"] = {"user_id": "u1", "items": [dict(i) for i in CART]}
    orchestrator = CheckoutOrchestrator(carts, orders, UserLocks())

    async def both():
        return await asyncio.gather(
            orchestrator.checkout("u1", "1 Main St", "card"),
            orchestrator.checkout("u1", "1 Main St", "card"),
            return_exceptions=True,
        )

    results = asyncio.run(both())
    assert sum(isinstance(r, EmptyCart) for r in results) == 1
    assert len(orders.orders) == 1


def test_cart_delete_failure_is_reported_and_order_kept(orders):
    carts = FlakyCartStore()
    carts.carts["u1"] = {"user_id": "u1", "items": [dict(i) for i in CART]}
    orchestrator = CheckoutOrchestrator(carts, orders, UserLocks())

    with pytest.raises(ConnectionError):
        asyncio.run(orchestrator.checkout("u1", "1 Main St", "card"))
    assert len(orders.orders) == 1
    assert "u1" in carts.carts


# ---------------- HTTP ----------------
def test_checkout_endpoint(client, stores, make_user, login):
    user = make_user()
    headers = login()
    client.post("/api/cart", json={"items": CART}, headers=headers)

    res = client.post(
        "/api/checkout",
        json={"address": "1 Main St", "payment_method": "card", "total_amount": 1},
        headers=headers,
    )
    assert res.status_code == 201, res.text
    order_id = res.json()["order_id"]
    assert stores.orders.orders[order_id]["total_amount"] == 25
    assert user["user_id"] not in stores.carts.carts

    again = client.post("/api/checkout", json={"address": "1 Main St", "payment_method": "card"}, headers=headers)
    assert again.status_code == 400
    assert again.json()["error"] == "Cart is empty."


@pytest.mark.parametrize("body", [
    {"address": "1 Main St"},
    {"payment_method": "card"},
    {"address": "  ", "payment_method": "card"},
])
def test_checkout_requires_address_and_payment(client, stores, make_user, login, body):
    make_user()
    headers = login()
    client.post("/api/cart", json={"items": CART}, headers=headers)
    res = client.post("/api/checkout", json=body, headers=headers)
    assert res.status_code == 400
    assert "error" in res.json()
    assert stores.orders.orders == {}


def test_checkout_requires_token(client):
    res = client.post("/api/checkout", json={"address": "1 Main St", "payment_method": "card"})
    assert res.status_code == 401


def test_locks_are_released_after_checkouts(carts, orders):
    locks = UserLocks()
    orchestrator = CheckoutOrchestrator(carts, orders, locks)
    carts.carts["u1"] = {"user_id": "u1", "items": [dict(i) for i in CART]}

    async def run_all():
        await asyncio.gather(
            orchestrator.checkout("u1", "1 Main St", "card"),
            orchestrator.checkout("u1", "1 Main St", "card"),
            *[orchestrator.checkout(f"empty-{n}", "1 Main St", "card") for n in range(50)],
            return_exceptions=True,
        )

    asyncio.run(run_all())
    assert len(orders.orders) == 1
    assert len(locks) == 0


def test_lock_is_kept_while_a_checkout_waits():
    locks = UserLocks()

    async def scenario():
        async with locks("u1"):
            waiter = asyncio.ensure_future(_hold(locks, "u1"))
            await asyncio.sleep(0)
            assert len(locks) == 1
        await waiter
        assert len(locks) == 0

    asyncio.run(scenario())


async def _hold(locks, user_id):
    async with locks(user_id):
        await asyncio.sleep(0)
