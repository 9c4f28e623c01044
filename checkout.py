import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict

from fastapi import Depends, Request

from errors import EmptyCart
from models import CartItem, Order, OrderItem
from stores import CartStore, OrderStore, get_cart_store, get_order_store

logger = logging.getLogger(__name__)


class UserLocks:
    """One asyncio.Lock per user id.

    A lock exists only while some task holds or waits on it; the last one
    out removes it.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    def __len__(self):
        return len(self._locks)

    @asynccontextmanager
    async def __call__(self, user_id: str):
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._holders[user_id] = self._holders.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[user_id] -= 1
            if not self._holders[user_id]:
                del self._holders[user_id]
                del self._locks[user_id]


class CheckoutOrchestrator:
    """Turns a user's cart into a pending order and removes the cart.

    Read-cart, create-order and delete-cart run under the user's lock, so a
    second checkout racing the first finds no cart and fails with EmptyCart.
    """

    def __init__(self, carts: CartStore, orders: OrderStore, locks: UserLocks):
        self.carts = carts
        self.orders = orders
        self.locks = locks

    async def checkout(self, user_id: str, address: str, payment_method: str) -> str:
        async with self.locks(user_id):
            cart = await self.carts.find_by_user(user_id)
            if not cart or not cart.get("items"):
                raise EmptyCart()

            items = [CartItem(**i) for i in cart["items"]]
            total = round(sum(i.price * i.quantity for i in items), 2)
            order = Order(
                order_id=str(uuid.uuid4()),
                user_id=user_id,
                products=[
                    OrderItem(
                        product_id=i.product_id,
                        name=i.name,
                        price=i.price,
                        quantity=i.quantity,
                        image=i.image,
                    )
                    for i in items
                ],
                total_amount=total,
                shipping_address=address,
                payment_method=payment_method,
                status="pending",
                created_at=datetime.now(timezone.utc),
            )
            await self.orders.create(order.model_dump())
            logger.info("Order %s created for %s (total %.2f)", order.order_id, user_id, total)

            # A failure here leaves a stale cart behind; the order stands.
            try:
                await self.carts.delete(user_id)
            except Exception:
                logger.exception("Order %s created but cart for %s was not cleared", order.order_id, user_id)
                raise
            return order.order_id


def get_checkout(
    request: Request,
    carts: CartStore = Depends(get_cart_store),
    orders: OrderStore = Depends(get_order_store),
) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(carts, orders, request.app.state.checkout_locks)
