"""
Cart reconciliation.

The server-side cart is keyed by user id and is either absent or holds a
set of items keyed by product id. Every mutation keeps quantity >= 1 and,
where an item carries a stock ceiling, quantity <= ceiling. Exceeding a
ceiling clamps (or no-ops) instead of failing; only a malformed bulk
payload is rejected.
"""
import logging
from typing import Dict, List, Tuple

from fastapi import Depends
from pydantic import TypeAdapter, ValidationError

from errors import InvalidCartPayload
from models import CartItem
from stores import CartStore, get_cart_store

logger = logging.getLogger(__name__)

_item_list = TypeAdapter(List[CartItem])


def _clamp(item: CartItem, quantity: int) -> int:
    if item.stock is not None:
        quantity = min(quantity, item.stock)
    return quantity


def _dump(items: List[CartItem]) -> List[dict]:
    return [i.model_dump() for i in items]


class CartReconciler:
    def __init__(self, carts: CartStore):
        self.carts = carts

    async def _load(self, user_id: str):
        cart = await self.carts.find_by_user(user_id)
        if cart is None:
            return None
        return [CartItem(**i) for i in cart.get("items", [])]

    async def _save(self, user_id: str, items: List[CartItem]) -> List[CartItem]:
        await self.carts.upsert(user_id, _dump(items))
        return items

    async def get(self, user_id: str) -> List[CartItem]:
        return await self._load(user_id) or []

    async def replace(self, user_id: str, payload) -> List[CartItem]:
        """Overwrite the whole cart with a client snapshot (last writer wins)."""
        if not isinstance(payload, list):
            raise InvalidCartPayload("Cart items must be a list")
        try:
            items = _item_list.validate_python(payload)
        except ValidationError as e:
            logger.info("Rejected cart payload for %s: %d errors", user_id, e.error_count())
            raise InvalidCartPayload() from e

        seen = set()
        for item in items:
            if item.product_id in seen:
                raise InvalidCartPayload(f"Duplicate product {item.product_id} in cart payload")
            seen.add(item.product_id)

        kept = []
        for item in items:
            item.quantity = _clamp(item, item.quantity)
            if item.quantity > 0:
                kept.append(item)
        return await self._save(user_id, kept)

    async def add_one(self, user_id: str, item: CartItem) -> Tuple[List[CartItem], bool]:
        """Add one unit of a product.

        Returns the cart and whether the unit was added; False means the
        stock ceiling was already reached and nothing changed.
        """
        items = await self._load(user_id) or []
        for existing in items:
            if existing.product_id == item.product_id:
                if existing.stock is not None and existing.quantity >= existing.stock:
                    logger.info("Add of %s for %s hit stock ceiling %d", item.product_id, user_id, existing.stock)
                    return items, False
                existing.quantity += 1
                return await self._save(user_id, items), True

        if item.stock is not None and item.stock < 1:
            return items, False
        items.append(item.model_copy(update={"quantity": 1}))
        return await self._save(user_id, items), True

    async def set_quantity(self, user_id: str, product_id: str, quantity: int) -> List[CartItem]:
        items = await self._load(user_id)
        if not items:
            return []
        target = next((i for i in items if i.product_id == product_id), None)
        if target is None:
            return items

        quantity = _clamp(target, quantity)
        if quantity <= 0:
            items.remove(target)
        else:
            target.quantity = quantity
        return await self._save(user_id, items)

    async def remove(self, user_id: str, product_id: str) -> List[CartItem]:
        items = await self._load(user_id)
        if not items:
            return []
        remaining = [i for i in items if i.product_id != product_id]
        if len(remaining) == len(items):
            return items
        return await self._save(user_id, remaining)

    async def clear(self, user_id: str):
        await self.carts.delete(user_id)

    async def validate_against_stock(self, user_id: str, stock: Dict[str, int]) -> List[CartItem]:
        """Clamp every item to the given stock figures and refresh ceilings.

        Items whose product has no figure are left as they are.
        """
        items = await self._load(user_id)
        if items is None:
            return []
        kept = []
        for item in items:
            if item.product_id in stock:
                item.stock = max(int(stock[item.product_id]), 0)
                item.quantity = min(item.quantity, item.stock)
            if item.quantity > 0:
                kept.append(item)
        return await self._save(user_id, kept)


def get_cart_reconciler(carts: CartStore = Depends(get_cart_store)) -> CartReconciler:
    return CartReconciler(carts)
