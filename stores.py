"""
Motor-backed stores for users, carts, orders and products.

Each store wraps one collection and speaks in plain dicts with opaque
string ids (user_id, order_id, product_id); Mongo's _id never leaves
this module.
"""
import re
from typing import Dict, List, Optional, Tuple

from fastapi import Request
from motor.motor_asyncio import AsyncIOMotorDatabase


NO_ID = {"_id": 0}


class UserStore:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db["users"]

    async def find_by_email(self, email: str) -> Optional[dict]:
        return await self.collection.find_one({"email": email}, NO_ID)

    async def find_by_id(self, user_id: str) -> Optional[dict]:
        return await self.collection.find_one({"user_id": user_id}, NO_ID)

    async def find_by_verification_token(self, token: str) -> Optional[dict]:
        return await self.collection.find_one({"verification_token": token}, NO_ID)

    async def find_by_reset_token(self, token: str) -> Optional[dict]:
        return await self.collection.find_one({"reset_password_token": token}, NO_ID)

    async def save(self, user: dict) -> dict:
        doc = {k: v for k, v in user.items() if k != "_id"}
        await self.collection.replace_one({"user_id": doc["user_id"]}, doc, upsert=True)
        return doc


class CartStore:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db["carts"]

    async def find_by_user(self, user_id: str) -> Optional[dict]:
        return await self.collection.find_one({"user_id": user_id}, NO_ID)

    async def upsert(self, user_id: str, items: List[dict]) -> dict:
        cart = {"user_id": user_id, "items": items}
        await self.collection.update_one(
            {"user_id": user_id}, {"$set": {"items": items}}, upsert=True
        )
        return cart

    async def delete(self, user_id: str) -> None:
        await self.collection.delete_one({"user_id": user_id})


class OrderStore:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db["orders"]

    async def create(self, order: dict) -> dict:
        await self.collection.insert_one(dict(order))
        return order

    async def find_by_user(self, user_id: str, recent_first: bool = True) -> List[dict]:
        cursor = self.collection.find({"user_id": user_id}, NO_ID).sort(
            "created_at", -1 if recent_first else 1
        )
        return [o async for o in cursor]

    async def find_by_id(self, order_id: str) -> Optional[dict]:
        return await self.collection.find_one({"order_id": order_id}, NO_ID)

    async def delete_by_id_and_user(self, order_id: str, user_id: str) -> int:
        result = await self.collection.delete_one({"order_id": order_id, "user_id": user_id})
        return result.deleted_count

    async def update_status(self, order_id: str, status: str) -> int:
        result = await self.collection.update_one(
            {"order_id": order_id}, {"$set": {"status": status}}
        )
        return result.matched_count


class ProductStore:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db["products"]

    async def search(
        self,
        category: Optional[str] = None,
        search: Optional[str] = None,
        min_price: Optional[float] = None,
        max_price: Optional[float] = None,
        sort_field: str = "created_at",
        sort_order: int = 1,
        skip: int = 0,
        limit: int = 10,
    ) -> Tuple[int, List[dict]]:
        query = {}
        if category:
            query["category"] = category
        if search:
            pattern = re.escape(search)
            query["$or"] = [
                {"name": {"$regex": pattern, "$options": "i"}},
                {"description": {"$regex": pattern, "$options": "i"}},
            ]
        if min_price is not None or max_price is not None:
            price = {}
            if min_price is not None:
                price["$gte"] = min_price
            if max_price is not None:
                price["$lte"] = max_price
            query["price"] = price

        total = await self.collection.count_documents(query)
        cursor = (
            self.collection.find(query, NO_ID)
            .sort(sort_field, sort_order)
            .skip(skip)
            .limit(limit)
        )
        return total, [p async for p in cursor]

    async def find_by_id(self, product_id: str) -> Optional[dict]:
        return await self.collection.find_one({"product_id": product_id}, NO_ID)

    async def find_many(self, product_ids: List[str]) -> Dict[str, dict]:
        cursor = self.collection.find({"product_id": {"$in": list(product_ids)}}, NO_ID)
        return {p["product_id"]: p async for p in cursor}

    async def categories(self) -> List[str]:
        return await self.collection.distinct("category")

    async def create(self, product: dict) -> dict:
        await self.collection.insert_one(dict(product))
        return product

    async def add_review(self, product_id: str, review: dict) -> int:
        result = await self.collection.update_one(
            {"product_id": product_id}, {"$push": {"reviews": review}}
        )
        return result.matched_count


# ---------------- DEPENDENCIES ----------------
def _db(request: Request) -> AsyncIOMotorDatabase:
    return request.app.state.database.connect()


def get_user_store(request: Request) -> UserStore:
    return UserStore(_db(request))


def get_cart_store(request: Request) -> CartStore:
    return CartStore(_db(request))


def get_order_store(request: Request) -> OrderStore:
    return OrderStore(_db(request))


def get_product_store(request: Request) -> ProductStore:
    return ProductStore(_db(request))
