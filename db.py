import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

logger = logging.getLogger(__name__)


class Database:
    """Lazily connected handle to the Mongo database.

    connect() is idempotent: the first call creates the client, later calls
    hand back the same database object.
    """

    def __init__(self, uri: str, name: str):
        self.uri = uri
        self.name = name
        self._client: Optional[AsyncIOMotorClient] = None
        self._db: Optional[AsyncIOMotorDatabase] = None

    @property
    def connected(self) -> bool:
        return self._db is not None

    def connect(self) -> AsyncIOMotorDatabase:
        if self._db is None:
            self._client = AsyncIOMotorClient(self.uri)
            self._db = self._client[self.name]
            logger.info("MongoDB client created for database '%s'", self.name)
        return self._db

    def close(self):
        if self._client is not None:
            self._client.close()
            logger.info("MongoDB client closed")
        self._client = None
        self._db = None

    async def ensure_indexes(self):
        db = self.connect()
        await db["users"].create_index("email", unique=True)
        await db["users"].create_index("user_id", unique=True)
        await db["carts"].create_index("user_id", unique=True)
        await db["orders"].create_index("order_id", unique=True)
        await db["orders"].create_index([("user_id", 1), ("created_at", -1)])
        await db["products"].create_index("product_id", unique=True)
        logger.info("MongoDB indexes ensured for database '%s'", self.name)
