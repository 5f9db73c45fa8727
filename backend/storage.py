"""
storage.py
----------
Key-value gateway used by the load/save endpoints. Each user owns exactly one
opaque document (a JSON string) stored under their user id; writes overwrite
with last-write-wins and no versioning.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)

COLLECTION_NAME = "user_state"


class StoreError(Exception):
    """The store is unreachable, misconfigured or rejected the operation."""

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class MongoKVStore:
    def __init__(self, client: AsyncIOMotorClient, db_name: str):
        self.client = client
        self.collection = client[db_name][COLLECTION_NAME]

    @classmethod
    def from_url(cls, url: str, db_name: str, timeout_ms: int = 5000) -> "MongoKVStore":
        client = AsyncIOMotorClient(url, serverSelectionTimeoutMS=timeout_ms)
        return cls(client, db_name)

    async def ensure_indexes(self) -> None:
        await self.collection.create_index("user_id", unique=True)

    async def get(self, key: str) -> Optional[str]:
        try:
            doc = await self.collection.find_one({"user_id": key}, {"_id": 0, "data": 1})
        except PyMongoError as exc:
            logger.error("[store] read failed for %s: %s", key, exc)
            raise StoreError("Failed to read from store", str(exc)) from exc
        if not doc:
            return None
        return doc.get("data")

    async def set(self, key: str, value: str) -> None:
        try:
            await self.collection.update_one(
                {"user_id": key},
                {"$set": {"data": value, "updated_at": datetime.now(timezone.utc)}},
                upsert=True,
            )
        except PyMongoError as exc:
            logger.error("[store] write failed for %s: %s", key, exc)
            raise StoreError("Failed to write to store", str(exc)) from exc

    def close(self) -> None:
        self.client.close()
