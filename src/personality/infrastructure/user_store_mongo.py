from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from ..config import get_settings
from ..domain.models import UserRecord
from .user_store import PersistenceError

LOG = logging.getLogger("personality.persistence")


class MongoUserStore:
    """User records in a ``users`` collection keyed by ``username``.

    ``save`` is a single ``$set`` of the patch, so a flags+analysis patch
    lands in one write.
    """

    def __init__(
        self,
        client: Optional[AsyncIOMotorClient] = None,
        database: Optional[str] = None,
    ) -> None:
        settings = get_settings()
        self._client = client or AsyncIOMotorClient(settings.mongo_url, serverSelectionTimeoutMS=2000)
        self._collection: AsyncIOMotorCollection = self._client[database or settings.mongo_db]["users"]
        self._indexed = False

    async def _ensure_index(self) -> None:
        if self._indexed:
            return
        await self._collection.create_index("username", unique=True)
        self._indexed = True

    async def get(self, username: str) -> Optional[UserRecord]:
        try:
            await self._ensure_index()
            doc = await self._collection.find_one({"username": username})
        except PyMongoError as exc:
            LOG.error("mongo_user_fetch_failed", extra={"username": username, "err": str(exc)})
            raise PersistenceError(f"Failed to fetch {username}: {exc}") from exc
        if not doc:
            return None
        return self._to_record(doc)

    async def save(self, username: str, patch: Mapping[str, Any]) -> UserRecord:
        try:
            await self._ensure_index()
            doc = await self._collection.find_one_and_update(
                {"username": username},
                {"$set": dict(patch)},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as exc:
            raise PersistenceError(f"Failed to save {username}: {exc}") from exc
        if not doc:
            raise PersistenceError(f"User not found: {username}")
        return self._to_record(doc)

    async def put(self, record: UserRecord) -> UserRecord:
        try:
            await self._ensure_index()
            await self._collection.replace_one(
                {"username": record.username},
                self._from_record(record),
                upsert=True,
            )
        except PyMongoError as exc:
            raise PersistenceError(f"Failed to store {record.username}: {exc}") from exc
        return record

    def _to_record(self, doc: Dict[str, Any]) -> UserRecord:
        doc = dict(doc)
        doc.pop("_id", None)
        try:
            return UserRecord.model_validate(doc)
        except ValueError as exc:
            raise PersistenceError(f"Stored record for {doc.get('username')} is invalid: {exc}") from exc

    def _from_record(self, record: UserRecord) -> Dict[str, Any]:
        return record.model_dump()
