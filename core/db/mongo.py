"""Async MongoDB digest store."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from contracts.digest import (
    DIGEST_COLLECTION,
    DIGEST_MAX_ATTEMPTS,
    DIGEST_MAX_ITEMS,
    AlertDigest,
    DigestAlertItem,
)
from core.db.store import DigestStore, DigestStoreError

logger = logging.getLogger(__name__)


def _eligibility_query(now: datetime) -> dict[str, Any]:
    return {
        "isAcknowledged": False,
        "items.0": {"$exists": True},
        "sendAttempts": {"$lt": DIGEST_MAX_ATTEMPTS},
        "cooldownUntil": {"$lte": now},
        "$or": [{"sendLeaseUntil": None}, {"sendLeaseUntil": {"$lte": now}}],
    }


def _to_digest(document: dict[str, Any]) -> AlertDigest:
    data = dict(document)
    data["digestId"] = data.pop("_id")
    return AlertDigest.model_validate(data)


class MongoDigestStore(DigestStore):
    """
    Digest store on a MongoDB collection, one document per digest.

    Each mutation is a single `find_one_and_update`, so document-level
    atomicity serialises concurrent operations on the same digest.
    """

    def __init__(
        self,
        uri: str | None = None,
        db_name: str = "water_quality",
        collection_name: str = DIGEST_COLLECTION,
        *,
        collection: Any | None = None,
        max_upsert_retries: int = 3,
    ):
        self.uri = uri
        self.db_name = db_name
        self.collection_name = collection_name
        self.client: AsyncIOMotorClient | None = None
        self.max_upsert_retries = max_upsert_retries
        self._collection = collection
        self.connected = collection is not None

    @property
    def collection(self):
        if self._collection is None:
            raise DigestStoreError("Mongo digest store not connected")
        return self._collection

    async def connect(self) -> None:
        if self._collection is not None:
            return
        self.client = AsyncIOMotorClient(self.uri, tz_aware=True)
        try:
            await self.client.admin.command("ping")
            collection = self.client[self.db_name][self.collection_name]
            await collection.create_index(
                [
                    ("isAcknowledged", ASCENDING),
                    ("sendAttempts", ASCENDING),
                    ("cooldownUntil", ASCENDING),
                ],
                name="digest_eligibility",
            )
        except PyMongoError as exc:
            raise DigestStoreError(f"Failed to connect to MongoDB: {exc}") from exc
        self._collection = collection
        self.connected = True

    async def disconnect(self) -> None:
        if self.client is not None:
            self.client.close()
            self._collection = None
        self.connected = False

    async def ping(self) -> bool:
        if self.client is None:
            return self.connected
        try:
            response = await self.client.admin.command("ping")
            return float(response.get("ok", 0)) == 1.0
        except PyMongoError:
            return False

    async def get(self, digest_id: str) -> AlertDigest | None:
        try:
            doc = await self.collection.find_one({"_id": digest_id})
        except PyMongoError as exc:
            raise DigestStoreError(f"Failed to load digest {digest_id}") from exc
        return _to_digest(doc) if doc else None

    async def merge_item(
        self,
        *,
        digest_id: str,
        recipient_uid: str,
        recipient_email: str,
        category: str,
        day: str,
        item: DigestAlertItem,
        now: datetime,
        ack_token: str,
    ) -> AlertDigest:
        query = {"_id": digest_id, "items.eventId": {"$ne": item.event_id}}
        update = {
            "$setOnInsert": {
                "recipientUid": recipient_uid,
                "recipientEmail": recipient_email,
                "category": category,
                "day": day,
                "createdAt": now,
                "cooldownUntil": now,
                "sendAttempts": 0,
                "isAcknowledged": False,
                "ackToken": ack_token,
            },
            "$push": {
                "items": {
                    "$each": [item.model_dump(by_alias=True)],
                    "$slice": -DIGEST_MAX_ITEMS,
                }
            },
            "$set": {"lastUpdatedAt": now},
        }

        for attempt in range(1, self.max_upsert_retries + 1):
            try:
                doc = await self.collection.find_one_and_update(
                    query,
                    update,
                    upsert=True,
                    return_document=ReturnDocument.AFTER,
                )
                return _to_digest(doc)
            except DuplicateKeyError:
                # Either the event is already merged, or a concurrent upsert
                # created the document first and the next attempt will update it.
                existing = await self._find_with_event(digest_id, item.event_id)
                if existing is not None:
                    logger.debug(
                        f"Alert {item.event_id} already in digest {digest_id}"
                    )
                    return existing
                logger.debug(
                    f"Upsert conflict on digest {digest_id}, attempt {attempt}"
                )
            except PyMongoError as exc:
                raise DigestStoreError(
                    f"Failed to merge alert into digest {digest_id}"
                ) from exc

        raise DigestStoreError(
            f"Upsert conflict on digest {digest_id} not resolved after "
            f"{self.max_upsert_retries} attempts"
        )

    async def _find_with_event(
        self, digest_id: str, event_id: str
    ) -> AlertDigest | None:
        try:
            doc = await self.collection.find_one(
                {"_id": digest_id, "items.eventId": event_id}
            )
        except PyMongoError as exc:
            raise DigestStoreError(f"Failed to load digest {digest_id}") from exc
        return _to_digest(doc) if doc else None

    async def iter_eligible(
        self, now: datetime, *, limit: int
    ) -> AsyncIterator[AlertDigest]:
        cursor = (
            self.collection.find(_eligibility_query(now))
            .sort("cooldownUntil", ASCENDING)
            .limit(limit)
        )
        try:
            async for doc in cursor:
                yield _to_digest(doc)
        except PyMongoError as exc:
            raise DigestStoreError("Failed to query eligible digests") from exc

    async def _update_one(
        self, query: dict[str, Any], update: dict[str, Any]
    ) -> AlertDigest | None:
        try:
            doc = await self.collection.find_one_and_update(
                query, update, return_document=ReturnDocument.AFTER
            )
        except PyMongoError as exc:
            raise DigestStoreError(
                f"Failed to update digest {query.get('_id')}"
            ) from exc
        return _to_digest(doc) if doc else None

    async def claim_send(
        self, digest_id: str, *, now: datetime, lease_until: datetime
    ) -> AlertDigest | None:
        return await self._update_one(
            {"_id": digest_id, **_eligibility_query(now)},
            {"$inc": {"sendAttempts": 1}, "$set": {"sendLeaseUntil": lease_until}},
        )

    async def record_send_success(
        self, digest_id: str, *, sent_at: datetime, cooldown_until: datetime
    ) -> AlertDigest | None:
        return await self._update_one(
            {"_id": digest_id},
            {
                "$set": {
                    "lastSentAt": sent_at,
                    "sendLeaseUntil": None,
                    "lastFailureReason": None,
                },
                "$max": {"cooldownUntil": cooldown_until},
            },
        )

    async def record_send_failure(
        self, digest_id: str, *, reason: str
    ) -> AlertDigest | None:
        return await self._update_one(
            {"_id": digest_id},
            {"$set": {"sendLeaseUntil": None, "lastFailureReason": reason}},
        )

    async def mark_acknowledged(
        self, digest_id: str, *, actor_uid: str, now: datetime
    ) -> AlertDigest | None:
        return await self._update_one(
            {"_id": digest_id, "isAcknowledged": False},
            {
                "$set": {
                    "isAcknowledged": True,
                    "acknowledgedBy": actor_uid,
                    "acknowledgedAt": now,
                    "sendAttempts": 0,
                    "sendLeaseUntil": None,
                }
            },
        )
