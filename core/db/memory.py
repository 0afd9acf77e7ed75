"""In-process digest store for single-node deployments and tests."""

from __future__ import annotations

import asyncio
import weakref
from collections.abc import AsyncIterator
from datetime import datetime

from contracts.digest import DIGEST_MAX_ITEMS, AlertDigest, DigestAlertItem
from core.db.store import DigestStore


class InMemoryDigestStore(DigestStore):
    """
    Dictionary-backed store serialising mutations with per-key locks.

    Dev and single-node use only: digests are never evicted, so memory grows
    with the number of digests. Locks live only while a mutation holds or
    waits on them.
    """

    def __init__(self):
        self._digests: dict[str, AlertDigest] = {}
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock(self, digest_id: str) -> asyncio.Lock:
        lock = self._locks.get(digest_id)
        if lock is None:
            lock = self._locks[digest_id] = asyncio.Lock()
        return lock

    async def ping(self) -> bool:
        return True

    async def get(self, digest_id: str) -> AlertDigest | None:
        digest = self._digests.get(digest_id)
        return digest.model_copy(deep=True) if digest is not None else None

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
        async with self._lock(digest_id):
            current = self._digests.get(digest_id)
            if current is None:
                current = AlertDigest(
                    digest_id=digest_id,
                    recipient_uid=recipient_uid,
                    recipient_email=recipient_email,
                    category=category,
                    day=day,
                    created_at=now,
                    last_updated_at=now,
                    cooldown_until=now,
                    ack_token=ack_token,
                )
            elif any(existing.event_id == item.event_id for existing in current.items):
                return current.model_copy(deep=True)

            items = [*current.items, item.model_copy()][-DIGEST_MAX_ITEMS:]
            updated = current.model_copy(
                update={"items": items, "last_updated_at": now}, deep=True
            )
            self._digests[digest_id] = updated
            return updated.model_copy(deep=True)

    async def iter_eligible(
        self, now: datetime, *, limit: int
    ) -> AsyncIterator[AlertDigest]:
        candidates = sorted(
            (d for d in self._digests.values() if d.is_eligible(now)),
            key=lambda d: d.cooldown_until,
        )
        for digest in candidates[:limit]:
            # Re-check lazily; state may have moved since the snapshot.
            latest = self._digests.get(digest.digest_id)
            if latest is not None and latest.is_eligible(now):
                yield latest.model_copy(deep=True)

    async def claim_send(
        self, digest_id: str, *, now: datetime, lease_until: datetime
    ) -> AlertDigest | None:
        async with self._lock(digest_id):
            current = self._digests.get(digest_id)
            if current is None or not current.is_eligible(now):
                return None
            updated = current.model_copy(
                update={
                    "send_attempts": current.send_attempts + 1,
                    "send_lease_until": lease_until,
                },
                deep=True,
            )
            self._digests[digest_id] = updated
            return updated.model_copy(deep=True)

    async def record_send_success(
        self, digest_id: str, *, sent_at: datetime, cooldown_until: datetime
    ) -> AlertDigest | None:
        async with self._lock(digest_id):
            current = self._digests.get(digest_id)
            if current is None:
                return None
            updated = current.model_copy(
                update={
                    "last_sent_at": sent_at,
                    "cooldown_until": max(current.cooldown_until, cooldown_until),
                    "send_lease_until": None,
                    "last_failure_reason": None,
                },
                deep=True,
            )
            self._digests[digest_id] = updated
            return updated.model_copy(deep=True)

    async def record_send_failure(
        self, digest_id: str, *, reason: str
    ) -> AlertDigest | None:
        async with self._lock(digest_id):
            current = self._digests.get(digest_id)
            if current is None:
                return None
            updated = current.model_copy(
                update={"send_lease_until": None, "last_failure_reason": reason},
                deep=True,
            )
            self._digests[digest_id] = updated
            return updated.model_copy(deep=True)

    async def mark_acknowledged(
        self, digest_id: str, *, actor_uid: str, now: datetime
    ) -> AlertDigest | None:
        async with self._lock(digest_id):
            current = self._digests.get(digest_id)
            if current is None or current.is_acknowledged:
                return None
            updated = current.model_copy(
                update={
                    "is_acknowledged": True,
                    "acknowledged_by": actor_uid,
                    "acknowledged_at": now,
                    "send_attempts": 0,
                    "send_lease_until": None,
                },
                deep=True,
            )
            self._digests[digest_id] = updated
            return updated.model_copy(deep=True)
