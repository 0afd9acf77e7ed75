"""Digest store interface shared by the in-memory and MongoDB backends."""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime

from contracts.digest import AlertDigest, DigestAlertItem


class DigestStoreError(RuntimeError):
    """The backing store could not complete an operation."""


class DigestStore:
    """
    Keyed digest records with per-key atomic mutations.

    Every mutating method is a single atomic step against one digest. Callers
    never read-modify-write outside these primitives.
    """

    async def connect(self) -> None:
        return None

    async def disconnect(self) -> None:
        return None

    async def ping(self) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    async def get(self, digest_id: str) -> AlertDigest | None:  # pragma: no cover
        raise NotImplementedError

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
    ) -> AlertDigest:  # pragma: no cover - interface
        """
        Create-or-append in one atomic step.

        `ack_token` and `recipient_email` are only used when the digest does
        not exist yet. An item whose event id is already present is ignored.
        """
        raise NotImplementedError

    def iter_eligible(
        self, now: datetime, *, limit: int
    ) -> AsyncIterator[AlertDigest]:  # pragma: no cover - interface
        raise NotImplementedError

    async def claim_send(
        self, digest_id: str, *, now: datetime, lease_until: datetime
    ) -> AlertDigest | None:  # pragma: no cover - interface
        """Increment the attempt counter if still eligible; None if not."""
        raise NotImplementedError

    async def record_send_success(
        self, digest_id: str, *, sent_at: datetime, cooldown_until: datetime
    ) -> AlertDigest | None:  # pragma: no cover - interface
        raise NotImplementedError

    async def record_send_failure(
        self, digest_id: str, *, reason: str
    ) -> AlertDigest | None:  # pragma: no cover - interface
        raise NotImplementedError

    async def mark_acknowledged(
        self, digest_id: str, *, actor_uid: str, now: datetime
    ) -> AlertDigest | None:  # pragma: no cover - interface
        """Terminal transition; None when the digest was already acknowledged."""
        raise NotImplementedError
