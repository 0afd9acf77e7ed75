"""Token-authenticated acknowledgment of alert digests."""

from __future__ import annotations

import hmac
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

from contracts.digest import AlertDigest
from core.alerting.metrics import DigestMetrics
from core.db.store import DigestStore, DigestStoreError

logger = logging.getLogger(__name__)


class AckError(StrEnum):
    NOT_FOUND = "not_found"
    INVALID_TOKEN = "invalid_token"
    ALREADY_ACKNOWLEDGED = "already_acknowledged"
    STORE_UNAVAILABLE = "store_unavailable"


@dataclass(slots=True)
class AckResult:
    digest_id: str
    error: AckError | None = None
    digest: AlertDigest | None = None

    @property
    def ok(self) -> bool:
        """Success for the HTTP layer; repeated acknowledgments count."""
        return self.error is None or self.error == AckError.ALREADY_ACKNOWLEDGED


def tokens_match(presented: str, expected: str) -> bool:
    """Constant-time comparison of acknowledgment tokens."""
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode(), expected.encode())


class AcknowledgmentHandler:
    """Terminal transition of a digest, authorised by its ack token."""

    def __init__(
        self,
        store: DigestStore,
        *,
        metrics: DigestMetrics | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.store = store
        self.metrics = metrics
        self.clock = clock

    def _finish(self, result: AckResult) -> AckResult:
        if self.metrics is not None:
            self.metrics.record_acknowledgment(
                result.error.value if result.error else "acknowledged"
            )
        return result

    async def acknowledge(
        self,
        digest_id: str,
        token: str,
        actor_uid: str | None = None,
        now: datetime | None = None,
    ) -> AckResult:
        now = now or self.clock()

        try:
            digest = await self.store.get(digest_id)
        except DigestStoreError as exc:
            logger.error(f"Failed to load digest {digest_id} for ack: {exc}")
            return self._finish(AckResult(digest_id, AckError.STORE_UNAVAILABLE))

        if digest is None:
            return self._finish(AckResult(digest_id, AckError.NOT_FOUND))

        if not tokens_match(token, digest.ack_token):
            logger.warning(f"Invalid ack token for digest {digest_id}")
            return self._finish(AckResult(digest_id, AckError.INVALID_TOKEN))

        if digest.is_acknowledged:
            return self._finish(
                AckResult(digest_id, AckError.ALREADY_ACKNOWLEDGED, digest)
            )

        actor = actor_uid or digest.recipient_uid
        try:
            updated = await self.store.mark_acknowledged(
                digest_id, actor_uid=actor, now=now
            )
            if updated is None:
                # Lost the race to a concurrent acknowledgment.
                current = await self.store.get(digest_id)
                return self._finish(
                    AckResult(digest_id, AckError.ALREADY_ACKNOWLEDGED, current)
                )
        except DigestStoreError as exc:
            logger.error(f"Failed to acknowledge digest {digest_id}: {exc}")
            return self._finish(AckResult(digest_id, AckError.STORE_UNAVAILABLE))

        logger.info(f"Digest {digest_id} acknowledged by {actor}")
        return self._finish(AckResult(digest_id, digest=updated))
