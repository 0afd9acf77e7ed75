"""Claim-then-send coordination for digest notification emails."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from urllib.parse import urlencode

from opentelemetry.trace import Status, StatusCode

from contracts.digest import DIGEST_COOLDOWN, DIGEST_MAX_ATTEMPTS, AlertDigest
from core.alerting.metrics import DigestMetrics
from core.alerting.transport import DigestEmail, DigestTransport
from core.db.store import DigestStore, DigestStoreError
from otel_init import get_tracer

logger = logging.getLogger(__name__)


class SendStatus(StrEnum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(slots=True)
class SendOutcome:
    """Result of one `attempt_send` call."""

    digest_id: str
    status: SendStatus
    reason: str | None = None
    attempt: int | None = None

    @property
    def sent(self) -> bool:
        return self.status == SendStatus.SENT


def build_ack_url(base_url: str, digest: AlertDigest) -> str:
    return f"{base_url}?{urlencode({'token': digest.ack_token, 'id': digest.digest_id})}"


class SendCoordinator:
    """
    Sends one digest through the external transport.

    The attempt is claimed in the store before the transport is contacted,
    so concurrent scheduler runs cannot both send for the same digest. The
    claim also takes a lease that keeps the digest out of other scans until
    the outcome is recorded or the lease expires.
    """

    def __init__(
        self,
        store: DigestStore,
        transport: DigestTransport,
        *,
        ack_base_url: str = "https://puretrack.app/acknowledge",
        timeout_seconds: float = 30.0,
        lease_seconds: float = 900.0,
        metrics: DigestMetrics | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.store = store
        self.transport = transport
        self.ack_base_url = ack_base_url
        self.timeout_seconds = timeout_seconds
        self.lease = timedelta(seconds=lease_seconds)
        self.metrics = metrics
        self.clock = clock
        self.tracer = get_tracer(__name__)

    def _finish(self, outcome: SendOutcome) -> SendOutcome:
        if self.metrics is not None:
            self.metrics.record_send(outcome.status)
        return outcome

    async def attempt_send(
        self, digest: AlertDigest, now: datetime | None = None
    ) -> SendOutcome:
        now = now or self.clock()
        digest_id = digest.digest_id

        with self.tracer.start_as_current_span("digest.send") as span:
            span.set_attribute("digest.id", digest_id)
            span.set_attribute("digest.category", digest.category)

            try:
                claimed = await self.store.claim_send(
                    digest_id, now=now, lease_until=now + self.lease
                )
            except DigestStoreError as exc:
                logger.error(f"Failed to claim send for digest {digest_id}: {exc}")
                span.set_status(Status(StatusCode.ERROR, "store_unavailable"))
                return self._finish(
                    SendOutcome(digest_id, SendStatus.FAILED, "store_unavailable")
                )

            if claimed is None:
                logger.debug(f"Digest {digest_id} no longer eligible, skipping")
                span.set_attribute("digest.outcome", SendStatus.SKIPPED)
                return self._finish(
                    SendOutcome(digest_id, SendStatus.SKIPPED, "not_eligible")
                )

            attempt = claimed.send_attempts
            span.set_attribute("digest.attempt", attempt)
            span.set_attribute("digest.items", len(claimed.items))
            email = DigestEmail(
                digest_id=digest_id,
                recipient_email=claimed.recipient_email,
                category=claimed.category,
                items=list(claimed.items),
                created_at=claimed.created_at,
                attempt=attempt,
                ack_url=build_ack_url(self.ack_base_url, claimed),
            )

            reason = await self._deliver(email)
            if reason is None:
                await self._record_success(digest_id, now)
                logger.info(
                    f"Sent digest {digest_id} to {claimed.recipient_email} "
                    f"(attempt {attempt}/{DIGEST_MAX_ATTEMPTS})"
                )
                span.set_attribute("digest.outcome", SendStatus.SENT)
                return self._finish(
                    SendOutcome(digest_id, SendStatus.SENT, attempt=attempt)
                )

            await self._record_failure(digest_id, reason)
            logger.warning(
                f"Failed to send digest {digest_id} "
                f"(attempt {attempt}/{DIGEST_MAX_ATTEMPTS}): {reason}"
            )
            span.set_attribute("digest.outcome", SendStatus.FAILED)
            span.set_status(Status(StatusCode.ERROR, reason))
            return self._finish(
                SendOutcome(digest_id, SendStatus.FAILED, reason, attempt=attempt)
            )

    async def _deliver(self, email: DigestEmail) -> str | None:
        """Run the transport with a bounded timeout; None on success."""
        try:
            delivered = await asyncio.wait_for(
                self.transport.send(email), timeout=self.timeout_seconds
            )
        except TimeoutError:
            return "timeout"
        except Exception as exc:
            logger.exception(f"Transport error for digest {email.digest_id}")
            return f"transport_error: {exc}"
        return None if delivered else "transport_rejected"

    async def _record_success(self, digest_id: str, sent_at: datetime) -> None:
        try:
            await self.store.record_send_success(
                digest_id, sent_at=sent_at, cooldown_until=sent_at + DIGEST_COOLDOWN
            )
        except DigestStoreError as exc:
            logger.error(
                f"Digest {digest_id} sent but bookkeeping failed, lease expiry "
                f"will make it retryable: {exc}"
            )

    async def _record_failure(self, digest_id: str, reason: str) -> None:
        try:
            await self.store.record_send_failure(digest_id, reason=reason)
        except DigestStoreError as exc:
            logger.error(f"Failed to record send failure for {digest_id}: {exc}")
