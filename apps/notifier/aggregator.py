"""Silent aggregation of raw alert events into per-recipient digests."""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import UTC, datetime

from apps.notifier.categorizer import categorize, summarize_alert
from apps.notifier.thresholds import ThresholdProvider
from contracts.digest import (
    AlertDigest,
    DigestAlertItem,
    RawAlertEvent,
    digest_day,
    digest_key,
)
from core.alerting.metrics import DigestMetrics
from core.db.store import DigestStore

logger = logging.getLogger(__name__)


def generate_ack_token() -> str:
    """256-bit acknowledgment credential, hex encoded."""
    return secrets.token_hex(32)


class DigestAggregator:
    """Folds alerts into digests; never sends anything itself."""

    def __init__(
        self,
        store: DigestStore,
        *,
        threshold_provider: ThresholdProvider | None = None,
        metrics: DigestMetrics | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.store = store
        self.threshold_provider = threshold_provider or ThresholdProvider()
        self.metrics = metrics
        self.clock = clock

    async def merge_alert(
        self,
        recipient_uid: str,
        category: str,
        day: str,
        item: DigestAlertItem,
        *,
        recipient_email: str,
        now: datetime | None = None,
    ) -> AlertDigest:
        """
        Atomically create-or-append `item` to the digest for the key.

        Raises DigestStoreError when the store is unavailable; the caller
        must then treat the alert as not aggregated.
        """
        now = now or self.clock()
        digest_id = digest_key(recipient_uid, category, day)
        digest = await self.store.merge_item(
            digest_id=digest_id,
            recipient_uid=recipient_uid,
            recipient_email=recipient_email,
            category=category,
            day=day,
            item=item,
            now=now,
            ack_token=generate_ack_token(),
        )
        if self.metrics is not None:
            self.metrics.record_merge(category)
        logger.debug(
            f"Merged alert {item.event_id} into digest {digest_id} "
            f"({len(digest.items)} item(s))"
        )
        return digest

    async def ingest_event(
        self, event: RawAlertEvent, *, now: datetime | None = None
    ) -> AlertDigest:
        now = now or self.clock()
        thresholds = await self.threshold_provider.get_thresholds()
        category = categorize(
            event.parameter,
            event.value,
            thresholds,
            alert_type=event.alert_type,
        )
        item = DigestAlertItem(
            event_id=event.event_id,
            summary=summarize_alert(event, thresholds),
            timestamp=event.timestamp,
            value=event.value,
            severity=event.severity,
            device_name=event.device_name,
            parameter=event.parameter,
        )
        logger.info(
            f"Aggregating alert {event.event_id} for {event.recipient_uid}, "
            f"category: {category}"
        )
        return await self.merge_alert(
            event.recipient_uid,
            category,
            digest_day(now),
            item,
            recipient_email=event.recipient_email,
            now=now,
        )
