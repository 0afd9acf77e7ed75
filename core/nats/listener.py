"""NATS subscription feeding raw alert events into the digest aggregator."""

from __future__ import annotations

import json
import logging
import time
from typing import Any

from apps.notifier.aggregator import DigestAggregator
from contracts.digest import RawAlertEvent
from core.db.store import DigestStoreError

logger = logging.getLogger(__name__)


class RawAlertListener:
    """Consumes `alerts.raw.>` events; aggregation only, never sends."""

    def __init__(
        self,
        nats_client: Any,
        aggregator: DigestAggregator,
        subject: str = "alerts.raw.>",
    ):
        self.nats_client = nats_client
        self.aggregator = aggregator
        self.subject = subject

    async def start(self) -> None:
        await self.nats_client.subscribe(self.subject, cb=self._on_message)

    async def _on_message(self, msg: Any) -> None:
        result = await self.handle_event(msg.data)
        if getattr(msg, "reply", None):
            await msg.respond(json.dumps(result, separators=(",", ":")).encode())

    async def handle_event(self, data: bytes | str) -> dict[str, Any]:
        start = time.perf_counter()
        try:
            event = RawAlertEvent.model_validate(self._decode_payload(data))
        except (ValueError, TypeError) as exc:
            logger.warning(f"Discarding malformed raw alert event: {exc}")
            return {"aggregated": False, "reason": "invalid_event"}

        try:
            digest = await self.aggregator.ingest_event(event)
        except DigestStoreError as exc:
            # Retrying is the alert pipeline's responsibility.
            logger.error(f"Failed to aggregate alert {event.event_id}: {exc}")
            return {
                "aggregated": False,
                "reason": "store_unavailable",
                "event_id": event.event_id,
            }

        return {
            "aggregated": True,
            "event_id": event.event_id,
            "digest_id": digest.digest_id,
            "items": len(digest.items),
            "processing_ms": (time.perf_counter() - start) * 1000.0,
        }

    @staticmethod
    def _decode_payload(data: bytes | str) -> dict[str, Any]:
        if isinstance(data, bytes):
            return json.loads(data.decode())
        if isinstance(data, str):
            return json.loads(data)
        raise TypeError("Alert payload must be bytes or JSON string")
