"""Wires the digest components together from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from prometheus_client import CollectorRegistry

from apps.notifier.acknowledgment import AcknowledgmentHandler
from apps.notifier.aggregator import DigestAggregator
from apps.notifier.coordinator import SendCoordinator
from apps.notifier.scheduler import CooldownScheduler
from apps.notifier.thresholds import ThresholdProvider
from core.alerting.metrics import DigestMetrics
from core.alerting.transport import DigestTransport, HttpRelayTransport, SmtpTransport
from core.config import DigestSettings
from core.db.memory import InMemoryDigestStore
from core.db.mongo import MongoDigestStore
from core.db.redis import RedisPolicyAdapter
from core.db.store import DigestStore

logger = logging.getLogger(__name__)


def build_transport(settings: DigestSettings) -> DigestTransport:
    if settings.email_relay_url:
        return HttpRelayTransport(
            settings.email_relay_url,
            sender=settings.smtp_sender,
            timeout=settings.transport_timeout_seconds,
        )
    return SmtpTransport(
        smtp_host=settings.smtp_host,
        smtp_port=settings.smtp_port,
        sender=settings.smtp_sender,
        username=settings.smtp_username,
        password=settings.smtp_password,
        use_tls=settings.smtp_use_tls,
        timeout=settings.transport_timeout_seconds,
    )


def build_store(settings: DigestSettings) -> DigestStore:
    if settings.mongo_url:
        return MongoDigestStore(settings.mongo_url, db_name=settings.mongo_db_name)
    logger.warning("MONGO_URL not set, digests are kept in process memory only")
    return InMemoryDigestStore()


@dataclass(slots=True)
class DigestEngine:
    store: DigestStore
    aggregator: DigestAggregator
    coordinator: SendCoordinator
    scheduler: CooldownScheduler
    acknowledgments: AcknowledgmentHandler
    metrics: DigestMetrics
    transport: DigestTransport
    redis_adapter: RedisPolicyAdapter | None = None

    @classmethod
    def from_settings(
        cls,
        settings: DigestSettings,
        *,
        store: DigestStore | None = None,
        transport: DigestTransport | None = None,
        registry: CollectorRegistry | None = None,
        clock: Any | None = None,
    ) -> DigestEngine:
        store = store or build_store(settings)
        transport = transport or build_transport(settings)
        metrics = DigestMetrics(registry=registry)
        redis_adapter = (
            RedisPolicyAdapter(settings.redis_url) if settings.redis_url else None
        )
        clock_kwargs = {"clock": clock} if clock is not None else {}

        coordinator = SendCoordinator(
            store,
            transport,
            ack_base_url=settings.ack_base_url,
            timeout_seconds=settings.transport_timeout_seconds,
            lease_seconds=settings.send_lease_seconds,
            metrics=metrics,
            **clock_kwargs,
        )
        return cls(
            store=store,
            aggregator=DigestAggregator(
                store,
                threshold_provider=ThresholdProvider(
                    redis_adapter, redis_key=settings.thresholds_redis_key
                ),
                metrics=metrics,
                **clock_kwargs,
            ),
            coordinator=coordinator,
            scheduler=CooldownScheduler(
                store,
                coordinator,
                batch_size=settings.batch_size,
                max_concurrency=settings.max_concurrency,
                interval_seconds=settings.scan_interval_seconds,
                **clock_kwargs,
            ),
            acknowledgments=AcknowledgmentHandler(store, metrics=metrics, **clock_kwargs),
            metrics=metrics,
            transport=transport,
            redis_adapter=redis_adapter,
        )

    async def start(self) -> None:
        await self.store.connect()
        if self.redis_adapter is not None:
            try:
                await self.redis_adapter.connect()
            except Exception as exc:
                logger.warning(f"Redis unavailable, using default thresholds: {exc}")
        await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.transport.close()
        if self.redis_adapter is not None:
            await self.redis_adapter.disconnect()
        await self.store.disconnect()
