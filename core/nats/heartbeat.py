"""Digest service heartbeat over NATS request-reply."""

from __future__ import annotations

import json
import time
from datetime import UTC, datetime
from typing import Any

from opentelemetry.trace import Status, StatusCode

from core.db.store import DigestStore
from otel_init import get_tracer


class HeartbeatService:
    """Serves heartbeat responses with digest store and Redis health."""

    def __init__(
        self,
        *,
        version: str,
        store: DigestStore,
        redis_adapter: Any | None = None,
        subject: str = "digest.heartbeat",
        response_budget_ms: float = 20.0,
    ):
        self.version = version
        self.store = store
        self.redis_adapter = redis_adapter
        self.subject = subject
        self.response_budget_ms = response_budget_ms
        self.tracer = get_tracer(__name__)

    async def check_store_health(self) -> bool:
        try:
            return bool(await self.store.ping())
        except Exception:
            return False

    async def check_redis_health(self) -> bool:
        if self.redis_adapter is None:
            return False
        try:
            return bool(await self.redis_adapter.ping())
        except Exception:
            return False

    async def build_heartbeat(self) -> dict[str, Any]:
        start = time.perf_counter()

        with self.tracer.start_as_current_span("digest.heartbeat") as span:
            store_ok = await self.check_store_health()
            redis_ok = await self.check_redis_health()
            elapsed_ms = (time.perf_counter() - start) * 1000.0

            redis_required = self.redis_adapter is not None
            healthy = store_ok and (redis_ok or not redis_required)
            status_code = "DIGEST_ACTIVE" if healthy else "DEGRADED"
            if not redis_required:
                redis_state = "not_configured"
            else:
                redis_state = "connected" if redis_ok else "disconnected"
            payload = {
                "status": "OK",
                "status_code": status_code,
                "timestamp": datetime.now(UTC).isoformat(),
                "version": self.version,
                "dependencies": {
                    "store": "connected" if store_ok else "disconnected",
                    "redis": redis_state,
                },
                "response_time_ms": elapsed_ms,
            }

            span.set_attribute("service.health.status_code", status_code)
            span.set_attribute("service.health.store", store_ok)
            span.set_attribute("service.health.redis", redis_ok)
            span.set_attribute("service.health.response_time_ms", elapsed_ms)

            if elapsed_ms >= self.response_budget_ms:
                span.set_status(
                    Status(StatusCode.ERROR, "heartbeat_response_over_budget")
                )

            return payload

    async def handle_request(self, msg: Any) -> None:
        payload = await self.build_heartbeat()
        await msg.respond(json.dumps(payload, separators=(",", ":")).encode())

    async def start(self, nats_client: Any) -> None:
        await nats_client.subscribe(self.subject, cb=self.handle_request)
