"""Async Redis adapter for threshold policy lookups."""

from __future__ import annotations

import json
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError


class RedisPolicyAdapter:
    """Reads JSON policy documents (e.g. `policy:thresholds`) from Redis."""

    def __init__(self, url: str):
        self.url = url
        self.client: Redis | None = None
        self.connected = False

    async def connect(self) -> None:
        self.client = Redis.from_url(self.url, decode_responses=True)
        await self.client.ping()
        self.connected = True

    async def disconnect(self) -> None:
        if self.client is not None:
            await self.client.aclose()
        self.connected = False

    async def ping(self) -> bool:
        if self.client is None:
            return False
        try:
            return bool(await self.client.ping())
        except RedisError:
            return False

    async def get_json(self, key: str) -> dict[str, Any] | None:
        if self.client is None:
            return None
        payload = await self.client.get(key)
        if not payload:
            return None
        return json.loads(payload)
