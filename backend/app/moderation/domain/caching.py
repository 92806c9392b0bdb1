"""Redis-backed read-through cache for moderation dashboards."""

from __future__ import annotations

import asyncio
import hashlib
import json
from typing import Any, Awaitable, Callable

from app.infra.redis import RedisProxy, redis_client
from app.obs import metrics as obs_metrics
from app.settings import settings

CacheBuilder = Callable[[], Awaitable[Any]]


def cache_key(name: str, **params: Any) -> str:
    """Stable key for ``name`` and its query parameters."""
    if not params:
        return name
    encoded = json.dumps(params, sort_keys=True, default=str)
    digest = hashlib.sha1(encoded.encode("utf-8")).hexdigest()[:16]
    return f"{name}:{digest}"


class MetricsCache:
    """Thin wrapper over Redis providing JSON caching with singleflight.

    Entries live for ``ttl`` seconds; there is no invalidation beyond expiry
    other than :meth:`clear`.
    """

    def __init__(self, redis: RedisProxy | None = None, *, namespace: str | None = None) -> None:
        self.redis = redis or redis_client
        self.namespace = namespace or settings.metrics_cache_namespace
        self._locks: dict[str, asyncio.Lock] = {}

    def _key(self, suffix: str) -> str:
        return f"{self.namespace}{suffix}"

    def _lock(self, suffix: str) -> asyncio.Lock:
        if suffix not in self._locks:
            self._locks[suffix] = asyncio.Lock()
        return self._locks[suffix]

    async def get(self, suffix: str) -> Any | None:
        raw = await self.redis.get(self._key(suffix))
        if not raw:
            return None
        decoded = raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)
        try:
            return json.loads(decoded)
        except json.JSONDecodeError:
            return None

    async def set(self, suffix: str, value: Any, *, ttl: int) -> str:
        payload = json.dumps(value, default=str)
        await self.redis.set(self._key(suffix), payload, ex=ttl)
        return payload

    async def get_or_build(self, suffix: str, *, ttl: int, builder: CacheBuilder) -> Any:
        cache_name = suffix.split(":", 1)[0]
        cached = await self.get(suffix)
        if cached is not None:
            obs_metrics.record_cache_lookup(cache_name, hit=True)
            return cached
        async with self._lock(suffix):
            cached = await self.get(suffix)
            if cached is not None:
                obs_metrics.record_cache_lookup(cache_name, hit=True)
                return cached
            obs_metrics.record_cache_lookup(cache_name, hit=False)
            value = await builder()
            # Return the decoded payload so hits and misses have the same shape.
            return json.loads(await self.set(suffix, value, ttl=ttl))

    async def clear(self) -> int:
        return await self.redis.delete_prefix(self.namespace)
