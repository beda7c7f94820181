from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Protocol

import redis.asyncio as redis

from core.config import RedisConfig

LOGGER = logging.getLogger(__name__)


class CacheBackend(Protocol):
    async def incr(self, key: str, ttl: int | None = None) -> int: ...
    async def close(self) -> None: ...


@dataclass(slots=True)
class _Counter:
    value: int
    expires_at: float | None


class MemoryCache(CacheBackend):
    """Process-local counters used when Redis is disabled (single bot instance)."""

    def __init__(self) -> None:
        self._store: dict[str, _Counter] = {}
        self._lock = asyncio.Lock()

    async def incr(self, key: str, ttl: int | None = None) -> int:
        async with self._lock:
            now = time.monotonic()
            entry = self._store.get(key)
            if entry is None or (entry.expires_at is not None and now >= entry.expires_at):
                self._store[key] = _Counter(value=1, expires_at=now + ttl if ttl else None)
                return 1
            entry.value += 1
            return entry.value

    async def close(self) -> None:
        self._store.clear()


class RedisCache(CacheBackend):
    def __init__(self, url: str, default_ttl: int | None = None) -> None:
        self._client = redis.from_url(url, decode_responses=True)
        self._default_ttl = default_ttl

    async def ping(self) -> None:
        await self._client.ping()

    async def incr(self, key: str, ttl: int | None = None) -> int:
        ttl = ttl or self._default_ttl
        # Only the first hit of a window sets the expiry, so the window does not slide.
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            if ttl:
                pipe.expire(key, ttl, nx=True)
            result = await pipe.execute()
        return int(result[0])

    async def close(self) -> None:
        await self._client.aclose()


async def build_cache(config: RedisConfig) -> CacheBackend:
    if not config.enabled:
        LOGGER.info("Using in-memory cache backend")
        return MemoryCache()
    cache = RedisCache(config.url, default_ttl=config.default_ttl)
    await cache.ping()
    LOGGER.info("Using Redis cache backend")
    return cache
