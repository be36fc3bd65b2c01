"""Small key/value cache used for idempotency, notify-once and presence.

Handlers receive a ``Cache`` through the ``get_cache`` dependency: Redis in
deployed environments, an in-process map in tests and local scripts. Values
are JSON-serialisable.
"""
import json
import time
from typing import Any, Protocol

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from app.config import settings

logger = structlog.get_logger()


class Cache(Protocol):
    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def ttl(self, key: str) -> int | None: ...


class MemoryCache:
    """In-process cache with per-key expiry. Lost on restart.

    Expired entries are swept on write once the store doubles in size since
    the last sweep, and the store never holds more than ``max_entries`` keys
    (oldest writes are evicted first).
    """

    _MIN_SWEEP_SIZE = 64

    def __init__(self, clock=time.monotonic, max_entries: int = 10_000):
        self._clock = clock
        self._max_entries = max_entries
        self._store: dict[str, tuple[Any, float]] = {}
        self._sweep_at = self._MIN_SWEEP_SIZE

    def _sweep(self) -> None:
        now = self._clock()
        for key in [k for k, (_, expires) in self._store.items() if expires <= now]:
            del self._store[key]
        while len(self._store) >= self._max_entries:
            del self._store[next(iter(self._store))]
        self._sweep_at = max(len(self._store) * 2, self._MIN_SWEEP_SIZE)

    def _live(self, key: str):
        entry = self._store.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            self._store.pop(key, None)
            return None
        return entry

    async def get(self, key: str) -> Any | None:
        entry = self._live(key)
        return entry[0] if entry else None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        self._store.pop(key, None)
        if len(self._store) >= min(self._sweep_at, self._max_entries):
            self._sweep()
        self._store[key] = (value, self._clock() + ttl)

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)

    async def ttl(self, key: str) -> int | None:
        entry = self._live(key)
        if entry is None:
            return None
        return max(int(entry[1] - self._clock()), 0)

    def clear(self) -> None:
        self._store.clear()


class RedisCache:
    """Redis-backed cache. Redis outages degrade to cache misses."""

    def __init__(self, client: aioredis.Redis):
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCache":
        return cls(aioredis.from_url(url, decode_responses=True, socket_connect_timeout=2))

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._client.get(key)
        except RedisError:
            logger.warning("cache_get_failed", key=key)
            return None
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self._client.set(key, json.dumps(value, default=str), ex=ttl)
        except RedisError:
            logger.warning("cache_set_failed", key=key)

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except RedisError:
            logger.warning("cache_delete_failed", key=key)

    async def ttl(self, key: str) -> int | None:
        try:
            remaining = await self._client.ttl(key)
        except RedisError:
            logger.warning("cache_ttl_failed", key=key)
            return None
        # -2: missing key, -1: no expiry
        return remaining if remaining >= 0 else None

    async def close(self) -> None:
        await self._client.aclose()


_cache: Cache | None = None


def build_cache() -> Cache:
    if settings.REDIS_URL:
        return RedisCache.from_url(settings.REDIS_URL)
    return MemoryCache()


async def get_cache() -> Cache:
    """FastAPI dependency returning the process-wide cache."""
    global _cache
    if _cache is None:
        _cache = build_cache()
    return _cache
