"""Short-TTL price caches keyed by (source, minute)."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Protocol

from cachetools import TTLCache
from redis.asyncio import Redis

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 120
DEFAULT_CACHE_MAXSIZE = 4096


def minute_bucket(timestamp: datetime) -> int:
    """Unix seconds of the timestamp rounded down to the minute."""
    return int(timestamp.timestamp()) // 60 * 60


class PriceCache(Protocol):
    async def get(self, source: str, minute: int) -> Decimal | None: ...

    async def set(self, source: str, minute: int, price: Decimal) -> None: ...


class InMemoryPriceCache:
    """Process-local price cache backed by ``cachetools.TTLCache``."""

    def __init__(self, *, ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS, maxsize: int = DEFAULT_CACHE_MAXSIZE) -> None:
        self._cache: TTLCache[tuple[str, int], Decimal] = TTLCache(maxsize=maxsize, ttl=ttl_seconds)

    async def get(self, source: str, minute: int) -> Decimal | None:
        return self._cache.get((source, minute))

    async def set(self, source: str, minute: int, price: Decimal) -> None:
        self._cache[(source, minute)] = price

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)


class RedisPriceCache:
    """Price cache shared across processes through Redis."""

    def __init__(self, redis: Redis, *, ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS) -> None:
        self._redis = redis
        self._ttl = ttl_seconds
        self._cache_prefix = "price:"

    def _cache_key(self, source: str, minute: int) -> str:
        return f"{self._cache_prefix}{source}:{minute}"

    async def get(self, source: str, minute: int) -> Decimal | None:
        try:
            value = await self._redis.get(self._cache_key(source, minute))
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None
        if value is None:
            return None
        if isinstance(value, bytes):
            value = value.decode()
        try:
            return Decimal(str(value))
        except InvalidOperation:
            return None

    async def set(self, source: str, minute: int, price: Decimal) -> None:
        try:
            await self._redis.set(self._cache_key(source, minute), str(price), ex=self._ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)
