# docparser/services/cache.py
from __future__ import annotations

import asyncio
import time
from typing import Dict, Optional, Protocol, Tuple

import redis.asyncio as aioredis

from docparser.config import RedisSettings


class CacheBackend(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class RedisCache:
    """Thin async wrapper around a redis client (string values)."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    @classmethod
    def from_settings(cls, conf: RedisSettings) -> "RedisCache":
        address = conf.address
        url = address if "://" in address else f"redis://{address}"
        client = aioredis.from_url(
            url,
            password=conf.password or None,
            db=conf.db,
            decode_responses=True,
        )
        return cls(client)

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        await self.client.set(key, value, ex=ttl)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()


class MemoryCache:
    """Process-local TTL cache used when no redis address is configured."""

    def __init__(self, clock=time.monotonic):
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            value, expires_at = item
            if expires_at is not None and self._clock() >= expires_at:
                del self._data[key]
                return None
            return value

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        async with self._lock:
            expires_at = self._clock() + ttl if ttl else None
            self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._data.clear()


def build_cache(conf: RedisSettings) -> CacheBackend:
    if conf.address:
        return RedisCache.from_settings(conf)
    return MemoryCache()
