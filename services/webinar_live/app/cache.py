"""Key/value backends mirroring live session state."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from .config import Settings
from .errors import TransientStoreError

logger = logging.getLogger(__name__)


class KeyValueCache(Protocol):
    async def get(self, key: str) -> str | None:
        ...

    async def set(self, key: str, value: str) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def keys(self, prefix: str) -> list[str]:
        ...

    async def aclose(self) -> None:
        ...


class InMemoryKeyValueCache:
    """Process-local backend used for development and tests."""

    def __init__(self) -> None:
        self._values: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> str | None:
        async with self._lock:
            return self._values.get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            self._values[key] = value

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._values.pop(key, None)

    async def keys(self, prefix: str) -> list[str]:
        async with self._lock:
            return sorted(key for key in self._values if key.startswith(prefix))

    async def aclose(self) -> None:
        async with self._lock:
            self._values.clear()


class RedisKeyValueCache:
    """Backend storing values in Redis; connection errors surface as transient."""

    def __init__(self, redis: Any) -> None:
        self._redis = redis

    async def get(self, key: str) -> str | None:
        try:
            value = await self._redis.get(key)
        except RedisError as exc:
            raise TransientStoreError(f"Redis GET {key} failed") from exc
        if isinstance(value, bytes):
            return value.decode()
        return value

    async def set(self, key: str, value: str) -> None:
        try:
            await self._redis.set(key, value)
        except RedisError as exc:
            raise TransientStoreError(f"Redis SET {key} failed") from exc

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(key)
        except RedisError as exc:
            raise TransientStoreError(f"Redis DEL {key} failed") from exc

    async def keys(self, prefix: str) -> list[str]:
        found: list[str] = []
        try:
            async for key in self._redis.scan_iter(match=f"{prefix}*"):
                found.append(key.decode() if isinstance(key, bytes) else key)
        except RedisError as exc:
            raise TransientStoreError(f"Redis SCAN {prefix}* failed") from exc
        return sorted(found)

    async def aclose(self) -> None:
        await self._redis.aclose()


def create_cache(settings: Settings) -> KeyValueCache:
    backend = settings.cache_backend
    if backend == "memory":
        return InMemoryKeyValueCache()
    if backend == "redis":  # pragma: no cover - requires Redis
        logger.info("Using Redis session cache")
        return RedisKeyValueCache(Redis.from_url(settings.redis_url, decode_responses=True))
    raise RuntimeError(f"Unknown cache backend {backend}")


__all__ = [
    "InMemoryKeyValueCache",
    "KeyValueCache",
    "RedisKeyValueCache",
    "create_cache",
]
