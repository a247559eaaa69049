from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from redis.asyncio import Redis

from mailcourier.core.config import get_settings


logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    async def get(self, key: str) -> str | None:
        ...

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def incr(self, key: str) -> int:
        ...

    async def exists(self, key: str) -> bool:
        ...

    async def ping(self) -> bool:
        ...


_redis_client: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_redis() -> Redis:
    # Reuse one client per event loop; loop-bound connections break across test loops.
    global _redis_client, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_client is not None and _redis_loop == current_loop:
        return _redis_client
    if _redis_client is not None and _redis_loop != current_loop:
        _redis_client = None
    async with _redis_lock:
        if _redis_client is None:
            settings = get_settings()
            _redis_client = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
            _redis_loop = current_loop
    return _redis_client


def _decode(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8")
    return str(value)


class RedisKeyValueStore:
    """KeyValueStore backed by ``redis.asyncio``.

    Errors from Redis propagate to the caller; each component decides whether a
    KV failure is fatal (retry bookkeeping) or best-effort (caches, status).
    """

    def __init__(self, redis: Redis, *, prefix: str | None = None) -> None:
        self._redis = redis
        self._prefix = prefix if prefix is not None else get_settings().kv_key_prefix

    def _key(self, key: str) -> str:
        if not self._prefix:
            return key
        return f"{self._prefix}:{key}"

    async def get(self, key: str) -> str | None:
        return _decode(await self._redis.get(self._key(key)))

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        if ttl_seconds:
            await self._redis.set(self._key(key), value, ex=int(ttl_seconds))
        else:
            await self._redis.set(self._key(key), value)

    async def delete(self, key: str) -> None:
        await self._redis.delete(self._key(key))

    async def incr(self, key: str) -> int:
        return int(await self._redis.incr(self._key(key)))

    async def exists(self, key: str) -> bool:
        return int(await self._redis.exists(self._key(key))) > 0

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except Exception as exc:  # noqa: BLE001 - health probes report down instead of raising
            logger.warning("kv_ping_failed", exc_info=exc)
            return False
