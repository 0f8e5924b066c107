"""
Redis helper utilities.

The services container and Celery tasks call `get_redis_client()`; clients
are cached per event loop so each loop shares one connection pool.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any
from weakref import WeakKeyDictionary

from fastapi.encoders import jsonable_encoder
from redis.asyncio import Redis

from .settings import settings

_redis_clients_by_loop: WeakKeyDictionary[asyncio.AbstractEventLoop, Redis] = (
    WeakKeyDictionary()
)


def _ensure_event_loop() -> asyncio.AbstractEventLoop:
    try:
        return asyncio.get_running_loop()
    except RuntimeError as exc:  # pragma: no cover - easier debugging for sync misuse
        raise RuntimeError(
            "get_redis_client() 必须在运行中的事件循环内调用，请在 async 环境或 "
            "asyncio.run(...) 内部获取 Redis 客户端"
        ) from exc


def get_redis_client() -> Redis:
    """
    Return a Redis client bound to the current event loop.
    """

    loop = _ensure_event_loop()
    client = _redis_clients_by_loop.get(loop)
    if client is None:
        client = Redis.from_url(settings.redis_url, decode_responses=True)
        _redis_clients_by_loop[loop] = client
    return client


async def redis_get_json(redis: Redis, key: str) -> Any | None:
    """
    Load a JSON value; None on missing key or malformed payload.
    """
    raw = await redis.get(key)
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


async def redis_set_json(
    redis: Redis, key: str, value: Any, *, ttl_seconds: int | None = None
) -> None:
    """
    Store a JSON-serialisable value under the given key with optional TTL.
    """
    data = json.dumps(jsonable_encoder(value), ensure_ascii=False)
    if ttl_seconds is not None and ttl_seconds > 0:
        await redis.set(key, data, ex=ttl_seconds)
    else:
        await redis.set(key, data)


async def redis_delete(redis: Redis, *keys: str) -> int:
    """
    Delete keys; returns how many actually existed.
    """
    if not keys:
        return 0
    return int(await redis.delete(*keys))


__all__ = ["get_redis_client", "redis_delete", "redis_get_json", "redis_set_json"]
