from __future__ import annotations

import hashlib
import json
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable

from redis.asyncio import Redis
from redis.exceptions import RedisError

from aiassistant.logging_config import logger
from aiassistant.observability.metrics import METRICS
from aiassistant.redis_client import redis_get_json, redis_set_json

from .config import CacheConfig

CACHE_KEY_PREFIX = "ai:cache:"
_CLEAR_BATCH_SIZE = 100


@dataclass(frozen=True)
class CachedResult:
    result: Any
    cached_at: int
    expires_at: int
    tool_name: str


def build_cache_key(tool_name: str, args: dict[str, Any] | None) -> str:
    """
    ai:cache:<tool>:<sha256(json(args)) 前 8 字节的 hex>；键名排序保证同义参数同 key。
    """
    payload = json.dumps(args or {}, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    digest = hashlib.sha256(payload.encode("utf-8")).digest()
    return f"{CACHE_KEY_PREFIX}{tool_name}:{digest[:8].hex()}"


class ToolCache:
    """幂等工具的结果缓存；Redis 不可用时一律视为未命中。"""

    def __init__(
        self,
        redis: Redis | None,
        config: CacheConfig,
        *,
        loader: Callable[[], CacheConfig] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis
        self._config = config
        self._loader = loader
        self._clock = clock
        self._lock = threading.RLock()

    @property
    def config(self) -> CacheConfig:
        with self._lock:
            return self._config

    def is_enabled(self) -> bool:
        return self.config.enabled

    def is_idempotent(self, tool_name: str) -> bool:
        return tool_name in self.config.idempotent_tools

    def get_ttl(self, tool_name: str) -> int:
        config = self.config
        ttl = config.tool_ttls.get(tool_name)
        return int(ttl) if ttl else int(config.default_ttl)

    def _cacheable(self, tool_name: str) -> bool:
        return self._redis is not None and self.is_enabled() and self.is_idempotent(tool_name)

    async def get(self, tool_name: str, args: dict[str, Any] | None) -> CachedResult | None:
        if not self._cacheable(tool_name):
            return None
        cached = await self._lookup(tool_name, args)
        METRICS.record_cache_access(tool_name, cached is not None)
        return cached

    async def _lookup(self, tool_name: str, args: dict[str, Any] | None) -> CachedResult | None:
        key = build_cache_key(tool_name, args)
        try:
            data = await redis_get_json(self._redis, key)
        except (RedisError, OSError) as exc:
            logger.warning("tool cache get failed for %s: %s", tool_name, exc)
            return None
        if not isinstance(data, dict):
            return None
        try:
            cached = CachedResult(
                result=data.get("result"),
                cached_at=int(data.get("cached_at") or 0),
                expires_at=int(data.get("expires_at") or 0),
                tool_name=str(data.get("tool_name") or tool_name),
            )
        except (TypeError, ValueError):
            return None
        if cached.expires_at < int(self._clock()):
            return None
        return cached

    async def set(self, tool_name: str, args: dict[str, Any] | None, result: Any) -> bool:
        if not self._cacheable(tool_name):
            return False
        ttl = self.get_ttl(tool_name)
        now = int(self._clock())
        cached = CachedResult(result=result, cached_at=now, expires_at=now + ttl, tool_name=tool_name)
        try:
            await redis_set_json(self._redis, build_cache_key(tool_name, args), asdict(cached), ttl_seconds=ttl)
        except (RedisError, OSError) as exc:
            logger.warning("tool cache set failed for %s: %s", tool_name, exc)
            return False
        return True

    async def delete(self, tool_name: str, args: dict[str, Any] | None) -> None:
        if self._redis is None:
            return
        await self._redis.delete(build_cache_key(tool_name, args))

    async def clear(self) -> int:
        """SCAN ai:cache:* 分批删除，返回删除数量。"""
        if self._redis is None:
            return 0
        removed = 0
        cursor = 0
        while True:
            cursor, keys = await self._redis.scan(cursor=cursor, match=f"{CACHE_KEY_PREFIX}*", count=_CLEAR_BATCH_SIZE)
            if keys:
                removed += int(await self._redis.delete(*keys))
            if int(cursor) == 0:
                break
        return removed

    def reload(self) -> None:
        if self._loader is None:
            return
        config = self._loader()
        with self._lock:
            self._config = config


__all__ = ["CACHE_KEY_PREFIX", "CachedResult", "ToolCache", "build_cache_key"]
