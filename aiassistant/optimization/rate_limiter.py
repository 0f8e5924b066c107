from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable

from redis.asyncio import Redis
from redis.exceptions import RedisError

from aiassistant.logging_config import logger
from aiassistant.observability.metrics import METRICS

from .config import RateLimitConfig

RATE_LIMIT_WINDOW_SECONDS = 60
_MAX_LOCAL_BUCKETS = 1000


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    retry_after: float
    remaining: int
    limit: int


class TokenBucket:
    """
    本地令牌桶：rate 个/秒匀速补充，最多 burst 个。
    """

    def __init__(self, rate: float, burst: int, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.rate = rate
        self.burst = max(1, burst)
        self._clock = clock
        self._tokens = float(self.burst)
        self._updated = clock()
        self._lock = threading.Lock()

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
        self._updated = now

    def try_acquire(self) -> tuple[bool, float]:
        """
        取一个令牌。

        Returns:
            (allowed, delay)：被拒绝时 delay 为下一个令牌到达前的秒数
        """
        with self._lock:
            now = self._clock()
            self._refill(now)
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True, 0.0
            if self.rate <= 0:
                return False, float(RATE_LIMIT_WINDOW_SECONDS)
            return False, (1.0 - self._tokens) / self.rate

    @property
    def tokens(self) -> float:
        with self._lock:
            self._refill(self._clock())
            return self._tokens


class RateLimiter:
    """
    两级限流：Redis 可用时按分钟窗口计数，Redis 异常时退化为进程内令牌桶。

    限额优先级：用户覆盖 > 业务组覆盖 > default_rpm。
    """

    def __init__(
        self,
        redis: Redis | None,
        config: RateLimitConfig,
        *,
        loader: Callable[[], RateLimitConfig] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis
        self._config = config
        self._loader = loader
        self._clock = clock
        self._lock = threading.RLock()
        self._buckets: dict[str, TokenBucket] = {}

    @property
    def config(self) -> RateLimitConfig:
        with self._lock:
            return self._config

    def get_limit(self, user_id: str, busi_group_id: str | None = None) -> int:
        config = self.config
        if user_id and user_id in config.user_limits:
            return int(config.user_limits[user_id])
        if busi_group_id and busi_group_id in config.busi_group_limits:
            return int(config.busi_group_limits[busi_group_id])
        return int(config.default_rpm)

    def build_key(self, user_id: str, busi_group_id: str | None = None) -> str:
        window = int(self._clock()) // RATE_LIMIT_WINDOW_SECONDS
        return f"ai:ratelimit:{user_id}:{busi_group_id or ''}:{window}"

    async def allow(self, user_id: str, busi_group_id: str | None = None) -> RateLimitResult:
        limit = self.get_limit(user_id, busi_group_id)
        if self._redis is None:
            result = self._allow_local(user_id, busi_group_id, limit)
        else:
            try:
                result = await self._allow_redis(user_id, busi_group_id, limit)
            except (RedisError, OSError) as exc:
                logger.warning("rate limiter falls back to local bucket: %s", exc)
                result = self._allow_local(user_id, busi_group_id, limit)
        if not result.allowed:
            METRICS.record_rate_limit_hit(busi_group_id)
        return result

    async def _allow_redis(self, user_id: str, busi_group_id: str | None, limit: int) -> RateLimitResult:
        key = self.build_key(user_id, busi_group_id)
        count = int(await self._redis.incr(key))
        if count == 1:
            await self._redis.expire(key, RATE_LIMIT_WINDOW_SECONDS)

        if count > limit:
            ttl = int(await self._redis.ttl(key))
            retry_after = float(ttl) if ttl > 0 else float(RATE_LIMIT_WINDOW_SECONDS)
            return RateLimitResult(allowed=False, retry_after=retry_after, remaining=0, limit=limit)

        return RateLimitResult(allowed=True, retry_after=0.0, remaining=limit - count, limit=limit)

    def _bucket_for(self, key: str, limit: int) -> TokenBucket:
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                if len(self._buckets) > _MAX_LOCAL_BUCKETS:
                    self._buckets.clear()
                bucket = TokenBucket(limit / RATE_LIMIT_WINDOW_SECONDS, self._config.burst_size)
                self._buckets[key] = bucket
            return bucket

    def _allow_local(self, user_id: str, busi_group_id: str | None, limit: int) -> RateLimitResult:
        bucket = self._bucket_for(f"{user_id}:{busi_group_id or ''}", limit)
        allowed, delay = bucket.try_acquire()
        if not allowed:
            return RateLimitResult(allowed=False, retry_after=delay, remaining=0, limit=limit)
        return RateLimitResult(
            allowed=True, retry_after=0.0, remaining=int(bucket.tokens), limit=limit
        )

    def cleanup(self) -> None:
        with self._lock:
            if len(self._buckets) > _MAX_LOCAL_BUCKETS:
                self._buckets.clear()

    def reload(self) -> None:
        if self._loader is None:
            return
        config = self._loader()
        with self._lock:
            self._config = config
            # 参数变化后令牌桶需要重建
            self._buckets.clear()


__all__ = ["RATE_LIMIT_WINDOW_SECONDS", "RateLimitResult", "RateLimiter", "TokenBucket"]
