from __future__ import annotations

import datetime as dt
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from redis.asyncio import Redis

from aiassistant.logging_config import logger
from aiassistant.observability.metrics import METRICS

from .config import CostConfig

COST_KEY_PREFIX = "ai:cost:"


@dataclass
class UsageRecord:
    user_id: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    session_id: str = ""
    total_tokens: int = 0
    cost: float = 0.0
    timestamp: int = 0


@dataclass
class DailyCost:
    date: str
    total: float = 0.0
    total_calls: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    by_model: dict[str, float] = field(default_factory=dict)


def _today(clock: Callable[[], float]) -> str:
    return dt.datetime.fromtimestamp(clock()).strftime("%Y-%m-%d")


def day_key(date: str) -> str:
    return f"{COST_KEY_PREFIX}{date}"


def user_key(user_id: str, date: str) -> str:
    return f"{COST_KEY_PREFIX}user:{user_id}:{date}"


def model_key(model: str, date: str) -> str:
    return f"{COST_KEY_PREFIX}model:{model}:{date}"


class CostTracker:
    """
    按天 / 用户 / 模型聚合 token 用量与费用，使用 Redis hash 原子累加。
    """

    def __init__(
        self,
        redis: Redis | None,
        config: CostConfig,
        *,
        loader: Callable[[], CostConfig] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis
        self._config = config
        self._loader = loader
        self._clock = clock
        self._lock = threading.RLock()

    @property
    def config(self) -> CostConfig:
        with self._lock:
            return self._config

    def calculate_cost(self, model: str, prompt_tokens: int, completion_tokens: int) -> float:
        price = self.config.model_prices.get(model)
        if price is None:
            return 0.0
        return (
            prompt_tokens / 1000.0 * price.prompt_price_per_1k
            + completion_tokens / 1000.0 * price.completion_price_per_1k
        )

    async def record_usage(self, record: UsageRecord) -> UsageRecord:
        record.total_tokens = record.prompt_tokens + record.completion_tokens
        record.cost = self.calculate_cost(record.model, record.prompt_tokens, record.completion_tokens)
        record.timestamp = int(self._clock())
        METRICS.record_cost(record.model, record.cost)
        if self._redis is None:
            return record

        date = _today(self._clock)
        expire_seconds = self.config.retention_days * 24 * 3600
        d_key = day_key(date)
        u_key = user_key(record.user_id, date)
        m_key = model_key(record.model, date)

        pipe = self._redis.pipeline()
        pipe.hincrbyfloat(d_key, "total", record.cost)
        pipe.hincrby(d_key, "calls", 1)
        pipe.hincrby(d_key, "prompt_tokens", record.prompt_tokens)
        pipe.hincrby(d_key, "completion_tokens", record.completion_tokens)
        pipe.hincrbyfloat(d_key, f"model:{record.model}", record.cost)
        pipe.hincrbyfloat(u_key, "total", record.cost)
        pipe.hincrby(u_key, "calls", 1)
        pipe.hincrbyfloat(m_key, "total", record.cost)
        pipe.hincrby(m_key, "calls", 1)
        for key in (d_key, u_key, m_key):
            pipe.expire(key, expire_seconds)
        await pipe.execute()

        logger.debug(
            "usage recorded: user=%s model=%s prompt=%d completion=%d cost=%.6f",
            record.user_id,
            record.model,
            record.prompt_tokens,
            record.completion_tokens,
            record.cost,
        )
        return record

    async def get_daily_cost(self, date: str | None = None) -> DailyCost:
        date = date or _today(self._clock)
        result = DailyCost(date=date)
        if self._redis is None:
            return result
        data = await self._redis.hgetall(day_key(date)) or {}
        for name, value in data.items():
            if name == "total":
                result.total = float(value)
            elif name == "calls":
                result.total_calls = int(float(value))
            elif name == "prompt_tokens":
                result.prompt_tokens = int(float(value))
            elif name == "completion_tokens":
                result.completion_tokens = int(float(value))
            elif name.startswith("model:"):
                result.by_model[name[len("model:"):]] = float(value)
        return result

    async def get_user_cost(self, user_id: str, date: str | None = None) -> tuple[float, int]:
        if self._redis is None:
            return 0.0, 0
        data = await self._redis.hgetall(user_key(user_id, date or _today(self._clock))) or {}
        return float(data.get("total") or 0.0), int(float(data.get("calls") or 0))

    async def get_user_cost_range(self, user_id: str, start: dt.date, end: dt.date) -> tuple[float, int]:
        total_cost = 0.0
        total_calls = 0
        day = start
        while day <= end:
            cost, calls = await self.get_user_cost(user_id, day.isoformat())
            total_cost += cost
            total_calls += calls
            day += dt.timedelta(days=1)
        return total_cost, total_calls

    async def check_threshold(self) -> tuple[bool, float]:
        """返回 (今日费用是否超过告警阈值, 今日费用)。"""
        daily = await self.get_daily_cost()
        exceeded = daily.total > self.config.alert_threshold
        if exceeded:
            logger.warning(
                "daily AI cost %.4f exceeds alert threshold %.4f",
                daily.total,
                self.config.alert_threshold,
            )
        return exceeded, daily.total

    def reload(self) -> None:
        if self._loader is None:
            return
        config = self._loader()
        with self._lock:
            self._config = config


__all__ = ["COST_KEY_PREFIX", "CostTracker", "DailyCost", "UsageRecord", "day_key", "model_key", "user_key"]
