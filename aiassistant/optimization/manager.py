from __future__ import annotations

import asyncio
import time
from dataclasses import asdict
from typing import Any, Awaitable, Callable

from redis.asyncio import Redis
from sqlalchemy.orm import Session

from aiassistant.logging_config import logger
from aiassistant.models.optimization_config import (
    CONFIG_TYPE_CACHE,
    CONFIG_TYPE_CONCURRENT,
    CONFIG_TYPE_COST,
    CONFIG_TYPE_MODEL_ROUTER,
    CONFIG_TYPE_RATE_LIMIT,
    CONFIG_TYPE_RETRY,
)

from .concurrent import ConcurrentExecutor, ToolCall, ToolCallResult, ToolExecutor
from .config import (
    CacheConfig,
    ConcurrentConfig,
    CostConfig,
    ModelRouterConfig,
    OptimizationConfigSource,
    RateLimitConfig,
    RetryConfig,
    TaskModelConfig,
)
from .cost_tracker import CostTracker, UsageRecord
from .model_router import ModelRouter
from .rate_limiter import RateLimiter, RateLimitResult
from .retry import RetryHandler, RetryResult
from .tool_cache import CachedResult, ToolCache


class OptimizationReloadError(RuntimeError):
    """One or more engines failed to reload; the others were still swapped."""


class OptimizationManager:
    """
    限流、缓存、模型路由、重试、并发、成本六个引擎的统一门面。

    任何一个引擎为 None 时对应能力退化为直通（不限流 / 不缓存 / 单次执行 / 串行）。
    """

    def __init__(
        self,
        *,
        rate_limiter: RateLimiter | None = None,
        tool_cache: ToolCache | None = None,
        model_router: ModelRouter | None = None,
        retry_handler: RetryHandler | None = None,
        concurrent_executor: ConcurrentExecutor | None = None,
        cost_tracker: CostTracker | None = None,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.tool_cache = tool_cache
        self.model_router = model_router
        self.retry_handler = retry_handler
        self.concurrent_executor = concurrent_executor
        self.cost_tracker = cost_tracker

    @classmethod
    def from_database(
        cls,
        session_factory: Callable[[], Session],
        redis: Redis | None,
    ) -> "OptimizationManager":
        """
        从 ai_optimization_configs 构建全部引擎；模型路由配置非法时直接抛错。
        """
        source = OptimizationConfigSource(session_factory)

        def _loader(config_type: str, model_cls):
            return lambda: source.load(config_type, model_cls)

        rate_loader = _loader(CONFIG_TYPE_RATE_LIMIT, RateLimitConfig)
        cache_loader = _loader(CONFIG_TYPE_CACHE, CacheConfig)
        router_loader = _loader(CONFIG_TYPE_MODEL_ROUTER, ModelRouterConfig)
        retry_loader = _loader(CONFIG_TYPE_RETRY, RetryConfig)
        concurrent_loader = _loader(CONFIG_TYPE_CONCURRENT, ConcurrentConfig)
        cost_loader = _loader(CONFIG_TYPE_COST, CostConfig)

        manager = cls(
            rate_limiter=RateLimiter(redis, rate_loader(), loader=rate_loader),
            tool_cache=ToolCache(redis, cache_loader(), loader=cache_loader),
            model_router=ModelRouter(router_loader(), loader=router_loader),
            retry_handler=RetryHandler(retry_loader(), loader=retry_loader),
            concurrent_executor=ConcurrentExecutor(concurrent_loader(), loader=concurrent_loader),
            cost_tracker=CostTracker(redis, cost_loader(), loader=cost_loader),
        )
        logger.info("optimization manager initialised")
        return manager

    async def check_rate_limit(self, user_id: str, busi_group_id: str | None = None) -> RateLimitResult:
        if self.rate_limiter is None:
            return RateLimitResult(allowed=True, retry_after=0.0, remaining=-1, limit=-1)
        return await self.rate_limiter.allow(user_id, busi_group_id)

    async def get_cached_result(self, tool_name: str, args: dict[str, Any]) -> CachedResult | None:
        if self.tool_cache is None:
            return None
        return await self.tool_cache.get(tool_name, args)

    async def set_cached_result(self, tool_name: str, args: dict[str, Any], result: Any) -> bool:
        if self.tool_cache is None:
            return False
        return await self.tool_cache.set(tool_name, args, result)

    def get_model(self, task_type: str) -> str:
        if self.model_router is None:
            return ""
        return self.model_router.get_model(task_type)

    def get_model_config(self, task_type: str) -> TaskModelConfig | None:
        if self.model_router is None:
            return None
        task = self.model_router.get_model_config(task_type)
        if task is None:
            return None
        return TaskModelConfig(
            model=self.model_router.get_model(task_type),
            max_tokens=self.model_router.get_max_tokens(task_type),
            temperature=self.model_router.get_temperature(task_type),
            fallbacks=self.model_router.get_fallback_chain(task_type),
        )

    async def execute_with_retry(
        self,
        fn: Callable[[], Awaitable[Any]],
        *,
        cancel_event: asyncio.Event | None = None,
        operation: str = "",
    ) -> RetryResult:
        if self.retry_handler is not None:
            return await self.retry_handler.execute(fn, cancel_event=cancel_event, operation=operation)

        started = time.perf_counter()
        result = RetryResult(attempts=1)
        try:
            result.result = await fn()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            result.error = exc
        result.total_latency = time.perf_counter() - started
        return result

    async def execute_tools_concurrently(
        self,
        tool_calls: list[ToolCall],
        executor: ToolExecutor,
    ) -> list[ToolCallResult]:
        if self.concurrent_executor is not None:
            return await self.concurrent_executor.execute_all(tool_calls, executor)

        fallback = ConcurrentExecutor(ConcurrentConfig(max_concurrency=1))
        return [await fallback.execute_one(tc, executor) for tc in tool_calls]

    async def record_usage(
        self,
        *,
        user_id: str,
        session_id: str,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
    ) -> UsageRecord | None:
        if self.cost_tracker is None:
            return None
        return await self.cost_tracker.record_usage(
            UsageRecord(
                user_id=user_id,
                session_id=session_id,
                model=model,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
            )
        )

    def reload(self) -> None:
        """重新加载全部引擎配置，任何失败都汇总后抛出。"""
        errors: list[str] = []
        engines = (
            ("rate_limiter", self.rate_limiter),
            ("tool_cache", self.tool_cache),
            ("model_router", self.model_router),
            ("retry_handler", self.retry_handler),
            ("concurrent_executor", self.concurrent_executor),
            ("cost_tracker", self.cost_tracker),
        )
        for name, engine in engines:
            if engine is None:
                continue
            try:
                engine.reload()
            except Exception as exc:
                logger.error("failed to reload %s: %s", name, exc)
                errors.append(f"{name}: {exc}")
        if errors:
            raise OptimizationReloadError("reload errors: " + "; ".join(errors))
        logger.info("optimization configs reloaded")

    async def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {}
        if self.rate_limiter is not None:
            stats["rate_limit"] = self.rate_limiter.config.model_dump()
        if self.tool_cache is not None:
            stats["cache"] = self.tool_cache.config.model_dump()
        if self.model_router is not None:
            stats["model_router"] = self.model_router.config.model_dump()
        if self.retry_handler is not None:
            stats["retry"] = self.retry_handler.config.model_dump()
        if self.concurrent_executor is not None:
            stats["concurrent"] = {"max_concurrency": self.concurrent_executor.get_max_concurrency()}
        if self.cost_tracker is not None:
            stats["cost"] = self.cost_tracker.config.model_dump()
            stats["today_cost"] = asdict(await self.cost_tracker.get_daily_cost())
        return stats


__all__ = ["OptimizationManager", "OptimizationReloadError"]
