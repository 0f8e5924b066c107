from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from aiassistant.observability.metrics import METRICS

from .config import ConcurrentConfig

DEFAULT_MAX_CONCURRENCY = 5


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)
    # LLM 原始 arguments 字符串，用于回填 assistant 消息
    raw_arguments: str = ""


@dataclass(frozen=True)
class ToolCallResult:
    tool_call_id: str
    tool_name: str
    result: Any = None
    error: BaseException | None = None
    duration_ms: int = 0
    success: bool = False


ToolExecutor = Callable[[ToolCall], Awaitable[Any]]


class ConcurrentExecutor:
    """
    有界并发执行多个工具调用：单个失败不影响其它调用，结果按输入顺序返回。
    """

    def __init__(
        self,
        config: ConcurrentConfig,
        *,
        loader: Callable[[], ConcurrentConfig] | None = None,
    ) -> None:
        self._config = config
        self._loader = loader
        self._lock = threading.RLock()

    @property
    def config(self) -> ConcurrentConfig:
        with self._lock:
            return self._config

    def get_max_concurrency(self) -> int:
        value = self.config.max_concurrency
        return value if value > 0 else DEFAULT_MAX_CONCURRENCY

    async def execute_one(self, tool_call: ToolCall, executor: ToolExecutor) -> ToolCallResult:
        started = time.perf_counter()
        try:
            with METRICS.track_concurrent():
                value = await executor(tool_call)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return ToolCallResult(
                tool_call_id=tool_call.id,
                tool_name=tool_call.name,
                error=exc,
                duration_ms=int((time.perf_counter() - started) * 1000),
                success=False,
            )
        return ToolCallResult(
            tool_call_id=tool_call.id,
            tool_name=tool_call.name,
            result=value,
            duration_ms=int((time.perf_counter() - started) * 1000),
            success=True,
        )

    async def execute_all(self, tool_calls: list[ToolCall], executor: ToolExecutor) -> list[ToolCallResult]:
        if not tool_calls:
            return []
        semaphore = asyncio.Semaphore(self.get_max_concurrency())

        async def _run(tool_call: ToolCall) -> ToolCallResult:
            async with semaphore:
                return await self.execute_one(tool_call, executor)

        # gather 保持输入顺序
        return list(await asyncio.gather(*(_run(tc) for tc in tool_calls)))

    def reload(self) -> None:
        if self._loader is None:
            return
        config = self._loader()
        with self._lock:
            self._config = config


def aggregate_results(results: list[ToolCallResult]) -> tuple[list[ToolCallResult], list[ToolCallResult]]:
    successes = [r for r in results if r.success]
    failures = [r for r in results if not r.success]
    return successes, failures


def has_failures(results: list[ToolCallResult]) -> bool:
    return any(not r.success for r in results)


def total_duration_ms(results: list[ToolCallResult]) -> int:
    """并发执行的总耗时取最慢的那一个。"""
    return max((r.duration_ms for r in results), default=0)


__all__ = [
    "ConcurrentExecutor",
    "DEFAULT_MAX_CONCURRENCY",
    "ToolCall",
    "ToolCallResult",
    "ToolExecutor",
    "aggregate_results",
    "has_failures",
    "total_duration_ms",
]
