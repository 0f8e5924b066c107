from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from aiassistant.observability.metrics import METRICS

from .config import RetryConfig


class RetryableError(Exception):
    """
    包装一次失败；retryable=False 时重试器立即放弃。
    """

    def __init__(self, error: BaseException | str, retryable: bool = True, retry_after: float | None = None) -> None:
        super().__init__(str(error))
        self.error = error
        self.retryable = retryable
        self.retry_after = retry_after


class RetryCancelledError(RuntimeError):
    """The caller's cancel token fired while waiting between attempts."""


class MaxRetriesExceededError(RuntimeError):
    def __init__(self, last_error: BaseException) -> None:
        super().__init__(f"max retries exceeded: {last_error}")
        self.last_error = last_error


def is_retryable(exc: BaseException | None) -> bool:
    if exc is None:
        return False
    if isinstance(exc, RetryableError):
        return exc.retryable
    return True


def non_retryable(exc: BaseException) -> RetryableError:
    return RetryableError(exc, retryable=False)


@dataclass(frozen=True)
class RetryAttempt:
    attempt: int
    error: str | None
    duration: float
    backoff: float


@dataclass
class RetryResult:
    result: Any = None
    error: BaseException | None = None
    attempts: int = 0
    total_latency: float = 0.0
    history: list[RetryAttempt] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None


class RetryHandler:
    """
    指数退避重试：backoff(n) = min(initial * multiplier^n, max)，
    总尝试次数不超过 max_retries + 1。
    """

    def __init__(self, config: RetryConfig, *, loader: Callable[[], RetryConfig] | None = None) -> None:
        self._config = config
        self._loader = loader
        self._lock = threading.RLock()

    @property
    def config(self) -> RetryConfig:
        with self._lock:
            return self._config

    def get_max_retries(self) -> int:
        return self.config.max_retries

    def calculate_backoff(self, attempt: int) -> float:
        """第 attempt 次（从 0 开始）失败后的等待秒数。"""
        config = self.config
        backoff_ms = config.initial_backoff * (config.multiplier ** attempt)
        return min(backoff_ms, float(config.max_backoff)) / 1000.0

    async def execute(
        self,
        fn: Callable[[], Awaitable[Any]],
        *,
        cancel_event: asyncio.Event | None = None,
        operation: str = "",
    ) -> RetryResult:
        result = await self._execute(fn, cancel_event)
        METRICS.record_retry_attempts(operation, result.attempts)
        return result

    async def _execute(
        self,
        fn: Callable[[], Awaitable[Any]],
        cancel_event: asyncio.Event | None,
    ) -> RetryResult:
        result = RetryResult()
        started = time.perf_counter()
        max_retries = self.get_max_retries()

        for attempt in range(max_retries + 1):
            attempt_started = time.perf_counter()
            try:
                value = await fn()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                error: BaseException = exc
            else:
                result.result = value
                result.attempts = attempt + 1
                result.total_latency = time.perf_counter() - started
                return result

            result.attempts = attempt + 1
            backoff = self.calculate_backoff(attempt)
            result.history.append(
                RetryAttempt(
                    attempt=attempt + 1,
                    error=str(error),
                    duration=time.perf_counter() - attempt_started,
                    backoff=backoff,
                )
            )

            if not is_retryable(error):
                result.error = error
                break

            if attempt >= max_retries:
                result.error = MaxRetriesExceededError(error)
                break

            if isinstance(error, RetryableError) and error.retry_after:
                backoff = max(backoff, float(error.retry_after))
            if await self._wait(backoff, cancel_event):
                result.error = RetryCancelledError("retry cancelled")
                break

        result.total_latency = time.perf_counter() - started
        return result

    @staticmethod
    async def _wait(seconds: float, cancel_event: asyncio.Event | None) -> bool:
        """等待退避时间；返回 True 表示期间被取消。"""
        if cancel_event is None:
            await asyncio.sleep(seconds)
            return False
        if cancel_event.is_set():
            return True
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    def reload(self) -> None:
        if self._loader is None:
            return
        config = self._loader()
        with self._lock:
            self._config = config


__all__ = [
    "MaxRetriesExceededError",
    "RetryAttempt",
    "RetryCancelledError",
    "RetryHandler",
    "RetryResult",
    "RetryableError",
    "is_retryable",
    "non_retryable",
]
