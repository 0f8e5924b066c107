from __future__ import annotations

import asyncio

import pytest
from prometheus_client import REGISTRY

from aiassistant.optimization.config import RetryConfig
from aiassistant.optimization.retry import (
    MaxRetriesExceededError,
    RetryableError,
    RetryCancelledError,
    RetryHandler,
    is_retryable,
    non_retryable,
)


def _fast(max_retries: int = 3) -> RetryHandler:
    return RetryHandler(RetryConfig(max_retries=max_retries, initial_backoff=1, max_backoff=5, multiplier=2.0))


def test_calculate_backoff_is_capped():
    handler = RetryHandler(RetryConfig(initial_backoff=1000, max_backoff=30000, multiplier=2.0))

    assert [handler.calculate_backoff(n) for n in range(6)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]


def test_is_retryable():
    assert is_retryable(None) is False
    assert is_retryable(ValueError("x")) is True
    assert is_retryable(RetryableError("x")) is True
    assert is_retryable(non_retryable(ValueError("x"))) is False


@pytest.mark.asyncio
async def test_succeeds_after_transient_failures():
    attempts = {"n": 0}

    async def flaky():
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise ConnectionError("reset")
        return "ok"

    result = await _fast().execute(flaky)

    assert result.ok
    assert result.result == "ok"
    assert result.attempts == 3
    assert [h.attempt for h in result.history] == [1, 2]
    assert result.history[0].error == "reset"


@pytest.mark.asyncio
async def test_gives_up_after_max_retries():
    async def always_fails():
        raise TimeoutError("slow")

    result = await _fast(max_retries=2).execute(always_fails)

    assert result.attempts == 3
    assert isinstance(result.error, MaxRetriesExceededError)
    assert isinstance(result.error.last_error, TimeoutError)


@pytest.mark.asyncio
async def test_non_retryable_error_stops_immediately():
    calls = {"n": 0}

    async def invalid():
        calls["n"] += 1
        raise non_retryable(ValueError("bad args"))

    result = await _fast().execute(invalid)

    assert calls["n"] == 1
    assert isinstance(result.error, RetryableError)
    assert result.error.retryable is False


@pytest.mark.asyncio
async def test_cancel_event_stops_waiting():
    cancel = asyncio.Event()
    cancel.set()

    async def fails():
        raise RuntimeError("x")

    handler = RetryHandler(RetryConfig(max_retries=3, initial_backoff=10_000))
    result = await handler.execute(fails, cancel_event=cancel)

    assert result.attempts == 1
    assert isinstance(result.error, RetryCancelledError)


@pytest.mark.asyncio
async def test_zero_retries_runs_once():
    async def fails():
        raise RuntimeError("once")

    result = await _fast(max_retries=0).execute(fails)

    assert result.attempts == 1
    assert isinstance(result.error, MaxRetriesExceededError)


@pytest.mark.asyncio
async def test_attempts_are_observed_per_operation():
    labels = {"operation": "list_alerts"}
    count = REGISTRY.get_sample_value("ai_assistant_retry_attempts_count", labels) or 0.0
    total = REGISTRY.get_sample_value("ai_assistant_retry_attempts_sum", labels) or 0.0
    calls = {"n": 0}

    async def flaky():
        calls["n"] += 1
        if calls["n"] < 2:
            raise ConnectionError("reset")
        return "ok"

    result = await _fast().execute(flaky, operation="list_alerts")

    assert result.attempts == 2
    assert REGISTRY.get_sample_value("ai_assistant_retry_attempts_count", labels) == count + 1
    assert REGISTRY.get_sample_value("ai_assistant_retry_attempts_sum", labels) == total + 2
