from __future__ import annotations

import pytest
from prometheus_client import REGISTRY
from redis.exceptions import ConnectionError as RedisConnectionError

from aiassistant.optimization.config import RateLimitConfig
from aiassistant.optimization.rate_limiter import RateLimiter, TokenBucket
from tests.utils import InMemoryRedis


class BrokenRedis:
    async def incr(self, key: str) -> int:
        raise RedisConnectionError("redis is down")


def test_limit_precedence():
    limiter = RateLimiter(
        None,
        RateLimitConfig(default_rpm=10, user_limits={"vip": 100}, busi_group_limits={"7": 30}),
    )

    assert limiter.get_limit("vip", "7") == 100
    assert limiter.get_limit("alice", "7") == 30
    assert limiter.get_limit("alice") == 10


def test_window_key_changes_every_minute():
    now = [120.0]
    limiter = RateLimiter(None, RateLimitConfig(), clock=lambda: now[0])

    assert limiter.build_key("u1", "7") == "ai:ratelimit:u1:7:2"
    now[0] = 179.0
    assert limiter.build_key("u1") == "ai:ratelimit:u1::2"
    now[0] = 180.0
    assert limiter.build_key("u1") == "ai:ratelimit:u1::3"


@pytest.mark.asyncio
async def test_redis_window_counting():
    redis = InMemoryRedis()
    limiter = RateLimiter(redis, RateLimitConfig(default_rpm=2), clock=lambda: 600.0)

    first = await limiter.allow("u1")
    second = await limiter.allow("u1")
    third = await limiter.allow("u1")
    other_user = await limiter.allow("u2")

    assert (first.allowed, first.remaining) == (True, 1)
    assert (second.allowed, second.remaining) == (True, 0)
    assert third.allowed is False
    assert 0 < third.retry_after <= 60
    assert third.limit == 2
    assert other_user.allowed is True
    assert await redis.ttl("ai:ratelimit:u1::10") > 0


@pytest.mark.asyncio
async def test_falls_back_to_local_bucket_when_redis_fails():
    limiter = RateLimiter(BrokenRedis(), RateLimitConfig(default_rpm=60, burst_size=2))

    results = [await limiter.allow("u1") for _ in range(3)]

    assert [r.allowed for r in results] == [True, True, False]
    assert results[2].retry_after > 0


def test_token_bucket_refills_over_time():
    now = [0.0]
    bucket = TokenBucket(rate=1.0, burst=2, clock=lambda: now[0])

    assert bucket.try_acquire() == (True, 0.0)
    assert bucket.try_acquire() == (True, 0.0)
    allowed, delay = bucket.try_acquire()
    assert allowed is False
    assert delay == pytest.approx(1.0)

    now[0] = 1.5
    assert bucket.try_acquire()[0] is True
    assert bucket.tokens == pytest.approx(0.5)

    now[0] = 100.0
    assert bucket.tokens == pytest.approx(2.0)


def test_zero_rate_bucket_waits_full_window():
    bucket = TokenBucket(rate=0.0, burst=1, clock=lambda: 0.0)
    bucket.try_acquire()

    assert bucket.try_acquire() == (False, 60.0)


def test_reload_swaps_config():
    configs = [RateLimitConfig(default_rpm=5)]
    limiter = RateLimiter(None, RateLimitConfig(default_rpm=1), loader=lambda: configs[0])

    limiter.reload()

    assert limiter.get_limit("u1") == 5


@pytest.mark.asyncio
async def test_rejections_are_counted_per_busi_group():
    limiter = RateLimiter(InMemoryRedis(), RateLimitConfig(default_rpm=1), clock=lambda: 900.0)
    labels = {"busi_group_id": "42"}
    before = REGISTRY.get_sample_value("ai_assistant_rate_limit_hits_total", labels) or 0.0

    assert (await limiter.allow("u9", "42")).allowed
    assert not (await limiter.allow("u9", "42")).allowed
    assert not (await limiter.allow("u9", "42")).allowed

    assert REGISTRY.get_sample_value("ai_assistant_rate_limit_hits_total", labels) == before + 2
