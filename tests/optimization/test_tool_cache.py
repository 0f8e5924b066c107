from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from aiassistant.optimization.config import CacheConfig
from aiassistant.optimization.tool_cache import ToolCache, build_cache_key
from tests.utils import InMemoryRedis


def _cache(redis, clock=None, **overrides) -> ToolCache:
    config = CacheConfig(idempotent_tools=["get_pods", "search_docs"], **overrides)
    if clock is None:
        return ToolCache(redis, config)
    return ToolCache(redis, config, clock=clock)


def test_cache_key_is_stable_across_argument_order():
    first = build_cache_key("get_pods", {"namespace": "prod", "limit": 10})
    second = build_cache_key("get_pods", {"limit": 10, "namespace": "prod"})

    assert first == second
    assert first.startswith("ai:cache:get_pods:")
    assert len(first.rsplit(":", 1)[1]) == 16
    assert build_cache_key("get_pods", None) == build_cache_key("get_pods", {})
    assert build_cache_key("get_pods", {"namespace": "dev"}) != first


@pytest.mark.asyncio
async def test_set_and_get_idempotent_tool():
    redis = InMemoryRedis()
    cache = _cache(redis, tool_ttls={"get_pods": 30})

    assert await cache.set("get_pods", {"namespace": "prod"}, {"pods": 3}) is True
    cached = await cache.get("get_pods", {"namespace": "prod"})

    assert cached.result == {"pods": 3}
    assert cached.tool_name == "get_pods"
    assert cached.expires_at - cached.cached_at == 30
    assert await redis.ttl(build_cache_key("get_pods", {"namespace": "prod"})) == 30
    assert cache.get_ttl("search_docs") == 120


@pytest.mark.asyncio
async def test_non_idempotent_and_disabled_are_not_cached():
    redis = InMemoryRedis()

    cache = _cache(redis)
    assert await cache.set("restart_pod", {"name": "x"}, "done") is False
    assert await cache.get("restart_pod", {"name": "x"}) is None

    disabled = _cache(redis, enabled=False)
    assert await disabled.set("get_pods", {}, "x") is False

    without_redis = _cache(None)
    assert await without_redis.get("get_pods", {}) is None
    assert await without_redis.clear() == 0


@pytest.mark.asyncio
async def test_expired_entry_is_a_miss():
    redis = InMemoryRedis()
    now = [1000.0]
    cache = _cache(redis, clock=lambda: now[0], default_ttl=10)

    await cache.set("search_docs", {"query": "q"}, ["a"])
    now[0] = 1011.0

    assert await cache.get("search_docs", {"query": "q"}) is None


@pytest.mark.asyncio
async def test_delete_and_clear():
    redis = InMemoryRedis()
    cache = _cache(redis)
    await redis.set("unrelated", "1")

    await cache.set("get_pods", {"namespace": "a"}, 1)
    await cache.set("get_pods", {"namespace": "b"}, 2)
    await cache.set("search_docs", {"query": "q"}, 3)

    await cache.delete("get_pods", {"namespace": "a"})
    assert await cache.get("get_pods", {"namespace": "a"}) is None

    assert await cache.clear() == 2
    assert await redis.get("unrelated") == "1"


def _cache_samples(tool: str) -> tuple[float, float]:
    hits = REGISTRY.get_sample_value("ai_assistant_cache_hits_total", {"tool": tool, "hit": "true"}) or 0.0
    misses = REGISTRY.get_sample_value("ai_assistant_cache_hits_total", {"tool": tool, "hit": "false"}) or 0.0
    return hits, misses


@pytest.mark.asyncio
async def test_lookups_are_counted_as_hits_and_misses():
    cache = _cache(InMemoryRedis())
    hits, misses = _cache_samples("get_pods")

    assert await cache.get("get_pods", {"namespace": "qa"}) is None
    await cache.set("get_pods", {"namespace": "qa"}, {"pods": 1})
    assert await cache.get("get_pods", {"namespace": "qa"}) is not None
    # 不可缓存的工具不计数
    assert await cache.get("delete_pod", {}) is None

    assert _cache_samples("get_pods") == (hits + 1, misses + 1)
    assert _cache_samples("delete_pod") == (0.0, 0.0)
