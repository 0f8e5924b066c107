"""
Celery 任务：定时巡检知识库 Provider 健康状态并写回数据库。

健康状态写入时保留 updated_at，不会触发配置热加载。
"""

from __future__ import annotations

import asyncio
from typing import Callable

import httpx
from celery import shared_task
from sqlalchemy.orm import Session

from aiassistant.db import SessionLocal
from aiassistant.knowledge import KnowledgeRegistry
from aiassistant.logging_config import logger
from aiassistant.services.knowledge_service import record_provider_health
from aiassistant.settings import settings


async def run_health_checks(
    session_factory: Callable[[], Session],
    *,
    client: httpx.AsyncClient | None = None,
) -> dict[int, str | None]:
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=settings.tool_http_timeout_seconds)

    try:
        registry = KnowledgeRegistry(session_factory, http_client=client)
        registry.load()
        results = await registry.check_all_health()
    finally:
        if owns_client:
            await client.aclose()

    with session_factory() as session:
        for provider_id, error in results.items():
            record_provider_health(session, provider_id, error)

    unhealthy = sum(1 for error in results.values() if error is not None)
    logger.info("knowledge health check finished: %d providers, %d unhealthy", len(results), unhealthy)
    return results


@shared_task(name="tasks.knowledge_health.check_all")
def check_all_knowledge_providers() -> int:
    """巡检所有已启用的知识库 Provider，返回巡检数量。"""

    return len(asyncio.run(run_health_checks(SessionLocal)))


__all__ = ["check_all_knowledge_providers", "run_health_checks"]
