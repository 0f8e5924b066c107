"""
Celery 任务：把超过阈值未活跃的会话归档到数据库，并从 Redis 删除。
"""

from __future__ import annotations

import asyncio

from celery import shared_task

from aiassistant.db import SessionLocal
from aiassistant.logging_config import logger
from aiassistant.redis_client import get_redis_client
from aiassistant.services.config_loader import ConfigLoader
from aiassistant.services.session_archive_service import archive_inactive_sessions
from aiassistant.services.session_manager import SessionManager
from aiassistant.settings import settings


@shared_task(name="tasks.session_maintenance.archive_inactive")
def archive_inactive_sessions_task(threshold_seconds: int | None = None) -> int:
    threshold = threshold_seconds or settings.session_archive_inactive_seconds

    async def _run() -> int:
        config = ConfigLoader(SessionLocal).get_session_config()
        manager = SessionManager(get_redis_client(), config)
        archived = await archive_inactive_sessions(SessionLocal, manager, threshold)
        logger.info("archived %d inactive sessions (threshold=%ss)", archived, threshold)
        return archived

    return asyncio.run(_run())


__all__ = ["archive_inactive_sessions_task"]
