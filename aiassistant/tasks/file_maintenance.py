"""
Celery 任务：清理过期或残留的上传文件。
"""

from __future__ import annotations

import asyncio

from celery import shared_task

from aiassistant.db import SessionLocal
from aiassistant.logging_config import logger
from aiassistant.redis_client import get_redis_client
from aiassistant.services.config_loader import ConfigLoader
from aiassistant.services.file_manager import FileManager


@shared_task(name="tasks.file_maintenance.cleanup_expired")
def cleanup_expired_files() -> int:
    async def _run() -> int:
        files = FileManager(get_redis_client(), ConfigLoader(SessionLocal).get_file_config())
        cleaned = await files.cleanup_expired()
        logger.info("cleaned %d expired upload files under %s", cleaned, files.storage_path)
        return cleaned

    return asyncio.run(_run())


__all__ = ["cleanup_expired_files"]
