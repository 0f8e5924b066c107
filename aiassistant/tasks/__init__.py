from __future__ import annotations

"""
Celery 任务定义入口。

- debug_ping: 验证 worker 是否正常工作；
- knowledge_health: 定时巡检知识库 Provider；
- session_maintenance: 归档长时间不活跃的会话；
- file_maintenance: 清理过期的上传文件。
"""

from celery import shared_task

from aiassistant.logging_config import logger


@shared_task(name="tasks.debug_ping")
def debug_ping() -> str:
    """
    用法示例:
        celery -A aiassistant.celery_app.celery_app call tasks.debug_ping
    """

    logger.info("Celery debug_ping task executed")
    return "pong"


__all__ = ["debug_ping"]
