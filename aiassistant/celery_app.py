from __future__ import annotations

"""
Celery 应用实例。

集中管理 Celery 配置，供 worker / beat 进程复用。默认使用 Redis 作为 broker
和 result backend，连接信息通过 CELERY_BROKER_URL / CELERY_RESULT_BACKEND 配置。

使用方式::

    # 启动 worker
    celery -A aiassistant.celery_app.celery_app worker -l info

    # 启动 beat（知识库巡检、会话归档、过期文件清理）
    celery -A aiassistant.celery_app.celery_app beat -l info
"""

from celery import Celery
from celery.signals import beat_init, worker_process_init

from aiassistant.logging_config import setup_logging
from aiassistant.settings import settings

celery_app = Celery(
    "aiassistant",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    task_default_queue=settings.celery_task_default_queue,
    timezone=settings.celery_timezone,
    enable_utc=True,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    # 显式导入子模块里的任务，worker 只加载 aiassistant/tasks/__init__.py 时也能注册全部任务
    imports=(
        "aiassistant.tasks",
        "aiassistant.tasks.knowledge_health",
        "aiassistant.tasks.session_maintenance",
        "aiassistant.tasks.file_maintenance",
    ),
)

celery_app.conf.beat_schedule = {
    "knowledge-health-check": {
        "task": "tasks.knowledge_health.check_all",
        "schedule": settings.knowledge_health_check_interval_seconds,
    },
    "session-archive-inactive": {
        "task": "tasks.session_maintenance.archive_inactive",
        "schedule": settings.session_archive_interval_seconds,
    },
    "file-cleanup-expired": {
        "task": "tasks.file_maintenance.cleanup_expired",
        "schedule": settings.file_cleanup_interval_seconds,
    },
}

# 确保 worker 启动时自动发现并注册任务
celery_app.autodiscover_tasks(["aiassistant"], force=True)
celery_app.loader.import_default_modules()


@worker_process_init.connect
def init_worker_logging(**kwargs):
    """
    在 Celery worker 进程初始化时配置应用日志。
    """
    setup_logging()


@beat_init.connect
def init_beat_logging(**kwargs):
    setup_logging()


__all__ = ["celery_app"]
