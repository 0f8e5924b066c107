from __future__ import annotations

"""
Celery 集成相关的基础测试。

这些测试只验证配置和任务注册情况，不会真正连接 Redis 或启动 Celery worker。
"""

from aiassistant.celery_app import celery_app
from aiassistant.settings import settings


def test_celery_app_uses_settings() -> None:
    """Celery 实例应当从 Settings 中读取核心配置。"""

    assert celery_app.conf.broker_url == settings.celery_broker_url
    assert celery_app.conf.result_backend == settings.celery_result_backend
    assert celery_app.conf.timezone == settings.celery_timezone
    assert celery_app.conf.task_default_queue == settings.celery_task_default_queue


def test_celery_tasks_registered() -> None:
    """巡检与清理任务应当已经注册，beat 计划指向已注册的任务。"""

    assert "tasks.debug_ping" in celery_app.tasks
    assert celery_app.tasks["tasks.debug_ping"].run() == "pong"

    for name in (
        "tasks.knowledge_health.check_all",
        "tasks.session_maintenance.archive_inactive",
        "tasks.file_maintenance.cleanup_expired",
    ):
        assert name in celery_app.tasks

    scheduled = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
    assert scheduled <= set(celery_app.tasks)
