from __future__ import annotations

import threading
from pathlib import Path

from alembic import command
from alembic.config import Config

from aiassistant.logging_config import logger
from aiassistant.settings import settings

_MIGRATION_LOCK = threading.Lock()
_MIGRATION_APPLIED = False


def _should_auto_apply() -> bool:
    """
    仅在 Postgres 上自动迁移；测试使用的 SQLite 直接 create_all。
    """
    if not settings.auto_apply_db_migrations:
        return False
    return settings.database_url.lower().startswith("postgres")


def _build_alembic_config(base_dir: Path) -> Config:
    cfg = Config(str(base_dir / "alembic.ini"))
    cfg.set_main_option("script_location", str(base_dir / "alembic"))
    cfg.set_main_option("sqlalchemy.url", settings.database_url)
    return cfg


def auto_upgrade_database() -> None:
    """
    进程启动时把 schema 升级到 head，每个进程只执行一次。
    """
    global _MIGRATION_APPLIED
    if _MIGRATION_APPLIED or not _should_auto_apply():
        return

    with _MIGRATION_LOCK:
        if _MIGRATION_APPLIED:
            return

        root_dir = Path(__file__).resolve().parents[2]
        alembic_ini = root_dir / "alembic.ini"
        if not alembic_ini.exists():
            logger.warning(
                "Alembic 配置文件 %s 不存在，跳过自动迁移。请确认部署环境是否包含迁移脚本。",
                alembic_ini,
            )
            _MIGRATION_APPLIED = True
            return

        logger.info("自动执行 Alembic 迁移，确保 AI 助手相关表为最新版本...")
        try:
            command.upgrade(_build_alembic_config(root_dir), "head")
        except Exception:
            logger.exception("自动执行 Alembic 迁移失败，请手动运行 'alembic upgrade head'。")
            raise
        logger.info("数据库迁移完成。")
        _MIGRATION_APPLIED = True


__all__ = ["auto_upgrade_database"]
