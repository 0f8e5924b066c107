from __future__ import annotations

from sqlalchemy import Boolean, Column, Integer, String, Text, text
from sqlalchemy.orm import Mapped

from .base import AuditMixin, Base, IdPrimaryKeyMixin, TimestampMixin

CONFIG_KEY_DEFAULT_MODEL = "ai.default_model"
CONFIG_KEY_KNOWLEDGE = "knowledge.config"
CONFIG_KEY_SESSION = "session.config"
CONFIG_KEY_FILE = "file.config"


class AIConfig(IdPrimaryKeyMixin, TimestampMixin, AuditMixin, Base):
    """
    通用 AI 配置行，config_value 为 JSON 字符串（解析前展开 ${ENV}）。
    """

    __tablename__ = "ai_configs"

    config_key: Mapped[str] = Column(String(128), unique=True, nullable=False, index=True)
    config_value: Mapped[str] = Column(Text, nullable=False, default="", server_default=text("''"))
    # ai_model / knowledge / session / file / general
    config_type: Mapped[str] = Column(String(32), nullable=False, default="general", server_default=text("'general'"))
    description: Mapped[str | None] = Column(Text, nullable=True)
    scope: Mapped[str | None] = Column(String(32), nullable=True)
    scope_id: Mapped[int | None] = Column(Integer, nullable=True)
    enabled: Mapped[bool] = Column(Boolean, nullable=False, default=True, server_default=text("true"))


__all__ = [
    "AIConfig",
    "CONFIG_KEY_DEFAULT_MODEL",
    "CONFIG_KEY_FILE",
    "CONFIG_KEY_KNOWLEDGE",
    "CONFIG_KEY_SESSION",
]
