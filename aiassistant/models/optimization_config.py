from __future__ import annotations

from sqlalchemy import Boolean, Column, String, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped

from aiassistant.db.types import JSONBCompat

from .base import AuditMixin, Base, IdPrimaryKeyMixin, TimestampMixin

CONFIG_TYPE_RATE_LIMIT = "rate_limit"
CONFIG_TYPE_CACHE = "cache"
CONFIG_TYPE_MODEL_ROUTER = "model_router"
CONFIG_TYPE_RETRY = "retry"
CONFIG_TYPE_CONCURRENT = "concurrent"
CONFIG_TYPE_COST = "cost"
OPTIMIZATION_CONFIG_TYPES = (
    CONFIG_TYPE_RATE_LIMIT,
    CONFIG_TYPE_CACHE,
    CONFIG_TYPE_MODEL_ROUTER,
    CONFIG_TYPE_RETRY,
    CONFIG_TYPE_CONCURRENT,
    CONFIG_TYPE_COST,
)
DEFAULT_CONFIG_KEY = "default"


class AIOptimizationConfig(IdPrimaryKeyMixin, TimestampMixin, AuditMixin, Base):
    """限流 / 缓存 / 模型路由 / 重试 / 并发 / 成本 的配置，每种类型一行 default。"""

    __tablename__ = "ai_optimization_configs"
    __table_args__ = (
        UniqueConstraint("config_type", "config_key", name="uq_ai_optimization_configs_type_key"),
    )

    config_type: Mapped[str] = Column(String(32), nullable=False, index=True)
    config_key: Mapped[str] = Column(
        String(64), nullable=False, default=DEFAULT_CONFIG_KEY, server_default=text("'default'")
    )
    config_value = Column(JSONBCompat(), nullable=False)
    description: Mapped[str | None] = Column(Text, nullable=True)
    enabled: Mapped[bool] = Column(Boolean, nullable=False, default=True, server_default=text("true"))


__all__ = [
    "AIOptimizationConfig",
    "CONFIG_TYPE_CACHE",
    "CONFIG_TYPE_CONCURRENT",
    "CONFIG_TYPE_COST",
    "CONFIG_TYPE_MODEL_ROUTER",
    "CONFIG_TYPE_RATE_LIMIT",
    "CONFIG_TYPE_RETRY",
    "DEFAULT_CONFIG_KEY",
    "OPTIMIZATION_CONFIG_TYPES",
]
