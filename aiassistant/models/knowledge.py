from __future__ import annotations

import datetime as dt

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, SmallInteger, String, Text, text
from sqlalchemy.orm import Mapped, relationship

from aiassistant.db.types import JSONBCompat

from .base import AuditMixin, Base, IdPrimaryKeyMixin, TimestampMixin

PROVIDER_CLOUDFLARE_AUTORAG = "cloudflare_autorag"
PROVIDER_COZE = "coze"

HEALTH_UNKNOWN = 0
HEALTH_HEALTHY = 1
HEALTH_UNHEALTHY = 2


class KnowledgeProvider(IdPrimaryKeyMixin, TimestampMixin, AuditMixin, Base):
    """知识库服务配置；config 为 JSON，可包含 ${ENV} 占位符。"""

    __tablename__ = "knowledge_providers"

    name: Mapped[str] = Column(String(128), unique=True, nullable=False, index=True)
    provider_type: Mapped[str] = Column(String(32), nullable=False)
    description: Mapped[str | None] = Column(Text, nullable=True)
    config = Column(JSONBCompat(), nullable=True)
    enabled: Mapped[bool] = Column(Boolean, nullable=False, default=True, server_default=text("true"))
    health_status: Mapped[int] = Column(
        SmallInteger, nullable=False, default=HEALTH_UNKNOWN, server_default=text("0")
    )
    last_check_time: Mapped[dt.datetime | None] = Column(DateTime(timezone=True), nullable=True)
    last_check_error: Mapped[str | None] = Column(Text, nullable=True)

    tools: Mapped[list["KnowledgeTool"]] = relationship(
        "KnowledgeTool",
        back_populates="provider",
        cascade="all, delete-orphan",
    )


class KnowledgeTool(IdPrimaryKeyMixin, TimestampMixin, AuditMixin, Base):
    """暴露给 LLM 的知识库检索工具，绑定到一个 Provider。"""

    __tablename__ = "knowledge_tools"

    name: Mapped[str] = Column(String(128), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = Column(Text, nullable=True)
    provider_id: Mapped[int] = Column(
        Integer, ForeignKey("knowledge_providers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # {"max_results": 5, "score_threshold": 0.5}
    parameters = Column(JSONBCompat(), nullable=True)
    keywords = Column(JSONBCompat(), nullable=True)
    priority: Mapped[int] = Column(Integer, nullable=False, default=0, server_default=text("0"))
    enabled: Mapped[bool] = Column(Boolean, nullable=False, default=True, server_default=text("true"))

    provider: Mapped[KnowledgeProvider] = relationship("KnowledgeProvider", back_populates="tools")


__all__ = [
    "HEALTH_HEALTHY",
    "HEALTH_UNHEALTHY",
    "HEALTH_UNKNOWN",
    "KnowledgeProvider",
    "KnowledgeTool",
    "PROVIDER_CLOUDFLARE_AUTORAG",
    "PROVIDER_COZE",
]
