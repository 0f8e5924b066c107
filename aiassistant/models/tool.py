from __future__ import annotations

from sqlalchemy import Boolean, Column, Integer, String, Text, text
from sqlalchemy.orm import Mapped

from aiassistant.db.types import JSONBCompat

from .base import AuditMixin, Base, IdPrimaryKeyMixin, TimestampMixin

IMPL_NATIVE = "native"
IMPL_API = "api"
IMPL_MCP = "mcp"
IMPL_KNOWLEDGE = "knowledge"
IMPLEMENTATION_TYPES = (IMPL_NATIVE, IMPL_API, IMPL_MCP, IMPL_KNOWLEDGE)

RISK_LOW = "low"
RISK_MEDIUM = "medium"
RISK_HIGH = "high"
RISK_LEVELS = (RISK_LOW, RISK_MEDIUM, RISK_HIGH)


class AITool(IdPrimaryKeyMixin, TimestampMixin, AuditMixin, Base):
    """
    LLM 可调用的工具。description 就是模型决定是否调用时看到的文本；
    按 implementation_type 使用不同的配置列。
    """

    __tablename__ = "ai_tools"

    name: Mapped[str] = Column(String(128), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = Column(Text, nullable=True)
    implementation_type: Mapped[str] = Column(String(32), nullable=False)

    # api
    method: Mapped[str | None] = Column(String(16), nullable=True)
    url_path: Mapped[str | None] = Column(String(512), nullable=True)
    response_mapping = Column(JSONBCompat(), nullable=True)

    # mcp
    mcp_server_id: Mapped[int | None] = Column(Integer, nullable=True, index=True)
    mcp_tool_name: Mapped[str | None] = Column(String(128), nullable=True)

    # native
    native_handler: Mapped[str | None] = Column(String(128), nullable=True)

    # knowledge
    knowledge_provider_id: Mapped[int | None] = Column(Integer, nullable=True, index=True)

    parameter_schema = Column(JSONBCompat(), nullable=True)
    risk_level: Mapped[str] = Column(
        String(16), nullable=False, default=RISK_LOW, server_default=text("'low'")
    )
    enabled: Mapped[bool] = Column(Boolean, nullable=False, default=True, server_default=text("true"))


__all__ = [
    "AITool",
    "IMPLEMENTATION_TYPES",
    "IMPL_API",
    "IMPL_KNOWLEDGE",
    "IMPL_MCP",
    "IMPL_NATIVE",
    "RISK_HIGH",
    "RISK_LEVELS",
    "RISK_LOW",
    "RISK_MEDIUM",
]
