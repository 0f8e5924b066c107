from __future__ import annotations

from sqlalchemy import Boolean, Column, ForeignKey, Integer, String, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped, relationship

from aiassistant.db.types import JSONBCompat

from .base import AuditMixin, Base, IdPrimaryKeyMixin, TimestampMixin

AGENT_TYPE_SYSTEM = "system"
AGENT_TYPE_EXPERT = "expert"
AGENT_TYPE_KNOWLEDGE = "knowledge"

# 保留的系统 Agent 名称
AGENT_ROUTER = "router"
AGENT_SUMMARY = "summary"
AGENT_KNOWLEDGE = "knowledge"
AGENT_GENERAL = "general"
SYSTEM_AGENT_NAMES = (AGENT_ROUTER, AGENT_SUMMARY, AGENT_KNOWLEDGE, AGENT_GENERAL)


class AIAgent(IdPrimaryKeyMixin, TimestampMixin, AuditMixin, Base):
    """对话 Agent：系统提示词 + 模型参数 + 关键词 + 绑定工具。"""

    __tablename__ = "ai_agents"

    name: Mapped[str] = Column(String(128), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = Column(Text, nullable=True)
    system_prompt: Mapped[str | None] = Column(Text, nullable=True)
    # {"model": "...", "temperature": 0.7, "max_tokens": 2000}
    llm_config = Column("model_config", JSONBCompat(), nullable=True)
    keywords = Column(JSONBCompat(), nullable=True)
    priority: Mapped[int] = Column(Integer, nullable=False, default=0, server_default=text("0"))
    agent_type: Mapped[str] = Column(
        String(32), nullable=False, default=AGENT_TYPE_EXPERT, server_default=text("'expert'")
    )
    enabled: Mapped[bool] = Column(Boolean, nullable=False, default=True, server_default=text("true"))

    tool_links: Mapped[list["AIAgentToolRel"]] = relationship(
        "AIAgentToolRel",
        back_populates="agent",
        cascade="all, delete-orphan",
    )


class AIAgentToolRel(IdPrimaryKeyMixin, Base):
    """Agent 与工具的多对多关联。"""

    __tablename__ = "ai_agent_tools"
    __table_args__ = (UniqueConstraint("agent_id", "tool_id", name="uq_ai_agent_tools_agent_tool"),)

    agent_id: Mapped[int] = Column(
        Integer, ForeignKey("ai_agents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tool_id: Mapped[int] = Column(
        Integer, ForeignKey("ai_tools.id", ondelete="CASCADE"), nullable=False, index=True
    )

    agent: Mapped[AIAgent] = relationship("AIAgent", back_populates="tool_links")
    tool: Mapped["AITool"] = relationship("AITool")


__all__ = [
    "AGENT_GENERAL",
    "AGENT_KNOWLEDGE",
    "AGENT_ROUTER",
    "AGENT_SUMMARY",
    "AGENT_TYPE_EXPERT",
    "AGENT_TYPE_KNOWLEDGE",
    "AGENT_TYPE_SYSTEM",
    "AIAgent",
    "AIAgentToolRel",
    "SYSTEM_AGENT_NAMES",
]
