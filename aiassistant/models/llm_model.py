from __future__ import annotations

from sqlalchemy import Boolean, Column, Float, Integer, String, text
from sqlalchemy.orm import Mapped

from .base import AuditMixin, Base, IdPrimaryKeyMixin, TimestampMixin


class AILLMModel(IdPrimaryKeyMixin, TimestampMixin, AuditMixin, Base):
    """可选的 LLM 接入配置；is_default 的那一行作为对话模型。"""

    __tablename__ = "ai_llm_models"

    name: Mapped[str] = Column(String(128), unique=True, nullable=False)
    model_id: Mapped[str] = Column(String(128), nullable=False)
    # openai / azure / gemini ...（均按 OpenAI 兼容协议调用）
    provider: Mapped[str] = Column(String(32), nullable=False, default="openai", server_default=text("'openai'"))
    api_key: Mapped[str | None] = Column(String(512), nullable=True)
    base_url: Mapped[str | None] = Column(String(512), nullable=True)
    temperature: Mapped[float] = Column(Float, nullable=False, default=0.7, server_default=text("0.7"))
    max_tokens: Mapped[int] = Column(Integer, nullable=False, default=4096, server_default=text("4096"))
    timeout: Mapped[int] = Column(Integer, nullable=False, default=60, server_default=text("60"))
    is_default: Mapped[bool] = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    enabled: Mapped[bool] = Column(Boolean, nullable=False, default=True, server_default=text("true"))


__all__ = ["AILLMModel"]
