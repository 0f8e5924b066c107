from __future__ import annotations

import datetime as dt

from sqlalchemy import Boolean, Column, DateTime, Integer, SmallInteger, String, Text, text
from sqlalchemy.orm import Mapped

from aiassistant.db.types import JSONBCompat

from .base import AuditMixin, Base, IdPrimaryKeyMixin, TimestampMixin

SERVER_TYPE_HTTP = "http"
SERVER_TYPE_SSE = "sse"
SUPPORTED_SERVER_TYPES = (SERVER_TYPE_HTTP, SERVER_TYPE_SSE)


class MCPServer(IdPrimaryKeyMixin, TimestampMixin, AuditMixin, Base):
    """远程工具服务（JSON-RPC 2.0 over HTTP）。"""

    __tablename__ = "mcp_servers"

    name: Mapped[str] = Column(String(128), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = Column(Text, nullable=True)
    server_type: Mapped[str] = Column(
        String(16), nullable=False, default=SERVER_TYPE_HTTP, server_default=text("'http'")
    )
    endpoint: Mapped[str] = Column(String(512), nullable=False)
    health_check_url: Mapped[str | None] = Column(String(512), nullable=True)
    health_check_interval: Mapped[int] = Column(
        Integer, nullable=False, default=60, server_default=text("60")
    )
    timeout_seconds: Mapped[int] = Column(Integer, nullable=False, default=30, server_default=text("30"))
    allowed_envs = Column(JSONBCompat(), nullable=True)
    allowed_prefixes = Column(JSONBCompat(), nullable=True)
    allowed_ips = Column(JSONBCompat(), nullable=True)
    enabled: Mapped[bool] = Column(Boolean, nullable=False, default=True, server_default=text("true"))
    health_status: Mapped[int] = Column(SmallInteger, nullable=False, default=0, server_default=text("0"))
    last_check_time: Mapped[dt.datetime | None] = Column(DateTime(timezone=True), nullable=True)
    last_check_error: Mapped[str | None] = Column(Text, nullable=True)


class MCPTemplate(IdPrimaryKeyMixin, TimestampMixin, AuditMixin, Base):
    """远程工具服务的预置模板，管理员可一键生成 MCPServer。"""

    __tablename__ = "mcp_templates"

    name: Mapped[str] = Column(String(128), unique=True, nullable=False)
    description: Mapped[str | None] = Column(Text, nullable=True)
    server_config = Column(JSONBCompat(), nullable=True)
    # k8s / db / monitor / custom
    category: Mapped[str] = Column(String(32), nullable=False, default="custom", server_default=text("'custom'"))
    is_default: Mapped[bool] = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    is_public: Mapped[bool] = Column(Boolean, nullable=False, default=True, server_default=text("true"))


__all__ = ["MCPServer", "MCPTemplate", "SERVER_TYPE_HTTP", "SERVER_TYPE_SSE", "SUPPORTED_SERVER_TYPES"]
