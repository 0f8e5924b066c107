from __future__ import annotations

import datetime as dt

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.orm import Mapped

from aiassistant.db.types import JSONBCompat

from .base import Base, IdPrimaryKeyMixin, utcnow

ARCHIVE_REASON_MANUAL = "manual"
ARCHIVE_REASON_AUTO_EXPIRED = "auto_expired"
ARCHIVE_REASON_USER_DELETED = "user_deleted"


class AISessionArchive(IdPrimaryKeyMixin, Base):
    """归档后的会话快照。"""

    __tablename__ = "ai_session_archives"

    session_id: Mapped[str] = Column(String(64), nullable=False, index=True)
    user_id: Mapped[str] = Column(String(64), nullable=False, index=True)
    mode: Mapped[str | None] = Column(String(32), nullable=True)
    message_count: Mapped[int] = Column(Integer, nullable=False, default=0)
    first_message_at: Mapped[dt.datetime | None] = Column(DateTime(timezone=True), nullable=True)
    last_message_at: Mapped[dt.datetime | None] = Column(DateTime(timezone=True), nullable=True)
    messages = Column(JSONBCompat(), nullable=True)
    trace_ids = Column(JSONBCompat(), nullable=True)
    archived_at: Mapped[dt.datetime] = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    archived_by: Mapped[str | None] = Column(String(64), nullable=True)
    archive_reason: Mapped[str] = Column(String(32), nullable=False, default=ARCHIVE_REASON_MANUAL)


__all__ = [
    "AISessionArchive",
    "ARCHIVE_REASON_AUTO_EXPIRED",
    "ARCHIVE_REASON_MANUAL",
    "ARCHIVE_REASON_USER_DELETED",
]
