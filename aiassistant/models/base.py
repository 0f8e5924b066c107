from __future__ import annotations

import datetime as dt

from sqlalchemy import Column, DateTime, Integer, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def to_epoch(value: dt.datetime | None) -> float:
    """
    SQLite 读回的 datetime 不带时区，统一按 UTC 处理。
    """
    if value is None:
        return 0.0
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value.timestamp()


class Base(DeclarativeBase):
    pass


class IdPrimaryKeyMixin:
    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=True)


class TimestampMixin:
    created_at: Mapped[dt.datetime] = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[dt.datetime] = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        index=True,
    )


class AuditMixin:
    created_by: Mapped[str | None] = Column(String(64), nullable=True)
    updated_by: Mapped[str | None] = Column(String(64), nullable=True)


__all__ = ["AuditMixin", "Base", "IdPrimaryKeyMixin", "TimestampMixin", "to_epoch", "utcnow"]
