from __future__ import annotations

import datetime as dt
from typing import Callable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from aiassistant.logging_config import logger
from aiassistant.models import AISessionArchive
from aiassistant.models.session_archive import ARCHIVE_REASON_AUTO_EXPIRED

from .session_manager import SessionManager, SessionNotFoundError, dump_message


class SessionArchiveServiceError(RuntimeError):
    """Base error for archive operations."""


def _from_epoch(value: int) -> dt.datetime | None:
    if not value:
        return None
    return dt.datetime.fromtimestamp(value, tz=dt.timezone.utc)


def _persist(session: Session, archive: AISessionArchive) -> AISessionArchive:
    session.add(archive)
    session.commit()
    session.refresh(archive)
    return archive


async def archive_session(
    session: Session,
    session_manager: SessionManager,
    session_id: str,
    reason: str,
    archived_by: str | None = None,
) -> AISessionArchive:
    """
    把 Redis 中的会话快照写入 ai_session_archives，然后删除活动会话。

    Raises:
        SessionNotFoundError: 会话不存在
    """
    meta = await session_manager.get(session_id)
    messages = await session_manager.get_messages(session_id)
    timestamps = [m.timestamp for m in messages if m.timestamp]
    trace_ids = sorted({m.trace_id for m in messages if m.trace_id})

    archive = AISessionArchive(
        session_id=session_id,
        user_id=meta.user_id,
        mode=meta.mode,
        message_count=len(messages),
        first_message_at=_from_epoch(min(timestamps)) if timestamps else None,
        last_message_at=_from_epoch(max(timestamps)) if timestamps else None,
        messages=[dump_message(m) for m in messages],
        trace_ids=trace_ids,
        archived_by=archived_by,
        archive_reason=reason,
    )
    archive = _persist(session, archive)
    await session_manager.delete(session_id)
    logger.info(
        "session %s archived (reason=%s, messages=%d, by=%s)",
        session_id,
        reason,
        len(messages),
        archived_by or "-",
    )
    return archive


async def archive_inactive_sessions(
    session_factory: Callable[[], Session],
    session_manager: SessionManager,
    threshold_seconds: int,
) -> int:
    archived = 0
    for session_id in await session_manager.get_inactive(threshold_seconds):
        with session_factory() as db:
            try:
                await archive_session(db, session_manager, session_id, ARCHIVE_REASON_AUTO_EXPIRED, "system")
            except SessionNotFoundError:
                # 元数据已过期，只清理索引
                await session_manager.forget(session_id)
                continue
        archived += 1
    return archived


def list_archives(
    session: Session,
    *,
    user_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[AISessionArchive], int]:
    stmt = select(AISessionArchive)
    count_stmt = select(func.count()).select_from(AISessionArchive)
    if user_id:
        stmt = stmt.where(AISessionArchive.user_id == user_id)
        count_stmt = count_stmt.where(AISessionArchive.user_id == user_id)
    stmt = stmt.order_by(AISessionArchive.archived_at.desc(), AISessionArchive.id.desc()).offset(offset).limit(limit)
    return list(session.execute(stmt).scalars().all()), int(session.execute(count_stmt).scalar() or 0)


def get_archive(session: Session, archive_id: int) -> AISessionArchive:
    archive = session.get(AISessionArchive, archive_id)
    if archive is None:
        raise SessionArchiveServiceError(f"archive not found: {archive_id}")
    return archive


__all__ = [
    "SessionArchiveServiceError",
    "archive_inactive_sessions",
    "archive_session",
    "get_archive",
    "list_archives",
]
