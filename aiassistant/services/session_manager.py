"""
Redis-backed chat sessions.

Key layout (prefix defaults to ``ai_assistant:``):

- ``<prefix>session:<id>:meta``      JSON metadata, TTL refreshed on write
- ``<prefix>session:<id>:messages``  RPUSH list of JSON messages, trimmed to max
- ``<prefix>user:<uid>:sessions``    set of the user's session ids
- ``<prefix>active_sessions``        zset scored by last-active unix seconds
"""

from __future__ import annotations

import json
import threading
import time
import uuid
from typing import Any, Callable

from pydantic import BaseModel, Field, ValidationError
from redis.asyncio import Redis

from aiassistant.errors import AssistantError, ErrorCode
from aiassistant.logging_config import logger
from aiassistant.settings import settings

from .config_loader import SessionConfig

MODE_CHAT = "chat"
MODE_KNOWLEDGE = "knowledge"

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_SYSTEM = "system"
ROLE_TOOL = "tool"


class SessionNotFoundError(AssistantError):
    def __init__(self, session_id: str) -> None:
        super().__init__(
            ErrorCode.SESSION_NOT_FOUND,
            f"session not found: {session_id}",
            details={"session_id": session_id},
        )
        self.session_id = session_id


class ChatSession(BaseModel):
    id: str
    user_id: str
    mode: str = MODE_CHAT
    created_at: int
    last_active_at: int
    message_count: int = 0


class ChatMessage(BaseModel):
    id: str = ""
    role: str
    content: str = ""
    timestamp: int = 0
    trace_id: str | None = None
    # assistant 消息上 LLM 返回的 tool_calls；tool 消息上对应的 tool_call_id
    tool_calls: list[dict[str, Any]] | None = None
    tool_call_id: str | None = None
    # 结构化的工具执行信息，前端展示用
    tool_call: dict[str, Any] | None = None


class SessionStats(BaseModel):
    active_count: int = 0
    per_mode_count: dict[str, int] = Field(default_factory=dict)
    last24h_created: int = 0
    last24h_active: int = 0
    storage_estimate: str = ""


class SessionManager:
    def __init__(
        self,
        redis: Redis,
        config: SessionConfig | None = None,
        *,
        prefix: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis
        self._config = config or SessionConfig()
        self._prefix = settings.ai_assistant_redis_prefix if prefix is None else prefix
        self._clock = clock
        self._lock = threading.RLock()

    @property
    def config(self) -> SessionConfig:
        with self._lock:
            return self._config

    def update_config(self, config: SessionConfig) -> None:
        with self._lock:
            self._config = config

    # ---- keys ----

    def meta_key(self, session_id: str) -> str:
        return f"{self._prefix}session:{session_id}:meta"

    def messages_key(self, session_id: str) -> str:
        return f"{self._prefix}session:{session_id}:messages"

    def user_sessions_key(self, user_id: str) -> str:
        return f"{self._prefix}user:{user_id}:sessions"

    def active_sessions_key(self) -> str:
        return f"{self._prefix}active_sessions"

    def _now(self) -> int:
        return int(self._clock())

    async def _save_meta(self, session: ChatSession) -> None:
        await self._redis.set(
            self.meta_key(session.id),
            session.model_dump_json(),
            ex=self.config.ttl,
        )

    # ---- sessions ----

    async def create(self, user_id: str, mode: str = MODE_CHAT) -> ChatSession:
        now = self._now()
        session = ChatSession(
            id=f"ses_{uuid.uuid4()}",
            user_id=str(user_id),
            mode=mode or MODE_CHAT,
            created_at=now,
            last_active_at=now,
        )
        await self._save_meta(session)

        user_key = self.user_sessions_key(session.user_id)
        await self._redis.sadd(user_key, session.id)
        await self._redis.expire(user_key, self.config.ttl)
        await self._redis.zadd(self.active_sessions_key(), {session.id: now})

        logger.info("session created: %s for user %s", session.id, session.user_id)
        return session

    async def get(self, session_id: str) -> ChatSession:
        raw = await self._redis.get(self.meta_key(session_id))
        if raw is None:
            raise SessionNotFoundError(session_id)
        try:
            return ChatSession.model_validate_json(raw)
        except ValidationError as exc:
            raise AssistantError(
                ErrorCode.INTERNAL_ERROR, f"failed to parse session {session_id}: {exc}"
            ) from exc

    async def exists(self, session_id: str) -> bool:
        return bool(await self._redis.exists(self.meta_key(session_id)))

    async def update_last_active(self, session_id: str) -> ChatSession:
        session = await self.get(session_id)
        now = self._now()
        session.last_active_at = max(now, session.last_active_at)
        await self._save_meta(session)
        await self._redis.expire(self.messages_key(session_id), self.config.ttl)
        await self._redis.zadd(self.active_sessions_key(), {session_id: session.last_active_at})
        return session

    async def delete(self, session_id: str) -> None:
        session = await self.get(session_id)
        await self._redis.delete(self.meta_key(session_id), self.messages_key(session_id))
        await self._redis.srem(self.user_sessions_key(session.user_id), session_id)
        await self._redis.zrem(self.active_sessions_key(), session_id)
        logger.info("session deleted: %s", session_id)

    async def check_owner(self, session_id: str, user_id: str) -> bool:
        session = await self.get(session_id)
        return session.user_id == str(user_id)

    async def get_user_sessions(self, user_id: str) -> list[str]:
        members = await self._redis.smembers(self.user_sessions_key(str(user_id)))
        return sorted(members or [])

    # ---- messages ----

    async def add_message(self, session_id: str, message: ChatMessage) -> ChatMessage:
        """
        追加一条消息；超出上限时从头部裁剪，时间戳不早于会话最后活跃时间。
        """
        session = await self.get(session_id)

        if not message.id:
            message.id = str(uuid.uuid4())
        now = self._now()
        if not message.timestamp:
            message.timestamp = now
        message.timestamp = max(message.timestamp, session.last_active_at)

        key = self.messages_key(session_id)
        ttl = self.config.ttl
        await self._redis.rpush(key, message.model_dump_json(exclude_none=True))
        await self._redis.expire(key, ttl)

        max_messages = self.config.max_messages_per_session
        if max_messages > 0:
            # 单条 LTRIM 按尾部截断，与并发 RPUSH 不存在竞态
            await self._redis.ltrim(key, -max_messages, -1)

        session.message_count += 1
        session.last_active_at = max(now, message.timestamp)
        await self._save_meta(session)
        await self._redis.zadd(self.active_sessions_key(), {session_id: session.last_active_at})
        return message

    async def get_messages(self, session_id: str, limit: int = 0) -> list[ChatMessage]:
        """返回最近 limit 条消息（limit<=0 返回全部），按追加顺序。"""
        key = self.messages_key(session_id)
        start = -limit if limit > 0 else 0
        raw_items = await self._redis.lrange(key, start, -1)

        messages: list[ChatMessage] = []
        for raw in raw_items or []:
            try:
                messages.append(ChatMessage.model_validate_json(raw))
            except ValidationError:
                logger.warning("skip malformed message in session %s", session_id)
        return messages

    # ---- stats / maintenance ----

    async def get_stats(self) -> SessionStats:
        active_key = self.active_sessions_key()
        now = self._now()
        active_count = int(await self._redis.zcard(active_key))
        recent = await self._redis.zrangebyscore(active_key, now - 24 * 3600, now)
        return SessionStats(
            active_count=active_count,
            per_mode_count={MODE_CHAT: active_count, MODE_KNOWLEDGE: 0},
            last24h_active=len(recent or []),
            storage_estimate="%d sessions" % active_count,
        )

    async def get_inactive(self, threshold_seconds: int) -> list[str]:
        cutoff = self._now() - int(threshold_seconds)
        return list(await self._redis.zrangebyscore(self.active_sessions_key(), 0, cutoff) or [])

    async def forget(self, session_id: str) -> None:
        """元数据已过期的会话只剩活跃索引，直接移除。"""
        await self._redis.zrem(self.active_sessions_key(), session_id)


def message_to_llm(message: ChatMessage) -> dict[str, Any]:
    payload: dict[str, Any] = {"role": message.role, "content": message.content}
    if message.tool_calls:
        payload["tool_calls"] = message.tool_calls
    if message.tool_call_id:
        payload["tool_call_id"] = message.tool_call_id
    return payload


def dump_message(message: ChatMessage) -> dict[str, Any]:
    return json.loads(message.model_dump_json(exclude_none=True))


__all__ = [
    "ChatMessage",
    "ChatSession",
    "MODE_CHAT",
    "MODE_KNOWLEDGE",
    "ROLE_ASSISTANT",
    "ROLE_SYSTEM",
    "ROLE_TOOL",
    "ROLE_USER",
    "SessionManager",
    "SessionNotFoundError",
    "SessionStats",
    "dump_message",
    "message_to_llm",
]
