from __future__ import annotations

import fnmatch
import json
import time
from typing import Any, AsyncIterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from aiassistant.db import get_db_session
from aiassistant.deps import get_db
from aiassistant.llm.client import (
    ChatCompletionRequest,
    ChatCompletionResponse,
    Choice,
    LLMMessage,
    StreamDelta,
    ToolCallFunction,
    ToolCallPayload,
    Usage,
)
from aiassistant.models import Base
from aiassistant.services.agent_registry import seed_defaults


def create_inmemory_session_factory() -> sessionmaker[Session]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        future=True,
        expire_on_commit=False,
    )


def install_inmemory_db(app) -> sessionmaker[Session]:
    """
    Attach an in-memory SQLite database to the FastAPI app and seed the system agents.
    """

    SessionLocal = create_inmemory_session_factory()

    def override_get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_db_session] = override_get_db

    with SessionLocal() as session:
        seed_defaults(session)
        session.commit()

    return SessionLocal


def user_headers(user_id: str = "u1") -> dict[str, str]:
    return {"X-User-Id": user_id}


class _Pipeline:
    """按顺序缓存命令，execute() 时依次执行。"""

    def __init__(self, redis: "InMemoryRedis") -> None:
        self._redis = redis
        self._commands: list[tuple[str, tuple[Any, ...]]] = []

    def hincrby(self, key: str, field: str, amount: int = 1) -> "_Pipeline":
        self._commands.append(("hincrby", (key, field, amount)))
        return self

    def hincrbyfloat(self, key: str, field: str, amount: float = 1.0) -> "_Pipeline":
        self._commands.append(("hincrbyfloat", (key, field, amount)))
        return self

    def expire(self, key: str, seconds: int) -> "_Pipeline":
        self._commands.append(("expire", (key, seconds)))
        return self

    async def execute(self) -> list[Any]:
        results = []
        for name, args in self._commands:
            results.append(await getattr(self._redis, name)(*args))
        self._commands = []
        return results


class InMemoryRedis:
    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._sets: dict[str, set[str]] = {}
        self._zsets: dict[str, dict[str, float]] = {}
        self._lists: dict[str, list[str]] = {}
        self._hashes: dict[str, dict[str, str]] = {}
        self._expiry: dict[str, float] = {}

    # --- keys ---

    def _stores(self) -> tuple[dict, ...]:
        return (self._data, self._sets, self._zsets, self._lists, self._hashes)

    def _purge_expired(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and deadline <= time.time():
            self._expiry.pop(key, None)
            for store in self._stores():
                store.pop(key, None)

    def _all_keys(self) -> list[str]:
        keys: set[str] = set()
        for store in self._stores():
            keys.update(store.keys())
        for key in list(keys):
            self._purge_expired(key)
        return sorted(k for k in keys if any(k in store for store in self._stores()))

    async def exists(self, *keys: str) -> int:
        count = 0
        for key in keys:
            self._purge_expired(key)
            if any(key in store for store in self._stores()):
                count += 1
        return count

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            self._purge_expired(key)
            found = False
            for store in self._stores():
                if key in store:
                    store.pop(key, None)
                    found = True
            self._expiry.pop(key, None)
            if found:
                removed += 1
        return removed

    async def expire(self, key: str, seconds: int) -> bool:
        if not await self.exists(key):
            return False
        self._expiry[key] = time.time() + int(seconds)
        return True

    async def ttl(self, key: str) -> int:
        if not await self.exists(key):
            return -2
        deadline = self._expiry.get(key)
        if deadline is None:
            return -1
        return max(0, int(round(deadline - time.time())))

    async def scan(self, cursor: int = 0, match: str | None = None, count: int | None = None):
        keys = self._all_keys()
        if match:
            keys = [k for k in keys if fnmatch.fnmatch(k, match)]
        return 0, keys

    async def keys(self, pattern: str = "*") -> list[str]:
        return [k for k in self._all_keys() if fnmatch.fnmatch(k, pattern)]

    # --- strings ---

    async def get(self, key: str):
        self._purge_expired(key)
        return self._data.get(key)

    async def set(self, key: str, value: Any, ex: int | None = None, nx: bool = False):
        self._purge_expired(key)
        if nx and key in self._data:
            return None
        self._data[key] = value if isinstance(value, str) else str(value)
        if ex is not None:
            self._expiry[key] = time.time() + int(ex)
        else:
            self._expiry.pop(key, None)
        return True

    async def incr(self, key: str) -> int:
        self._purge_expired(key)
        current = int(self._data.get(key, "0")) + 1
        self._data[key] = str(current)
        return current

    # --- sets ---

    async def sadd(self, key: str, *members: str) -> int:
        self._purge_expired(key)
        s = self._sets.setdefault(key, set())
        before = len(s)
        s.update(str(m) for m in members)
        return len(s) - before

    async def srem(self, key: str, *members: str) -> int:
        s = self._sets.get(key, set())
        before = len(s)
        for m in members:
            s.discard(m)
        if s:
            self._sets[key] = s
        else:
            self._sets.pop(key, None)
        return before - len(s)

    async def smembers(self, key: str) -> set[str]:
        self._purge_expired(key)
        return set(self._sets.get(key, set()))

    # --- sorted sets ---

    async def zadd(self, key: str, mapping: dict[str, float], nx: bool = False) -> int:
        z = self._zsets.setdefault(key, {})
        added = 0
        for member, score in mapping.items():
            if nx and member in z:
                continue
            if member not in z:
                added += 1
            z[member] = float(score)
        return added

    async def zrem(self, key: str, *members: str) -> int:
        z = self._zsets.get(key, {})
        removed = 0
        for member in members:
            if z.pop(member, None) is not None:
                removed += 1
        return removed

    async def zcard(self, key: str) -> int:
        return len(self._zsets.get(key, {}))

    async def zrangebyscore(self, key: str, min: float, max: float) -> list[str]:
        z = self._zsets.get(key, {})
        items = sorted(
            ((member, score) for member, score in z.items() if float(min) <= score <= float(max)),
            key=lambda item: (item[1], item[0]),
        )
        return [member for member, _ in items]

    # --- lists ---

    async def rpush(self, key: str, *values: str) -> int:
        self._purge_expired(key)
        lst = self._lists.setdefault(key, [])
        lst.extend(str(v) for v in values)
        return len(lst)

    async def llen(self, key: str) -> int:
        self._purge_expired(key)
        return len(self._lists.get(key, []))

    @staticmethod
    def _normalize_range(n: int, start: int, stop: int) -> tuple[int, int]:
        s = n + start if start < 0 else start
        e = n + stop if stop < 0 else stop
        return max(s, 0), min(e, n - 1)

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        self._purge_expired(key)
        lst = self._lists.get(key, [])
        if not lst:
            return []
        s, e = self._normalize_range(len(lst), int(start), int(stop))
        if s > e:
            return []
        return list(lst[s : e + 1])

    async def ltrim(self, key: str, start: int, stop: int) -> bool:
        lst = self._lists.get(key, [])
        if not lst:
            return True
        s, e = self._normalize_range(len(lst), int(start), int(stop))
        self._lists[key] = lst[s : e + 1] if s <= e else []
        return True

    # --- hashes ---

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        self._purge_expired(key)
        h = self._hashes.setdefault(key, {})
        value = int(float(h.get(field, "0"))) + int(amount)
        h[field] = str(value)
        return value

    async def hincrbyfloat(self, key: str, field: str, amount: float = 1.0) -> float:
        self._purge_expired(key)
        h = self._hashes.setdefault(key, {})
        value = float(h.get(field, "0")) + float(amount)
        h[field] = repr(value)
        return value

    async def hgetall(self, key: str) -> dict[str, str]:
        self._purge_expired(key)
        return dict(self._hashes.get(key, {}))

    def pipeline(self, transaction: bool = True) -> _Pipeline:
        return _Pipeline(self)


# ---- fake LLM ----


def text_response(content: str, *, prompt_tokens: int = 10, completion_tokens: int = 5) -> ChatCompletionResponse:
    return ChatCompletionResponse(
        id="chatcmpl-test",
        model="fake-model",
        choices=[Choice(message=LLMMessage(role="assistant", content=content), finish_reason="stop")],
        usage=Usage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        ),
    )


def tool_call_response(*calls: tuple[str, Any]) -> ChatCompletionResponse:
    """calls: (工具名, dict 参数或原始 arguments 字符串)。"""
    payloads = []
    for index, (name, args) in enumerate(calls):
        arguments = args if isinstance(args, str) else json.dumps(args, ensure_ascii=False)
        payloads.append(
            ToolCallPayload(
                id=f"call_{index}",
                function=ToolCallFunction(name=name, arguments=arguments),
            )
        )
    return ChatCompletionResponse(
        id="chatcmpl-test",
        model="fake-model",
        choices=[
            Choice(
                message=LLMMessage(role="assistant", content=None, tool_calls=payloads),
                finish_reason="tool_calls",
            )
        ],
        usage=Usage(prompt_tokens=20, completion_tokens=8, total_tokens=28),
    )


class FakeLLM:
    """按顺序返回预置响应；响应为异常实例时抛出。"""

    def __init__(self, *responses: ChatCompletionResponse | Exception, model: str = "fake-model") -> None:
        self.model = model
        self.responses: list[ChatCompletionResponse | Exception] = list(responses)
        self.requests: list[ChatCompletionRequest] = []
        self.closed = False

    def queue(self, *responses: ChatCompletionResponse | Exception) -> None:
        self.responses.extend(responses)

    async def chat_completion(self, request: ChatCompletionRequest) -> ChatCompletionResponse:
        self.requests.append(request)
        if not self.responses:
            return text_response("")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def stream_completion(self, request: ChatCompletionRequest) -> AsyncIterator[StreamDelta]:
        raise NotImplementedError

    async def aclose(self) -> None:
        self.closed = True


__all__ = [
    "FakeLLM",
    "InMemoryRedis",
    "create_inmemory_session_factory",
    "install_inmemory_db",
    "text_response",
    "tool_call_response",
    "user_headers",
]
