"""
AI 配置加载器：从 ai_configs 读取 JSON 配置，展开 ${ENV} 后解析并缓存。

后台轮询器每隔固定间隔检查配置表及各注册表的最大 updated_at，
发现更新时清空缓存并通知监听者（Agent / 工具 / 知识库 / MCP 注册表）重新加载。
"""

from __future__ import annotations

import asyncio
import inspect
import json
import os
import re
import threading
import time
from typing import Any, Awaitable, Callable, Union

import anyio
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from aiassistant.errors import AssistantError, ErrorCode
from aiassistant.logging_config import logger
from aiassistant.models import (
    AIAgent,
    AIConfig,
    AILLMModel,
    AIOptimizationConfig,
    AITool,
    KnowledgeProvider,
    KnowledgeTool,
    MCPServer,
)
from aiassistant.models.ai_config import (
    CONFIG_KEY_DEFAULT_MODEL,
    CONFIG_KEY_FILE,
    CONFIG_KEY_KNOWLEDGE,
    CONFIG_KEY_SESSION,
)
from aiassistant.models.base import to_epoch

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")

# 这些表的任意行变化（包括被禁用）都需要触发注册表重载
_WATCHED_REGISTRY_MODELS = (
    AIAgent,
    AITool,
    KnowledgeProvider,
    KnowledgeTool,
    MCPServer,
    AILLMModel,
    AIOptimizationConfig,
)

ReloadListener = Callable[[], Union[None, Awaitable[None]]]


class ConfigParseError(AssistantError):
    def __init__(self, key: str, reason: str) -> None:
        super().__init__(
            ErrorCode.CONFIG_INVALID,
            f"配置 {key} 解析失败: {reason}",
            details={"config_key": key},
        )
        self.key = key


class AIModelConfig(BaseModel):
    provider: str = "openai"
    base_url: str = ""
    api_key: str = ""
    model: str = ""
    temperature: float = 0.7
    max_tokens: int = 0
    timeout: float = 0


class KnowledgeConfig(BaseModel):
    # coze / dify / custom
    type: str = ""
    base_url: str = ""
    api_key: str = ""
    default_bot_id: str = ""


class SessionConfig(BaseModel):
    ttl: int = 604800
    max_messages_per_session: int = 2000
    max_sessions_per_user: int = 50


class FileConfig(BaseModel):
    max_size: int = 104857600
    storage_backend: str = "local"
    storage_path: str = "/tmp/ai_assistant_files"
    ttl: int = 3600
    allowed_types: list[str] = Field(default_factory=list)


def expand_env_vars(text: str) -> str:
    """
    展开 JSON 文本中的 ${NAME}；变量未设置或为空时保留原文。
    """

    def _replace(match: re.Match[str]) -> str:
        value = os.environ.get(match.group(1), "")
        return value if value else match.group(0)

    return _ENV_PATTERN.sub(_replace, text)


def expand_env_in_value(value: Any) -> Any:
    """对已解析的 JSON 结构（如 JSONB 列）做同样的占位符展开。"""
    if value is None:
        return None
    return json.loads(expand_env_vars(json.dumps(value, ensure_ascii=False)))


class ConfigLoader:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._cache: dict[str, Any] = {}
        self._lock = threading.RLock()
        self._listeners: list[ReloadListener] = []
        self._last_reload = clock()

    @property
    def last_reload(self) -> float:
        return self._last_reload

    def _read_raw(self, key: str) -> str | None:
        with self._session_factory() as session:
            stmt = select(AIConfig.config_value).where(
                AIConfig.config_key == key,
                AIConfig.enabled.is_(True),
            )
            return session.execute(stmt).scalar_one_or_none()

    def get(self, key: str) -> Any | None:
        """
        读取并解析一条配置。

        Returns:
            解析后的 JSON；行不存在或值为空时返回 None

        Raises:
            ConfigParseError: JSON 非法
        """
        with self._lock:
            if key in self._cache:
                return self._cache[key]

        raw = self._read_raw(key)
        if raw is None or not raw.strip():
            return None

        try:
            value = json.loads(expand_env_vars(raw))
        except json.JSONDecodeError as exc:
            raise ConfigParseError(key, str(exc)) from exc

        with self._lock:
            self._cache[key] = value
        return value

    def _get_model(self, key: str, model_cls: type[BaseModel]) -> BaseModel | None:
        value = self.get(key)
        if value is None:
            return None
        try:
            return model_cls.model_validate(value)
        except ValidationError as exc:
            raise ConfigParseError(key, str(exc)) from exc

    def get_ai_model_config(self, key: str = CONFIG_KEY_DEFAULT_MODEL) -> AIModelConfig | None:
        return self._get_model(key, AIModelConfig)  # type: ignore[return-value]

    def get_knowledge_config(self) -> KnowledgeConfig | None:
        # 知识库是可选的
        return self._get_model(CONFIG_KEY_KNOWLEDGE, KnowledgeConfig)  # type: ignore[return-value]

    def get_session_config(self) -> SessionConfig:
        try:
            config = self._get_model(CONFIG_KEY_SESSION, SessionConfig)
        except ConfigParseError as exc:
            logger.warning("%s, using session defaults", exc)
            config = None
        return config or SessionConfig()  # type: ignore[return-value]

    def get_file_config(self) -> FileConfig:
        try:
            config = self._get_model(CONFIG_KEY_FILE, FileConfig)
        except ConfigParseError as exc:
            logger.warning("%s, using file defaults", exc)
            config = None
        return config or FileConfig()  # type: ignore[return-value]

    def reload_all(self) -> None:
        with self._lock:
            self._cache = {}
            self._last_reload = self._clock()

    def add_listener(self, listener: ReloadListener) -> None:
        self._listeners.append(listener)

    def latest_update_time(self) -> float:
        """启用的配置行与所有注册表行中最大的 updated_at（epoch 秒）。"""
        latest = 0.0
        with self._session_factory() as session:
            value = session.execute(
                select(func.max(AIConfig.updated_at)).where(AIConfig.enabled.is_(True))
            ).scalar()
            latest = max(latest, to_epoch(value))
            for model in _WATCHED_REGISTRY_MODELS:
                value = session.execute(select(func.max(model.updated_at))).scalar()
                latest = max(latest, to_epoch(value))
        return latest

    async def check_for_updates(self) -> bool:
        latest = await anyio.to_thread.run_sync(self.latest_update_time)
        if latest <= self._last_reload:
            return False
        self.reload_all()
        logger.info("AI config reloaded, latest update: %d", int(latest))
        await self.notify_listeners()
        return True

    async def notify_listeners(self) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener()
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("config reload listener %r failed", listener)

    async def run_poller(self, interval_seconds: float, stop_event: asyncio.Event) -> None:
        logger.info("config poller started (interval=%ss)", interval_seconds)
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
            if stop_event.is_set():
                break
            try:
                await self.check_for_updates()
            except Exception:
                logger.exception("failed to check AI config updates")
        logger.info("config poller stopped")


__all__ = [
    "AIModelConfig",
    "ConfigLoader",
    "ConfigParseError",
    "FileConfig",
    "KnowledgeConfig",
    "SessionConfig",
    "expand_env_in_value",
    "expand_env_vars",
]
