"""
Knowledge provider registry.

Loads enabled `knowledge_providers` / `knowledge_tools` rows, builds one
client per provider and exposes the knowledge tools in function-calling
form. Providers without a declared tool get an auto-created
``search_<provider name>`` tool so every provider stays reachable.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from aiassistant.llm.client import ToolDefinition, ToolFunction
from aiassistant.logging_config import logger
from aiassistant.models import KnowledgeProvider, KnowledgeTool
from aiassistant.models.knowledge import PROVIDER_CLOUDFLARE_AUTORAG, PROVIDER_COZE
from aiassistant.observability.metrics import METRICS, STATUS_ERROR, STATUS_SUCCESS
from aiassistant.services.config_loader import expand_env_in_value

from .base import KnowledgeProviderClient, KnowledgeProviderError, QueryRequest, QueryResponse
from .cloudflare_rag import CloudflareRAGConfig, CloudflareRAGProvider
from .coze import CozeConfig, CozeProvider

QUERY_PARAMETER_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "query": {
            "type": "string",
            "description": "用户的原始问题，原样传入，不要提取关键词或改写",
        }
    },
    "required": ["query"],
}


@dataclass(frozen=True)
class RegisteredKnowledgeTool:
    name: str
    description: str
    provider_id: int
    parameters: dict[str, Any] = field(default_factory=dict)
    keywords: list[str] = field(default_factory=list)
    enabled: bool = True
    priority: int = 0


def default_tool_description(row: KnowledgeProvider) -> str:
    if row.description:
        return row.description
    if row.provider_type == PROVIDER_CLOUDFLARE_AUTORAG:
        return "搜索内部知识库获取相关信息。query 参数填写用户的原始问题。"
    if row.provider_type == PROVIDER_COZE:
        return "搜索知识库获取文档信息。query 参数填写用户的原始问题。"
    return "搜索知识库获取相关信息"


def create_provider(
    row: KnowledgeProvider,
    *,
    client: httpx.AsyncClient | None = None,
) -> KnowledgeProviderClient:
    """按 provider_type 创建客户端；config 中的 ${ENV} 在此展开。"""
    config = expand_env_in_value(row.config) or {}
    try:
        if row.provider_type == PROVIDER_CLOUDFLARE_AUTORAG:
            return CloudflareRAGProvider(row.name, CloudflareRAGConfig.model_validate(config), client=client)
        if row.provider_type == PROVIDER_COZE:
            return CozeProvider(row.name, CozeConfig.model_validate(config), client=client)
    except ValidationError as exc:
        raise KnowledgeProviderError(f"invalid {row.provider_type} config for {row.name}: {exc}") from exc
    raise KnowledgeProviderError(f"unsupported provider type: {row.provider_type}")


class KnowledgeRegistry:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._http_client = http_client
        self._lock = threading.RLock()
        self._tools: dict[str, RegisteredKnowledgeTool] = {}
        self._providers: dict[int, KnowledgeProviderClient] = {}

    def load(self) -> None:
        tools: dict[str, RegisteredKnowledgeTool] = {}
        providers: dict[int, KnowledgeProviderClient] = {}
        provider_rows: dict[int, KnowledgeProvider] = {}

        with self._session_factory() as session:
            rows = session.execute(
                select(KnowledgeProvider).where(KnowledgeProvider.enabled.is_(True)).order_by(KnowledgeProvider.id)
            ).scalars().all()
            for row in rows:
                try:
                    providers[row.id] = create_provider(row, client=self._http_client)
                except KnowledgeProviderError as exc:
                    logger.error("failed to create knowledge provider %s: %s", row.name, exc)
                    continue
                provider_rows[row.id] = row
                logger.info("loaded knowledge provider: %s (type=%s)", row.name, row.provider_type)

            tool_rows = session.execute(
                select(KnowledgeTool).where(KnowledgeTool.enabled.is_(True)).order_by(KnowledgeTool.id)
            ).scalars().all()

            providers_with_tools: set[int] = set()
            for row in tool_rows:
                if row.provider_id not in providers:
                    logger.warning(
                        "knowledge tool %s references unavailable provider %s, skipped",
                        row.name,
                        row.provider_id,
                    )
                    continue
                tools[row.name] = RegisteredKnowledgeTool(
                    name=row.name,
                    description=row.description or "",
                    provider_id=row.provider_id,
                    parameters=dict(row.parameters or {}),
                    keywords=list(row.keywords or []),
                    priority=row.priority,
                )
                providers_with_tools.add(row.provider_id)

            for provider_id, provider_row in provider_rows.items():
                if provider_id in providers_with_tools:
                    continue
                name = f"search_{provider_row.name}"
                tools[name] = RegisteredKnowledgeTool(
                    name=name,
                    description=default_tool_description(provider_row),
                    provider_id=provider_id,
                )
                logger.info("auto-created default knowledge tool: %s", name)

        with self._lock:
            self._tools = tools
            self._providers = providers
        logger.info("knowledge registry loaded: %d providers, %d tools", len(providers), len(tools))

    # ---- queries ----

    def tool_definitions(self) -> list[ToolDefinition]:
        with self._lock:
            tools = sorted(self._tools.values(), key=lambda t: (-t.priority, t.name))
        return [
            ToolDefinition(
                function=ToolFunction(
                    name=tool.name,
                    description=tool.description,
                    parameters=QUERY_PARAMETER_SCHEMA,
                )
            )
            for tool in tools
            if tool.enabled
        ]

    def is_knowledge_tool(self, name: str) -> bool:
        with self._lock:
            return name in self._tools

    def get_tool(self, name: str) -> RegisteredKnowledgeTool | None:
        with self._lock:
            return self._tools.get(name)

    def get_provider(self, provider_id: int) -> KnowledgeProviderClient | None:
        with self._lock:
            return self._providers.get(provider_id)

    def providers(self) -> dict[int, KnowledgeProviderClient]:
        with self._lock:
            return dict(self._providers)

    def tool_count(self) -> int:
        with self._lock:
            return sum(1 for t in self._tools.values() if t.enabled)

    def provider_count(self) -> int:
        with self._lock:
            return len(self._providers)

    def register_tool(self, tool: RegisteredKnowledgeTool) -> None:
        with self._lock:
            tools = dict(self._tools)
            tools[tool.name] = tool
            self._tools = tools

    def unregister_tool(self, name: str) -> None:
        with self._lock:
            tools = dict(self._tools)
            tools.pop(name, None)
            self._tools = tools

    # ---- execution ----

    async def query_provider(
        self,
        provider_id: int,
        args: dict[str, Any],
        *,
        parameters: dict[str, Any] | None = None,
        user_id: str = "",
        session_id: str = "",
    ) -> QueryResponse:
        provider = self.get_provider(provider_id)
        if provider is None:
            raise KnowledgeProviderError(f"knowledge provider not found: {provider_id}")

        parameters = parameters or {}
        request = QueryRequest(
            query=str(args.get("query") or ""),
            conversation_id=str(args.get("conversation_id") or ""),
            user_id=user_id,
            session_id=session_id,
            max_results=int(parameters.get("max_results") or 0),
            score_threshold=float(parameters.get("score_threshold") or 0.0),
            bot_id=str(parameters.get("bot_id") or ""),
        )
        try:
            response = await provider.query(request)
        except Exception:
            METRICS.record_knowledge_query(provider.name, STATUS_ERROR)
            raise
        METRICS.record_knowledge_query(provider.name, STATUS_SUCCESS if response.ok else STATUS_ERROR)
        return response

    async def execute(
        self,
        tool_name: str,
        args: dict[str, Any],
        *,
        user_id: str = "",
        session_id: str = "",
    ) -> QueryResponse:
        tool = self.get_tool(tool_name)
        if tool is None:
            raise KnowledgeProviderError(f"knowledge tool not found: {tool_name}")
        return await self.query_provider(
            tool.provider_id,
            args,
            parameters=tool.parameters,
            user_id=user_id,
            session_id=session_id,
        )

    async def check_health(self, provider_id: int) -> str | None:
        """返回 None 表示健康，否则为错误信息。"""
        provider = self.get_provider(provider_id)
        if provider is None:
            return f"knowledge provider not loaded: {provider_id}"
        try:
            await provider.health()
        except Exception as exc:
            logger.warning("knowledge provider %s health check failed: %s", provider.name, exc)
            return str(exc) or exc.__class__.__name__
        return None

    async def check_all_health(self) -> dict[int, str | None]:
        results: dict[int, str | None] = {}
        for provider_id in self.providers():
            results[provider_id] = await self.check_health(provider_id)
        return results


__all__ = [
    "KnowledgeRegistry",
    "QUERY_PARAMETER_SCHEMA",
    "RegisteredKnowledgeTool",
    "create_provider",
    "default_tool_description",
]
