from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from aiassistant.errors import AssistantError, ErrorCode
from aiassistant.llm.client import ToolDefinition, ToolFunction
from aiassistant.logging_config import logger
from aiassistant.models import AITool
from aiassistant.models.tool import IMPL_KNOWLEDGE, RISK_LOW

if TYPE_CHECKING:
    from aiassistant.knowledge import KnowledgeRegistry, QueryResponse

DEFAULT_PARAMETER_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "query": {
            "type": "string",
            "description": "查询内容",
        }
    },
    "required": ["query"],
}


@dataclass(frozen=True)
class ToolConfig:
    """工具的运行时快照，按 implementation_type 使用不同字段。"""

    name: str
    implementation_type: str
    id: int | None = None
    description: str = ""
    risk_level: str = RISK_LOW
    parameter_schema: dict[str, Any] | None = None
    # api
    method: str = ""
    url_path: str = ""
    response_mapping: dict[str, Any] | None = None
    # mcp
    mcp_server_id: int | None = None
    mcp_tool_name: str = ""
    # native
    native_handler: str = ""
    # knowledge
    knowledge_provider_id: int | None = None
    enabled: bool = True

    @classmethod
    def from_model(cls, row: AITool) -> "ToolConfig":
        return cls(
            id=row.id,
            name=row.name,
            description=row.description or "",
            implementation_type=row.implementation_type,
            risk_level=row.risk_level or RISK_LOW,
            parameter_schema=dict(row.parameter_schema) if row.parameter_schema else None,
            method=(row.method or "").upper(),
            url_path=row.url_path or "",
            response_mapping=dict(row.response_mapping) if row.response_mapping else None,
            mcp_server_id=row.mcp_server_id,
            mcp_tool_name=row.mcp_tool_name or "",
            native_handler=row.native_handler or "",
            knowledge_provider_id=row.knowledge_provider_id,
            enabled=row.enabled,
        )

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            function=ToolFunction(
                name=self.name,
                description=self.description,
                parameters=self.parameter_schema or DEFAULT_PARAMETER_SCHEMA,
            )
        )


@dataclass
class _Snapshot:
    tools: dict[str, ToolConfig] = field(default_factory=dict)


class ToolRegistry:
    """
    ai_tools 表中启用工具的内存快照，外加知识库注册表提供的检索工具。
    同名时 ai_tools 中的声明优先。
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        *,
        knowledge: "KnowledgeRegistry | None" = None,
    ) -> None:
        self._session_factory = session_factory
        self._knowledge = knowledge
        self._lock = threading.RLock()
        self._snapshot = _Snapshot()

    def load(self) -> None:
        if self._session_factory is None:
            return
        with self._session_factory() as session:
            rows = session.execute(
                select(AITool).where(AITool.enabled.is_(True)).order_by(AITool.id)
            ).scalars().all()
            tools = {row.name: ToolConfig.from_model(row) for row in rows}
        with self._lock:
            self._snapshot = _Snapshot(tools=tools)
        logger.info("tool registry loaded: %d tools", len(tools))

    def register(self, tool: ToolConfig) -> None:
        with self._lock:
            tools = dict(self._snapshot.tools)
            tools[tool.name] = tool
            self._snapshot = _Snapshot(tools=tools)

    def unregister(self, name: str) -> None:
        with self._lock:
            tools = dict(self._snapshot.tools)
            tools.pop(name, None)
            self._snapshot = _Snapshot(tools=tools)

    def get(self, name: str) -> ToolConfig | None:
        with self._lock:
            tool = self._snapshot.tools.get(name)
        if tool is not None:
            return tool if tool.enabled else None
        if self._knowledge is not None:
            knowledge_tool = self._knowledge.get_tool(name)
            if knowledge_tool is not None and knowledge_tool.enabled:
                return ToolConfig(
                    name=knowledge_tool.name,
                    description=knowledge_tool.description,
                    implementation_type=IMPL_KNOWLEDGE,
                )
        return None

    def is_registered(self, name: str) -> bool:
        return self.get(name) is not None

    def definitions(self) -> list[ToolDefinition]:
        with self._lock:
            tools = [t for t in self._snapshot.tools.values() if t.enabled]
        defs = [tool.definition() for tool in sorted(tools, key=lambda t: t.name)]
        seen = {d.function.name for d in defs}
        if self._knowledge is not None:
            for definition in self._knowledge.tool_definitions():
                if definition.function.name in seen:
                    continue
                seen.add(definition.function.name)
                defs.append(definition)
        return defs

    def count(self) -> int:
        return len(self.definitions())

    async def execute(
        self,
        name: str,
        args: dict[str, Any],
        *,
        user_id: str = "",
        session_id: str = "",
    ) -> "QueryResponse":
        """只处理知识库类工具，其余类型由 ToolDispatcher 分发。"""
        tool = self.get(name)
        if tool is None:
            raise AssistantError(ErrorCode.TOOL_NOT_FOUND, f"tool not found: {name}")
        if tool.implementation_type != IMPL_KNOWLEDGE or self._knowledge is None:
            raise AssistantError(
                ErrorCode.INVALID_REQUEST,
                f"tool {name} is not a knowledge tool",
            )
        if tool.knowledge_provider_id is not None:
            return await self._knowledge.query_provider(
                tool.knowledge_provider_id, args, user_id=user_id, session_id=session_id
            )
        return await self._knowledge.execute(name, args, user_id=user_id, session_id=session_id)


__all__ = ["DEFAULT_PARAMETER_SCHEMA", "ToolConfig", "ToolRegistry"]
