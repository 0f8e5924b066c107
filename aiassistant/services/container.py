"""
Runtime wiring of the assistant core.

`AssistantServices.build()` creates every registry and engine once per
process; `start()` loads them, opens remote tool-server connections and
launches the config poller; `stop()` tears everything down in reverse.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable

import anyio
import httpx
from redis.asyncio import Redis
from sqlalchemy.orm import Session

from aiassistant.knowledge import KnowledgeRegistry
from aiassistant.llm.client import LLMClient
from aiassistant.llm.factory import build_llm_client
from aiassistant.logging_config import logger
from aiassistant.mcp import MCPManager
from aiassistant.observability.metrics import METRICS
from aiassistant.optimization import OptimizationManager
from aiassistant.routing import AgentRouter
from aiassistant.settings import settings

from .agent_registry import AgentRegistry
from .chat_service import ChatOrchestrator
from .config_loader import ConfigLoader
from .confirmation_service import ConfirmationManager
from .file_manager import FileManager
from .risk_checker import RiskChecker
from .session_manager import SessionManager
from .tool_dispatcher import NativeHandlerRegistry, ToolDispatcher
from .tool_registry import ToolRegistry

COMPONENT_AGENTS = "agents"
COMPONENT_TOOLS = "tools"
COMPONENT_KNOWLEDGE = "knowledge"
COMPONENT_MCP = "mcp"
COMPONENT_OPTIMIZATION = "optimization"
COMPONENT_CONFIG = "config"


@dataclass
class AssistantServices:
    session_factory: Callable[[], Session]
    redis: Redis
    http_client: httpx.AsyncClient
    config_loader: ConfigLoader
    knowledge: KnowledgeRegistry
    tools: ToolRegistry
    agents: AgentRegistry
    mcp: MCPManager
    dispatcher: ToolDispatcher
    optimization: OptimizationManager
    sessions: SessionManager
    confirmations: ConfirmationManager
    files: FileManager
    orchestrator: ChatOrchestrator
    owns_http_client: bool = True
    llm_override: LLMClient | None = None
    _stop_event: asyncio.Event | None = field(default=None, repr=False)
    _poller: asyncio.Task | None = field(default=None, repr=False)

    @classmethod
    def build(
        cls,
        session_factory: Callable[[], Session],
        redis: Redis,
        *,
        http_client: httpx.AsyncClient | None = None,
        native_handlers: NativeHandlerRegistry | None = None,
        llm: LLMClient | None = None,
    ) -> "AssistantServices":
        owns_http_client = http_client is None
        if http_client is None:
            http_client = httpx.AsyncClient(timeout=settings.tool_http_timeout_seconds)

        config_loader = ConfigLoader(session_factory)
        knowledge = KnowledgeRegistry(session_factory, http_client=http_client)
        tools = ToolRegistry(session_factory, knowledge=knowledge)
        agents = AgentRegistry(session_factory)
        mcp = MCPManager(session_factory, http_client=http_client)
        dispatcher = ToolDispatcher(
            native_handlers=native_handlers,
            mcp=mcp,
            knowledge=knowledge,
            http_client=http_client,
        )
        optimization = OptimizationManager.from_database(session_factory, redis)
        sessions = SessionManager(redis)
        confirmations = ConfirmationManager(redis)
        files = FileManager(redis)
        orchestrator = ChatOrchestrator(
            agents=agents,
            router=AgentRouter(agents),
            tools=tools,
            dispatcher=dispatcher,
            sessions=sessions,
            optimization=optimization,
            confirmations=confirmations,
            risk_checker=RiskChecker(),
        )
        return cls(
            session_factory=session_factory,
            redis=redis,
            http_client=http_client,
            config_loader=config_loader,
            knowledge=knowledge,
            tools=tools,
            agents=agents,
            mcp=mcp,
            dispatcher=dispatcher,
            optimization=optimization,
            sessions=sessions,
            confirmations=confirmations,
            files=files,
            orchestrator=orchestrator,
            owns_http_client=owns_http_client,
            llm_override=llm,
        )

    # ---- loading ----

    def _apply_runtime_configs(self) -> None:
        self.sessions.update_config(self.config_loader.get_session_config())
        self.files.update_config(self.config_loader.get_file_config())

    def _rebuild_llm(self) -> LLMClient | None:
        if self.llm_override is not None:
            self.orchestrator.llm = self.llm_override
            return self.llm_override
        llm = build_llm_client(self.config_loader, self.session_factory, http_client=self.http_client)
        self.orchestrator.llm = llm
        return llm

    def load(self) -> None:
        """同步加载各注册表；启动阶段任何一个失败都视为致命错误。"""
        self.knowledge.load()
        self.tools.load()
        self.agents.load()
        self._apply_runtime_configs()
        self._rebuild_llm()

    async def reload_all(self) -> tuple[list[str], list[str]]:
        """
        运行时重载；单个组件失败只记录错误，保留该组件上一次的快照。

        同步的数据库加载放到工作线程执行，避免阻塞进行中的对话。
        """
        reloaded: list[str] = []
        errors: list[str] = []
        await anyio.to_thread.run_sync(self.config_loader.reload_all)

        steps: list[tuple[str, Callable[[], object]]] = [
            ("knowledge", self.knowledge.load),
            ("tools", self.tools.load),
            ("agents", self.agents.load),
            ("optimization", self.optimization.reload),
            ("runtime_configs", self._apply_runtime_configs),
            ("llm", self._rebuild_llm),
        ]
        for name, step in steps:
            try:
                await anyio.to_thread.run_sync(step)
            except Exception as exc:
                logger.exception("failed to reload %s", name)
                errors.append(f"{name}: {exc}")
            else:
                reloaded.append(name)

        try:
            await self.mcp.reload()
        except Exception as exc:
            logger.exception("failed to reload mcp servers")
            errors.append(f"mcp: {exc}")
        else:
            reloaded.append("mcp")

        logger.info("assistant services reloaded: ok=%s errors=%d", reloaded, len(errors))
        return reloaded, errors

    def _reload_configs(self) -> None:
        self.config_loader.reload_all()
        self._apply_runtime_configs()
        self._rebuild_llm()

    async def reload_component(self, name: str) -> None:
        """管理端修改后只重载受影响的组件。"""
        if name == COMPONENT_MCP:
            await self.mcp.reload()
            return
        loaders: dict[str, Callable[[], object]] = {
            COMPONENT_AGENTS: self.agents.load,
            COMPONENT_TOOLS: self.tools.load,
            COMPONENT_KNOWLEDGE: self.knowledge.load,
            COMPONENT_OPTIMIZATION: self.optimization.reload,
            COMPONENT_CONFIG: self._reload_configs,
        }
        loader = loaders.get(name)
        if loader is None:
            raise ValueError(f"unknown component: {name}")
        await anyio.to_thread.run_sync(loader)
        logger.info("component %s reloaded", name)

    async def _on_config_change(self) -> None:
        await self.reload_all()

    # ---- lifecycle ----

    async def start(self, *, poll: bool = True) -> None:
        await anyio.to_thread.run_sync(self.load)
        await self.mcp.start()
        if poll:
            self.config_loader.add_listener(self._on_config_change)
            self._stop_event = asyncio.Event()
            self._poller = asyncio.create_task(
                self.config_loader.run_poller(settings.ai_config_reload_interval_seconds, self._stop_event)
            )
        logger.info(
            "assistant services started: %d agents, %d tools, %d knowledge providers, %d mcp servers",
            self.agents.count(),
            self.tools.count(),
            self.knowledge.provider_count(),
            len(self.mcp.get_all_clients()),
        )

    async def refresh_gauges(self) -> None:
        """抓取 /metrics 前刷新按存量计算的 gauge。"""
        METRICS.active_sessions.set((await self.sessions.get_stats()).active_count)
        METRICS.confirmations_pending.set(await self.confirmations.count_pending())

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._poller is not None:
            self._poller.cancel()
            try:
                await self._poller
            except asyncio.CancelledError:
                pass
            self._poller = None
        await self.mcp.close()
        if self.owns_http_client:
            await self.http_client.aclose()
        logger.info("assistant services stopped")


__all__ = [
    "AssistantServices",
    "COMPONENT_AGENTS",
    "COMPONENT_CONFIG",
    "COMPONENT_KNOWLEDGE",
    "COMPONENT_MCP",
    "COMPONENT_OPTIMIZATION",
    "COMPONENT_TOOLS",
]
