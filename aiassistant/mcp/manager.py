from __future__ import annotations

import asyncio
import ipaddress
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

import anyio
import httpx
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from aiassistant.errors import AssistantError, ErrorCode
from aiassistant.logging_config import logger
from aiassistant.models import MCPServer
from aiassistant.models.base import utcnow
from aiassistant.models.knowledge import HEALTH_HEALTHY, HEALTH_UNHEALTHY
from aiassistant.models.mcp_server import SUPPORTED_SERVER_TYPES
from aiassistant.services.config_loader import expand_env_vars

from .client import HTTPMCPClient, MCPTool, ToolResponse

DEFAULT_HEALTH_CHECK_INTERVAL = 60


@dataclass
class MCPServerEntry:
    id: int
    name: str
    client: HTTPMCPClient
    health_check_interval: int = DEFAULT_HEALTH_CHECK_INTERVAL
    allowed_envs: list[str] = field(default_factory=list)
    allowed_prefixes: list[str] = field(default_factory=list)
    allowed_ips: list[str] = field(default_factory=list)
    healthy: bool = True
    last_error: str | None = None


class MCPServerNotFoundError(AssistantError):
    def __init__(self, server_id: int) -> None:
        super().__init__(
            ErrorCode.MCP_SERVER_NOT_FOUND,
            f"MCP server {server_id} is not available",
            details={"server_id": server_id},
        )


class MCPManager:
    """
    远程工具服务连接管理：启动时握手、按间隔巡检、调用前做白名单校验。
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._http_client = http_client
        self._lock = threading.RLock()
        self._servers: dict[int, MCPServerEntry] = {}
        self._tickers: dict[int, asyncio.Task] = {}
        self._reload_lock = asyncio.Lock()

    def _load_rows(self) -> list[MCPServer]:
        with self._session_factory() as session:
            stmt = select(MCPServer).where(MCPServer.enabled.is_(True)).order_by(MCPServer.id)
            return list(session.execute(stmt).scalars().all())

    def _write_health(self, server_id: int, status: int, error: str | None) -> None:
        # 显式保留 updated_at，健康状态变化不触发配置热加载
        stmt = (
            update(MCPServer)
            .where(MCPServer.id == server_id)
            .values(
                health_status=status,
                last_check_time=utcnow(),
                last_check_error=error,
                updated_at=MCPServer.updated_at,
            )
        )
        with self._session_factory() as session:
            session.execute(stmt)
            session.commit()

    async def _record_health(self, server_id: int, error: str | None) -> None:
        status = HEALTH_HEALTHY if error is None else HEALTH_UNHEALTHY
        try:
            await anyio.to_thread.run_sync(self._write_health, server_id, status, error)
        except Exception:
            logger.exception("failed to persist health status for MCP server %s", server_id)

    def _build_client(self, row: MCPServer) -> HTTPMCPClient:
        return HTTPMCPClient(
            expand_env_vars(row.endpoint),
            timeout=float(row.timeout_seconds or 0),
            client=self._http_client,
        )

    async def _connect(self, row: MCPServer) -> MCPServerEntry | None:
        """握手成功返回新条目；失败只落库错误，不影响当前已连接的快照。"""
        client = self._build_client(row)
        try:
            await client.health()
        except Exception as exc:
            logger.error("MCP server %s handshake failed: %s", row.name, exc)
            await self._record_health(row.id, str(exc))
            await client.aclose()
            return None

        await self._record_health(row.id, None)
        logger.info("MCP server %s connected (%s)", row.name, row.endpoint)
        return MCPServerEntry(
            id=row.id,
            name=row.name,
            client=client,
            health_check_interval=row.health_check_interval or DEFAULT_HEALTH_CHECK_INTERVAL,
            allowed_envs=list(row.allowed_envs or []),
            allowed_prefixes=list(row.allowed_prefixes or []),
            allowed_ips=list(row.allowed_ips or []),
        )

    async def start(self) -> None:
        await self.reload()

    async def reload(self) -> None:
        """
        先在局部字典里完成全部握手，再整体替换 `_servers`，最后回收旧连接。

        握手期间的工具调用仍然落在上一份快照上。
        """
        async with self._reload_lock:
            rows = await anyio.to_thread.run_sync(self._load_rows)
            entries: dict[int, MCPServerEntry] = {}
            for row in rows:
                if row.server_type not in SUPPORTED_SERVER_TYPES:
                    logger.warning("unsupported MCP server type: %s (%s), skipped", row.server_type, row.name)
                    continue
                entry = await self._connect(row)
                if entry is not None:
                    entries[row.id] = entry

            with self._lock:
                old_entries = list(self._servers.values())
                self._servers = entries
            old_tickers = list(self._tickers.values())
            self._tickers = {
                server_id: asyncio.create_task(self._health_loop(entry), name=f"mcp-health-{server_id}")
                for server_id, entry in entries.items()
            }
            await self._retire(old_entries, old_tickers)

    @staticmethod
    async def _retire(entries: list[MCPServerEntry], tickers: list[asyncio.Task]) -> None:
        for task in tickers:
            task.cancel()
        for task in tickers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        for entry in entries:
            await entry.client.aclose()

    async def _health_loop(self, entry: MCPServerEntry) -> None:
        interval = entry.health_check_interval if entry.health_check_interval > 0 else DEFAULT_HEALTH_CHECK_INTERVAL
        while True:
            await asyncio.sleep(interval)
            await self.check_server(entry.id)

    async def check_server(self, server_id: int) -> str | None:
        """执行一次健康检查并落库，返回 None 表示健康。"""
        entry = self.get_entry(server_id)
        if entry is None:
            return f"MCP server {server_id} is not connected"
        try:
            await entry.client.health()
        except Exception as exc:
            logger.error("MCP server %s health check failed: %s", entry.name, exc)
            entry.healthy = False
            entry.last_error = str(exc)
        else:
            entry.healthy = True
            entry.last_error = None
        await self._record_health(server_id, entry.last_error)
        return entry.last_error

    def get_entry(self, server_id: int) -> MCPServerEntry | None:
        with self._lock:
            return self._servers.get(server_id)

    def get_client(self, server_id: int) -> HTTPMCPClient | None:
        entry = self.get_entry(server_id)
        return entry.client if entry is not None else None

    def get_all_clients(self) -> dict[int, HTTPMCPClient]:
        with self._lock:
            return {server_id: entry.client for server_id, entry in self._servers.items()}

    def is_healthy(self, server_id: int) -> bool:
        entry = self.get_entry(server_id)
        return entry is not None and entry.healthy

    @staticmethod
    def ip_allowed(client_ip: str | None, allowed_ips: list[str]) -> bool:
        """allowed_ips 支持单个地址与 CIDR 网段；无法解析的调用方 IP 一律拒绝。"""
        if not client_ip:
            return False
        try:
            address = ipaddress.ip_address(client_ip.strip())
        except ValueError:
            return False
        for item in allowed_ips:
            try:
                if address in ipaddress.ip_network(item.strip(), strict=False):
                    return True
            except ValueError:
                logger.warning("invalid allowed_ips entry ignored: %s", item)
        return False

    @classmethod
    def check_allowed(
        cls,
        entry: MCPServerEntry,
        tool_name: str,
        env: str | None,
        client_ip: str | None = None,
    ) -> None:
        if entry.allowed_prefixes and not any(tool_name.startswith(p) for p in entry.allowed_prefixes):
            raise AssistantError(
                ErrorCode.PERMISSION_DENIED,
                f"tool {tool_name} is not allowed on MCP server {entry.name}",
            )
        if entry.allowed_envs and (env or "") not in entry.allowed_envs:
            raise AssistantError(
                ErrorCode.ENV_NOT_ALLOWED,
                f"env {env or '-'} is not allowed on MCP server {entry.name}",
            )
        if entry.allowed_ips and not cls.ip_allowed(client_ip, entry.allowed_ips):
            raise AssistantError(
                ErrorCode.IP_NOT_ALLOWED,
                f"client ip {client_ip or '-'} is not allowed on MCP server {entry.name}",
            )

    async def call_tool(
        self,
        server_id: int,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
        *,
        env: str | None = None,
        client_ip: str | None = None,
    ) -> ToolResponse:
        entry = self.get_entry(server_id)
        if entry is None:
            raise MCPServerNotFoundError(server_id)
        if not entry.healthy:
            raise AssistantError(
                ErrorCode.MCP_HEALTH_CHECK_FAILED,
                f"MCP server {entry.name} is unhealthy: {entry.last_error}",
            )
        self.check_allowed(entry, tool_name, env, client_ip)
        return await entry.client.call_tool(tool_name, arguments)

    async def list_server_tools(self, server_id: int) -> list[MCPTool]:
        client = self.get_client(server_id)
        if client is None:
            raise MCPServerNotFoundError(server_id)
        return await client.list_tools()

    async def close(self) -> None:
        async with self._reload_lock:
            with self._lock:
                entries = list(self._servers.values())
                self._servers = {}
            tickers = list(self._tickers.values())
            self._tickers = {}
            await self._retire(entries, tickers)


__all__ = ["MCPManager", "MCPServerEntry", "MCPServerNotFoundError"]
