from __future__ import annotations

import inspect
import json
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol, Union

import httpx

from aiassistant.errors import AssistantError, ErrorCode
from aiassistant.logging_config import logger
from aiassistant.models.tool import IMPL_API, IMPL_KNOWLEDGE, IMPL_MCP, IMPL_NATIVE
from aiassistant.settings import settings

from .tool_registry import ToolConfig

if TYPE_CHECKING:
    from aiassistant.knowledge import QueryResponse
    from aiassistant.mcp import MCPManager

_ERROR_BODY_PREVIEW = 1000

# 这些错误重试也不会成功
NON_RETRYABLE_CODES = frozenset(
    {
        ErrorCode.TOOL_NOT_FOUND,
        ErrorCode.INVALID_TOOL_ARGUMENTS,
        ErrorCode.PERMISSION_DENIED,
        ErrorCode.ENV_NOT_ALLOWED,
        ErrorCode.IP_NOT_ALLOWED,
        ErrorCode.MCP_SERVER_NOT_FOUND,
        ErrorCode.MCP_HEALTH_CHECK_FAILED,
        ErrorCode.KNOWLEDGE_QUERY_FAILED,
    }
)


@dataclass(frozen=True)
class DispatchContext:
    user_id: str = ""
    session_id: str = ""
    trace_id: str = ""
    env: str = ""
    busi_group_id: int | None = None
    conversation_id: str = ""
    client_ip: str = ""


NativeHandler = Callable[[dict[str, Any], DispatchContext], Union[Any, Awaitable[Any]]]


class KnowledgeExecutor(Protocol):
    """KnowledgeRegistry 满足该接口；分发器不依赖具体类型。"""

    async def execute(
        self, tool_name: str, args: dict[str, Any], *, user_id: str = "", session_id: str = ""
    ) -> "QueryResponse": ...

    async def query_provider(
        self,
        provider_id: int,
        args: dict[str, Any],
        *,
        parameters: dict[str, Any] | None = None,
        user_id: str = "",
        session_id: str = "",
    ) -> "QueryResponse": ...


class NativeHandlerRegistry:
    def __init__(self) -> None:
        self._handlers: dict[str, NativeHandler] = {}

    def register(self, name: str, handler: NativeHandler) -> None:
        self._handlers[name] = handler

    def unregister(self, name: str) -> None:
        self._handlers.pop(name, None)

    def get(self, name: str) -> NativeHandler | None:
        return self._handlers.get(name)

    def names(self) -> list[str]:
        return sorted(self._handlers)


@dataclass
class DispatchResult:
    tool_name: str
    result: Any = None
    error: BaseException | None = None
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.error is None


def _format_query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def _extract_path(body: Any, path: str) -> Any:
    current = body
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


class ToolDispatcher:
    """
    按 implementation_type 把工具调用分发到 native / api / mcp / knowledge。
    """

    def __init__(
        self,
        *,
        native_handlers: NativeHandlerRegistry | None = None,
        mcp: "MCPManager | None" = None,
        knowledge: KnowledgeExecutor | None = None,
        http_client: httpx.AsyncClient | None = None,
        api_base_url: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self.native_handlers = native_handlers or NativeHandlerRegistry()
        self.mcp = mcp
        self.knowledge = knowledge
        self._http_client = http_client
        self.api_base_url = settings.tool_api_base_url if api_base_url is None else api_base_url
        self.timeout = settings.tool_http_timeout_seconds if timeout is None else timeout

    def register_native_handler(self, name: str, handler: NativeHandler) -> None:
        self.native_handlers.register(name, handler)

    async def dispatch(self, tool: ToolConfig, args: dict[str, Any], ctx: DispatchContext) -> Any:
        kind = tool.implementation_type
        logger.info(
            "trace_id=%s dispatch tool %s (type=%s)",
            ctx.trace_id,
            tool.name,
            kind,
        )
        if kind == IMPL_NATIVE:
            return await self._execute_native(tool, args, ctx)
        if kind == IMPL_API:
            return await self._execute_api(tool, args)
        if kind == IMPL_MCP:
            return await self._execute_mcp(tool, args, ctx)
        if kind == IMPL_KNOWLEDGE:
            return await self._execute_knowledge(tool, args, ctx)
        raise AssistantError(
            ErrorCode.TOOL_NOT_FOUND,
            f"unknown tool implementation type: {kind}",
        )

    async def dispatch_with_timing(
        self, tool: ToolConfig, args: dict[str, Any], ctx: DispatchContext
    ) -> DispatchResult:
        started = time.perf_counter()
        result = DispatchResult(tool_name=tool.name)
        try:
            result.result = await self.dispatch(tool, args, ctx)
        except Exception as exc:
            result.error = exc
        result.duration_ms = int((time.perf_counter() - started) * 1000)
        return result

    async def _execute_native(self, tool: ToolConfig, args: dict[str, Any], ctx: DispatchContext) -> Any:
        handler = self.native_handlers.get(tool.native_handler or tool.name)
        if handler is None:
            raise AssistantError(
                ErrorCode.TOOL_NOT_FOUND,
                f"native handler not found: {tool.native_handler or tool.name}",
            )
        value = handler(args, ctx)
        if inspect.isawaitable(value):
            value = await value
        return value

    def _build_url(self, url_path: str) -> str:
        if url_path.startswith(("http://", "https://")):
            return url_path
        return self.api_base_url.rstrip("/") + "/" + url_path.lstrip("/")

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.request(method, url, timeout=self.timeout, **kwargs)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.request(method, url, **kwargs)

    async def _execute_api(self, tool: ToolConfig, args: dict[str, Any]) -> Any:
        if not tool.url_path:
            raise AssistantError(
                ErrorCode.TOOL_NOT_FOUND,
                f"API URL path not configured for tool: {tool.name}",
            )
        method = (tool.method or "GET").upper()
        url = self._build_url(tool.url_path)

        kwargs: dict[str, Any] = {"headers": {"Content-Type": "application/json"}}
        if method in ("POST", "PUT", "PATCH"):
            kwargs["json"] = args
        elif args:
            kwargs["params"] = {k: _format_query_value(v) for k, v in args.items() if v is not None}

        try:
            resp = await self._send(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise AssistantError(ErrorCode.TOOL_TIMEOUT, f"API request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise AssistantError(ErrorCode.UPSTREAM_ERROR, f"API request failed: {exc}") from exc

        if resp.status_code < 200 or resp.status_code >= 300:
            raise AssistantError(
                ErrorCode.UPSTREAM_ERROR,
                f"API returned error status {resp.status_code}: {resp.text[:_ERROR_BODY_PREVIEW]}",
                details={"status_code": resp.status_code},
            )

        try:
            body: Any = resp.json()
        except ValueError:
            return resp.text

        result_path = (tool.response_mapping or {}).get("result_path")
        if isinstance(result_path, str) and result_path:
            return _extract_path(body, result_path)
        return body

    async def _execute_mcp(self, tool: ToolConfig, args: dict[str, Any], ctx: DispatchContext) -> Any:
        if self.mcp is None:
            raise AssistantError(ErrorCode.MCP_SERVER_NOT_FOUND, "MCP manager not configured")
        if not tool.mcp_server_id:
            raise AssistantError(
                ErrorCode.MCP_SERVER_NOT_FOUND,
                f"MCP server ID not configured for tool: {tool.name}",
            )
        response = await self.mcp.call_tool(
            tool.mcp_server_id,
            tool.mcp_tool_name or tool.name,
            args,
            env=ctx.env or None,
            client_ip=ctx.client_ip or None,
        )
        if response.is_error:
            raise AssistantError(
                ErrorCode.TOOL_EXECUTION_FAILED,
                f"MCP tool returned error: {response.simplified()}",
            )
        return response.simplified()

    async def _execute_knowledge(self, tool: ToolConfig, args: dict[str, Any], ctx: DispatchContext) -> dict[str, Any]:
        if self.knowledge is None:
            raise AssistantError(ErrorCode.KNOWLEDGE_QUERY_FAILED, "knowledge registry not configured")

        query_args = dict(args)
        if ctx.conversation_id and not query_args.get("conversation_id"):
            query_args["conversation_id"] = ctx.conversation_id

        if tool.knowledge_provider_id is not None:
            response = await self.knowledge.query_provider(
                tool.knowledge_provider_id,
                query_args,
                user_id=ctx.user_id,
                session_id=ctx.session_id,
            )
        else:
            response = await self.knowledge.execute(
                tool.name,
                query_args,
                user_id=ctx.user_id,
                session_id=ctx.session_id,
            )
        if not response.ok:
            raise AssistantError(
                ErrorCode.KNOWLEDGE_QUERY_FAILED,
                response.error or "knowledge query failed",
            )
        return response.model_dump()


__all__ = [
    "DispatchContext",
    "DispatchResult",
    "KnowledgeExecutor",
    "NON_RETRYABLE_CODES",
    "NativeHandler",
    "NativeHandlerRegistry",
    "ToolDispatcher",
]
