"""
JSON-RPC 2.0 client for remote tool servers.

Only two methods are used: ``tools/list`` (also the health probe) and
``tools/call``. Each request carries an incrementing integer id.
"""

from __future__ import annotations

import itertools
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from aiassistant.errors import AssistantError, ErrorCode

DEFAULT_TIMEOUT_SECONDS = 30.0


class MCPTool(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=dict, alias="inputSchema")


class ContentBlock(BaseModel):
    model_config = ConfigDict(extra="ignore")

    # text / image / resource
    type: str = "text"
    text: str | None = None
    data: str | None = None


class ToolResponse(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    content: list[ContentBlock] = Field(default_factory=list)
    is_error: bool = Field(default=False, alias="isError")

    def simplified(self) -> Any:
        """单个 text 块直接返回文本，其它情况返回块列表。"""
        if len(self.content) == 1 and self.content[0].type == "text":
            return self.content[0].text or ""
        return [block.model_dump(exclude_none=True) for block in self.content]


class MCPError(AssistantError):
    def __init__(self, message: str, *, rpc_code: int | None = None) -> None:
        details = {"rpc_code": rpc_code} if rpc_code is not None else None
        super().__init__(ErrorCode.UPSTREAM_ERROR, message, details=details)
        self.rpc_code = rpc_code


class MCPConnectionError(AssistantError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.MCP_CONNECTION_FAILED, message)


class HTTPMCPClient:
    def __init__(
        self,
        endpoint: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.timeout = timeout if timeout > 0 else DEFAULT_TIMEOUT_SECONDS
        self._client = client
        self._owns_client = client is None
        self._ids = itertools.count(1)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def _rpc(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        request = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        try:
            resp = await self._get_client().post(
                self.endpoint,
                json=request,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except httpx.HTTPError as exc:
            raise MCPConnectionError(f"request to {self.endpoint} failed: {exc}") from exc

        if resp.status_code != 200:
            raise MCPConnectionError(f"HTTP error: {resp.status_code}")

        try:
            payload = resp.json()
        except ValueError as exc:
            raise MCPError(f"invalid JSON-RPC response: {exc}") from exc

        error = payload.get("error") if isinstance(payload, dict) else None
        if error:
            raise MCPError(
                f"MCP error {error.get('code')}: {error.get('message')}",
                rpc_code=error.get("code"),
            )
        result = payload.get("result") if isinstance(payload, dict) else None
        if result is None:
            raise MCPError("empty result")
        return result

    async def list_tools(self) -> list[MCPTool]:
        result = await self._rpc("tools/list", {})
        try:
            return [MCPTool.model_validate(item) for item in result.get("tools") or []]
        except ValidationError as exc:
            raise MCPError(f"invalid tools/list result: {exc}") from exc

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> ToolResponse:
        result = await self._rpc("tools/call", {"name": name, "arguments": arguments or {}})
        try:
            return ToolResponse.model_validate(result)
        except ValidationError as exc:
            raise MCPError(f"invalid tools/call result: {exc}") from exc

    async def health(self) -> None:
        await self.list_tools()

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = [
    "ContentBlock",
    "HTTPMCPClient",
    "MCPConnectionError",
    "MCPError",
    "MCPTool",
    "ToolResponse",
]
