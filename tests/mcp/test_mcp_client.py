from __future__ import annotations

import json

import httpx
import pytest

from aiassistant.errors import ErrorCode
from aiassistant.mcp import HTTPMCPClient, MCPError, ToolResponse
from aiassistant.mcp.client import MCPConnectionError


def _rpc_server(results: dict):
    """按 method 返回固定 result；记录收到的请求。"""
    received: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        received.append(payload)
        result = results[payload["method"]]
        if isinstance(result, httpx.Response):
            return result
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], **result})

    return handler, received


@pytest.mark.asyncio
async def test_list_and_call_tools():
    handler, received = _rpc_server(
        {
            "tools/list": {
                "result": {
                    "tools": [
                        {
                            "name": "k8s_get_pods",
                            "description": "list pods",
                            "inputSchema": {"type": "object", "properties": {"namespace": {"type": "string"}}},
                        }
                    ]
                }
            },
            "tools/call": {"result": {"content": [{"type": "text", "text": "3 pods running"}]}},
        }
    )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        client = HTTPMCPClient("http://mcp.local/rpc", client=http)
        tools = await client.list_tools()
        response = await client.call_tool("k8s_get_pods", {"namespace": "prod"})
        await client.aclose()
        # 外部传入的 client 不由 HTTPMCPClient 关闭
        assert not http.is_closed

    assert tools[0].name == "k8s_get_pods"
    assert tools[0].input_schema["properties"]["namespace"]["type"] == "string"
    assert response.simplified() == "3 pods running"
    assert [r["id"] for r in received] == [1, 2]
    assert received[1]["params"] == {"name": "k8s_get_pods", "arguments": {"namespace": "prod"}}
    assert all(r["jsonrpc"] == "2.0" for r in received)


@pytest.mark.asyncio
async def test_rpc_error_and_http_error():
    handler, _ = _rpc_server(
        {
            "tools/call": {"error": {"code": -32601, "message": "method not found"}},
            "tools/list": httpx.Response(502, text="bad gateway"),
        }
    )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        client = HTTPMCPClient("http://mcp.local/rpc", client=http)
        with pytest.raises(MCPError) as rpc_exc:
            await client.call_tool("missing")
        with pytest.raises(MCPConnectionError) as http_exc:
            await client.health()

    assert rpc_exc.value.rpc_code == -32601
    assert rpc_exc.value.code == ErrorCode.UPSTREAM_ERROR
    assert "502" in str(http_exc.value)


@pytest.mark.asyncio
async def test_empty_result_is_an_error():
    handler, _ = _rpc_server({"tools/list": {"result": None}})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        client = HTTPMCPClient("http://mcp.local/rpc", client=http)
        with pytest.raises(MCPError):
            await client.list_tools()


def test_tool_response_simplified_keeps_multiple_blocks():
    response = ToolResponse.model_validate(
        {
            "content": [{"type": "text", "text": "a"}, {"type": "image", "data": "aGk="}],
            "isError": True,
        }
    )

    assert response.is_error is True
    assert response.simplified() == [{"type": "text", "text": "a"}, {"type": "image", "data": "aGk="}]
