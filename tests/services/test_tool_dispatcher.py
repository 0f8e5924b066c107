from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from aiassistant.errors import AssistantError, ErrorCode
from aiassistant.knowledge import QueryResponse
from aiassistant.mcp.client import ContentBlock, ToolResponse
from aiassistant.models.tool import IMPL_API, IMPL_KNOWLEDGE, IMPL_MCP, IMPL_NATIVE
from aiassistant.services.tool_dispatcher import DispatchContext, NativeHandlerRegistry, ToolDispatcher
from aiassistant.services.tool_registry import ToolConfig

CTX = DispatchContext(
    user_id="u1", session_id="ses_1", trace_id="tr-1", env="prod", conversation_id="conv-9", client_ip="10.0.0.8"
)


def _api_tool(method: str, url_path: str, **kwargs) -> ToolConfig:
    return ToolConfig(name="api_tool", implementation_type=IMPL_API, method=method, url_path=url_path, **kwargs)


class FakeMCP:
    def __init__(self, response: ToolResponse) -> None:
        self.response = response
        self.calls: list[tuple[int, str, dict, str | None, str | None]] = []

    async def call_tool(
        self,
        server_id: int,
        tool_name: str,
        arguments: dict | None = None,
        *,
        env: str | None = None,
        client_ip: str | None = None,
    ):
        self.calls.append((server_id, tool_name, dict(arguments or {}), env, client_ip))
        return self.response


class FakeKnowledge:
    def __init__(self, response: QueryResponse) -> None:
        self.response = response
        self.calls: list[tuple[str, Any, dict]] = []

    async def execute(self, tool_name: str, args: dict, *, user_id: str = "", session_id: str = ""):
        self.calls.append(("execute", tool_name, dict(args)))
        return self.response

    async def query_provider(
        self, provider_id: int, args: dict, *, parameters=None, user_id: str = "", session_id: str = ""
    ):
        self.calls.append(("provider", provider_id, dict(args)))
        return self.response


@pytest.mark.asyncio
async def test_native_handlers_sync_and_async():
    handlers = NativeHandlerRegistry()
    handlers.register("echo", lambda args, ctx: {"echo": args["text"], "user": ctx.user_id})

    async def slow_add(args, ctx):
        return args["a"] + args["b"]

    dispatcher = ToolDispatcher(native_handlers=handlers)
    dispatcher.register_native_handler("adder", slow_add)

    echo = await dispatcher.dispatch(ToolConfig(name="echo", implementation_type=IMPL_NATIVE), {"text": "hi"}, CTX)
    total = await dispatcher.dispatch(
        ToolConfig(name="sum", implementation_type=IMPL_NATIVE, native_handler="adder"), {"a": 1, "b": 2}, CTX
    )

    assert echo == {"echo": "hi", "user": "u1"}
    assert total == 3
    assert handlers.names() == ["adder", "echo"]

    handlers.unregister("echo")
    with pytest.raises(AssistantError) as exc:
        await dispatcher.dispatch(ToolConfig(name="echo", implementation_type=IMPL_NATIVE), {}, CTX)
    assert exc.value.code == ErrorCode.TOOL_NOT_FOUND


@pytest.mark.asyncio
async def test_api_get_sends_query_params_and_extracts_result_path():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": {"items": [{"name": "nginx"}, {"name": "redis"}]}})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        dispatcher = ToolDispatcher(http_client=client, api_base_url="http://ops.local/api/")
        result = await dispatcher.dispatch(
            _api_tool("GET", "/k8s/pods", response_mapping={"result_path": "data.items.1.name"}),
            {"namespace": "prod", "all": True, "label": None},
            CTX,
        )

    assert result == "redis"
    request = seen[0]
    assert str(request.url).startswith("http://ops.local/api/k8s/pods?")
    assert request.url.params["namespace"] == "prod"
    assert request.url.params["all"] == "true"
    assert "label" not in request.url.params


@pytest.mark.asyncio
async def test_api_post_sends_json_to_absolute_url():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, text="accepted")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        dispatcher = ToolDispatcher(http_client=client, api_base_url="http://ops.local")
        result = await dispatcher.dispatch(
            _api_tool("post", "https://alerts.local/mute"), {"tags": {"svc": "api"}}, CTX
        )

    assert result == "accepted"
    assert seen[0].method == "POST"
    assert str(seen[0].url) == "https://alerts.local/mute"
    assert json.loads(seen[0].content) == {"tags": {"svc": "api"}}


@pytest.mark.asyncio
async def test_api_error_status_and_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/slow":
            raise httpx.ReadTimeout("timed out", request=request)
        return httpx.Response(503, text="maintenance")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        dispatcher = ToolDispatcher(http_client=client, api_base_url="http://ops.local")

        with pytest.raises(AssistantError) as upstream:
            await dispatcher.dispatch(_api_tool("GET", "/down"), {}, CTX)
        with pytest.raises(AssistantError) as timeout:
            await dispatcher.dispatch(_api_tool("GET", "/slow"), {}, CTX)
        with pytest.raises(AssistantError) as unconfigured:
            await dispatcher.dispatch(_api_tool("GET", ""), {}, CTX)

    assert upstream.value.code == ErrorCode.UPSTREAM_ERROR
    assert upstream.value.details == {"status_code": 503}
    assert "maintenance" in upstream.value.message
    assert timeout.value.code == ErrorCode.TOOL_TIMEOUT
    assert unconfigured.value.code == ErrorCode.TOOL_NOT_FOUND


@pytest.mark.asyncio
async def test_mcp_dispatch():
    tool = ToolConfig(name="list_alerts", implementation_type=IMPL_MCP, mcp_server_id=7, mcp_tool_name="alerts.list")
    mcp = FakeMCP(ToolResponse(content=[ContentBlock(type="text", text="2 firing")]))

    result = await ToolDispatcher(mcp=mcp).dispatch(tool, {"severity": "p1"}, CTX)

    assert result == "2 firing"
    assert mcp.calls == [(7, "alerts.list", {"severity": "p1"}, "prod", "10.0.0.8")]

    failing = FakeMCP(ToolResponse(content=[ContentBlock(type="text", text="boom")], is_error=True))
    with pytest.raises(AssistantError) as exc:
        await ToolDispatcher(mcp=failing).dispatch(tool, {}, CTX)
    assert exc.value.code == ErrorCode.TOOL_EXECUTION_FAILED

    with pytest.raises(AssistantError) as missing:
        await ToolDispatcher().dispatch(tool, {}, CTX)
    assert missing.value.code == ErrorCode.MCP_SERVER_NOT_FOUND


@pytest.mark.asyncio
async def test_knowledge_dispatch_adds_conversation_id():
    knowledge = FakeKnowledge(QueryResponse(answer="见运维手册", conversation_id="conv-9"))
    dispatcher = ToolDispatcher(knowledge=knowledge)

    by_name = await dispatcher.dispatch(
        ToolConfig(name="search_ops", implementation_type=IMPL_KNOWLEDGE), {"query": "重启"}, CTX
    )
    await dispatcher.dispatch(
        ToolConfig(name="search_wiki", implementation_type=IMPL_KNOWLEDGE, knowledge_provider_id=3),
        {"query": "扩容", "conversation_id": "mine"},
        CTX,
    )

    assert by_name["answer"] == "见运维手册"
    assert knowledge.calls == [
        ("execute", "search_ops", {"query": "重启", "conversation_id": "conv-9"}),
        ("provider", 3, {"query": "扩容", "conversation_id": "mine"}),
    ]

    failed = ToolDispatcher(knowledge=FakeKnowledge(QueryResponse.failed("quota exceeded")))
    with pytest.raises(AssistantError) as exc:
        await failed.dispatch(ToolConfig(name="search_ops", implementation_type=IMPL_KNOWLEDGE), {}, CTX)
    assert exc.value.code == ErrorCode.KNOWLEDGE_QUERY_FAILED
    assert "quota exceeded" in exc.value.message


@pytest.mark.asyncio
async def test_dispatch_with_timing_captures_errors():
    dispatcher = ToolDispatcher()

    result = await dispatcher.dispatch_with_timing(ToolConfig(name="odd", implementation_type="grpc"), {}, CTX)

    assert not result.success
    assert result.tool_name == "odd"
    assert result.error.code == ErrorCode.TOOL_NOT_FOUND
    assert result.duration_ms >= 0
