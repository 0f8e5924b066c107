from __future__ import annotations

import json

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from prometheus_client import REGISTRY

from aiassistant.errors import ErrorCode
from aiassistant.knowledge import QueryResponse, QueryResult
from aiassistant.models import AIAgent, AIAgentToolRel, AITool
from aiassistant.models.agent import AGENT_TYPE_EXPERT
from aiassistant.models.tool import IMPL_KNOWLEDGE, IMPL_NATIVE, RISK_HIGH
from aiassistant.observability import tracing
from aiassistant.optimization import ModelRouter, OptimizationManager, RateLimiter, ToolCache
from aiassistant.optimization.config import CacheConfig, ModelRouterConfig, RateLimitConfig, TaskModelConfig
from aiassistant.schemas.chat import ChatRequest, ClientContext, ConfirmationRequest
from aiassistant.services.agent_registry import AgentRegistry
from aiassistant.services.chat_service import (
    MSG_CANCELLED,
    MSG_NO_KNOWLEDGE,
    MSG_NOT_CONFIGURED,
    ChatOrchestrator,
)
from aiassistant.services.config_loader import SessionConfig
from aiassistant.services.confirmation_service import ConfirmationManager
from aiassistant.services.session_manager import ChatMessage, SessionManager
from aiassistant.services.tool_dispatcher import NativeHandlerRegistry, ToolDispatcher
from aiassistant.services.tool_registry import ToolConfig, ToolRegistry
from tests.utils import FakeLLM, text_response, tool_call_response


class FakeKnowledge:
    def __init__(self, response: QueryResponse) -> None:
        self.response = response
        self.queries: list[dict] = []

    async def execute(self, tool_name, args, *, user_id="", session_id=""):
        self.queries.append(dict(args))
        return self.response

    async def query_provider(self, provider_id, args, *, parameters=None, user_id="", session_id=""):
        self.queries.append(dict(args))
        return self.response


class Harness:
    """一个装配好内存依赖的编排器，native 工具调用记录在 calls 中。"""

    def __init__(self, session_factory, redis, llm, *, optimization=None, knowledge=None) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.client_ips: list[str] = []
        handlers = NativeHandlerRegistry()

        def get_pods(args, ctx):
            self.calls.append(("get_pods", dict(args)))
            self.client_ips.append(ctx.client_ip)
            return {"pods": ["nginx-1"], "namespace": args.get("namespace", "")}

        async def get_nodes(args, ctx):
            self.calls.append(("get_nodes", dict(args)))
            return ["node-a", "node-b"]

        def delete_pod(args, ctx):
            self.calls.append(("delete_pod", dict(args)))
            return "deleted"

        def broken(args, ctx):
            self.calls.append(("broken", dict(args)))
            raise RuntimeError("backend exploded")

        for name, handler in (
            ("get_pods", get_pods),
            ("get_nodes", get_nodes),
            ("delete_pod", delete_pod),
            ("broken", broken),
        ):
            handlers.register(name, handler)

        self.agents = AgentRegistry(session_factory)
        self.agents.load()
        self.tools = ToolRegistry()
        self.tools.register(ToolConfig(name="get_pods", implementation_type=IMPL_NATIVE, description="列出 Pod"))
        self.tools.register(ToolConfig(name="get_nodes", implementation_type=IMPL_NATIVE, description="列出节点"))
        self.tools.register(ToolConfig(name="delete_pod", implementation_type=IMPL_NATIVE, risk_level=RISK_HIGH))
        self.tools.register(ToolConfig(name="broken", implementation_type=IMPL_NATIVE))
        self.tools.register(ToolConfig(name="search_docs", implementation_type=IMPL_KNOWLEDGE))

        self.sessions = SessionManager(redis, SessionConfig(), prefix="t:")
        self.confirmations = ConfirmationManager(redis, ttl_seconds=300, prefix="t:")
        self.llm = llm
        self.orchestrator = ChatOrchestrator(
            agents=self.agents,
            tools=self.tools,
            dispatcher=ToolDispatcher(native_handlers=handlers, knowledge=knowledge),
            sessions=self.sessions,
            optimization=optimization or OptimizationManager(),
            llm=llm,
            confirmations=self.confirmations,
            history_limit=10,
        )

    async def chat(self, message: str = "", *, user_id: str = "u1", **kwargs):
        kwargs.setdefault("client_context", ClientContext(env="prod", ui_language="zh-CN"))
        return await self.orchestrator.handle_chat(ChatRequest(message=message, **kwargs), user_id)


@pytest.fixture()
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture()
def harness(session_factory, redis, llm) -> Harness:
    return Harness(session_factory, redis, llm)


@pytest.mark.asyncio
async def test_direct_answer_is_stored_in_session(harness, llm):
    llm.queue(text_response("你好，我是运维助手"))

    resp = await harness.chat("你好")

    assert resp.status == "completed"
    assert resp.source == "direct"
    assert resp.agent == "general"
    assert resp.assistant_message.content == "你好，我是运维助手"
    assert resp.tool is None

    request = llm.requests[0]
    assert "当前环境: prod" in request.system_prompt
    assert request.system_prompt.startswith("你是运维助手。")
    assert {d.function.name for d in request.tools} >= {"get_pods", "search_docs"}
    assert request.temperature == 0.7

    messages = await harness.sessions.get_messages(resp.session_id)
    assert [(m.role, m.content) for m in messages] == [
        ("user", "你好"),
        ("assistant", "你好，我是运维助手"),
    ]
    assert all(m.trace_id == resp.trace_id for m in messages)


@pytest.mark.asyncio
async def test_history_is_sent_on_follow_up(harness, llm):
    llm.queue(text_response("第一轮回答"), text_response("第二轮回答"))

    first = await harness.chat("第一轮")
    second = await harness.chat("第二轮", session_id=first.session_id)

    assert second.session_id == first.session_id
    assert [(m.role, m.content) for m in llm.requests[1].messages] == [
        ("user", "第一轮"),
        ("assistant", "第一轮回答"),
        ("user", "第二轮"),
    ]


@pytest.mark.asyncio
async def test_single_tool_call_is_summarised(harness, llm):
    llm.queue(tool_call_response(("get_pods", {"namespace": "dev"})), text_response("dev 下有 1 个 Pod"))

    resp = await harness.chat("看看 dev 的 pod")

    assert resp.status == "completed"
    assert resp.source == "mcp_tool"
    assert resp.assistant_message.content == "dev 下有 1 个 Pod"
    assert resp.tool.status == "success"
    assert resp.tool.result == {"pods": ["nginx-1"], "namespace": "dev"}
    assert resp.tools == [resp.tool]
    assert harness.calls == [("get_pods", {"namespace": "dev"})]

    summary_request = llm.requests[1]
    assert summary_request.system_prompt.startswith("你是结果汇总助手")
    assert summary_request.tools == []
    assistant_turn, tool_turn = summary_request.messages[-2:]
    assert assistant_turn.tool_calls[0].function.name == "get_pods"
    assert tool_turn.role == "tool"
    assert tool_turn.tool_call_id == "call_0"
    assert json.loads(tool_turn.content)["pods"] == ["nginx-1"]

    stored = await harness.sessions.get_messages(resp.session_id)
    assert stored[-1].tool_call["name"] == "get_pods"


@pytest.mark.asyncio
async def test_client_ip_reaches_tool_dispatch(harness, llm):
    llm.queue(tool_call_response(("get_pods", {"namespace": "dev"})), text_response("ok"))

    resp = await harness.orchestrator.handle_chat(
        ChatRequest(message="看看 pod", client_context=ClientContext(env="prod")),
        "u1",
        client_ip="10.1.2.3",
    )

    assert resp.status == "completed"
    assert harness.client_ips == ["10.1.2.3"]


@pytest.mark.asyncio
async def test_unconfigured_task_type_uses_router_fallback_model(session_factory, redis, llm):
    router = ModelRouter(
        ModelRouterConfig(
            task_models={"summary": TaskModelConfig(model="summary-model", temperature=0.2, max_tokens=300)},
            fallback_model="fallback-model",
        )
    )
    harness = Harness(session_factory, redis, llm, optimization=OptimizationManager(model_router=router))
    llm.queue(tool_call_response(("get_pods", {"namespace": "dev"})), text_response("dev 下有 1 个 Pod"))

    resp = await harness.chat("看看 dev 的 pod")

    assert resp.status == "completed"
    # routing 未配置 -> 全局 fallback；summary 已配置 -> 任务模型
    assert llm.requests[0].model == "fallback-model"
    assert llm.requests[1].model == "summary-model"


@pytest.mark.asyncio
async def test_summary_failure_falls_back_to_raw_result(harness, llm):
    llm.queue(tool_call_response(("get_nodes", {})), RuntimeError("summary model down"))

    resp = await harness.chat("节点列表")

    assert resp.status == "completed"
    assert resp.assistant_message.content.startswith("工具执行完成，但汇总失败")
    assert "node-a" in resp.assistant_message.content


@pytest.mark.asyncio
async def test_empty_knowledge_result_skips_summary(session_factory, redis, llm):
    knowledge = FakeKnowledge(QueryResponse(conversation_id="conv-1"))
    harness = Harness(session_factory, redis, llm, knowledge=knowledge)
    llm.queue(tool_call_response(("search_docs", {"query": "如何重启服务"})))

    resp = await harness.chat("如何重启服务", conversation_id="conv-1")

    assert resp.status == "completed"
    assert resp.source == "knowledge_base"
    assert resp.agent == "knowledge"
    assert resp.assistant_message.content == MSG_NO_KNOWLEDGE
    assert resp.conversation_id == "conv-1"
    assert len(llm.requests) == 1
    assert knowledge.queries == [{"query": "如何重启服务", "conversation_id": "conv-1"}]


@pytest.mark.asyncio
async def test_knowledge_result_is_formatted_for_summary(session_factory, redis, llm):
    knowledge = FakeKnowledge(
        QueryResponse(results=[QueryResult(content="先执行 systemctl restart", source="runbook.md", score=0.9)])
    )
    harness = Harness(session_factory, redis, llm, knowledge=knowledge)
    llm.queue(tool_call_response(("search_docs", {"query": "重启"})), text_response("按手册执行重启"))

    resp = await harness.chat("重启手册")

    assert resp.source == "knowledge_base"
    assert resp.assistant_message.content == "按手册执行重启"
    tool_message = llm.requests[1].messages[-1]
    assert "systemctl restart" in tool_message.content


@pytest.mark.asyncio
async def test_invalid_tool_arguments(harness, llm):
    llm.queue(tool_call_response(("get_pods", "{not json")))

    resp = await harness.chat("pod")

    assert resp.status == "error"
    assert resp.tool.status == "failed"
    assert resp.tool.error.code == ErrorCode.INVALID_TOOL_ARGUMENTS
    assert resp.tool.error.raw == "{not json"
    assert harness.calls == []
    assert len(llm.requests) == 1


@pytest.mark.asyncio
async def test_unknown_tool(harness, llm):
    llm.queue(tool_call_response(("drop_database", {})))

    resp = await harness.chat("危险操作")

    assert resp.status == "error"
    assert resp.tool.error.code == ErrorCode.TOOL_NOT_FOUND
    assert "drop_database" in resp.assistant_message.content


@pytest.mark.asyncio
async def test_tool_failure_is_reported(harness, llm):
    llm.queue(tool_call_response(("broken", {"id": 1})))

    resp = await harness.chat("执行")

    assert resp.status == "error"
    assert resp.assistant_message.format == "text"
    assert resp.tool.error.code == ErrorCode.TOOL_EXECUTION_FAILED
    assert resp.tool.error.message == "backend exploded"
    assert resp.tool.duration_ms is not None


@pytest.mark.asyncio
async def test_high_risk_tool_requires_confirmation_then_runs(harness, llm):
    llm.queue(tool_call_response(("delete_pod", {"namespace": "prod", "name": "nginx-1"})))

    pending = await harness.chat("删掉 nginx-1")

    assert pending.status == "pending_confirmation"
    info = pending.pending_confirmation
    assert info.confirm_id.startswith("confirm_")
    assert info.risk_level == "high"
    assert info.proposed_tool.name == "delete_pod"
    assert info.proposed_tool.request == {"namespace": "prod", "name": "nginx-1"}
    assert harness.calls == []

    llm.queue(text_response("nginx-1 已删除"))
    done = await harness.chat(
        session_id=pending.session_id,
        confirmation=ConfirmationRequest(confirm_id=info.confirm_id, action="approve"),
    )

    assert done.status == "completed"
    assert done.assistant_message.content == "nginx-1 已删除"
    assert harness.calls == [("delete_pod", {"namespace": "prod", "name": "nginx-1"})]

    replay = await harness.chat(
        session_id=pending.session_id,
        confirmation=ConfirmationRequest(confirm_id=info.confirm_id, action="approve"),
    )
    assert replay.status == "error"
    assert len(harness.calls) == 1


@pytest.mark.asyncio
async def test_rejected_confirmation_cancels(harness, llm):
    llm.queue(tool_call_response(("delete_pod", {"name": "nginx-1"})))
    pending = await harness.chat("删掉 nginx-1")

    resp = await harness.chat(
        session_id=pending.session_id,
        confirmation=ConfirmationRequest(confirm_id=pending.pending_confirmation.confirm_id, action="reject"),
    )

    assert resp.status == "completed"
    assert resp.assistant_message.content == MSG_CANCELLED
    assert harness.calls == []
    assert (await harness.sessions.get_messages(pending.session_id))[-1].content == MSG_CANCELLED


@pytest.mark.asyncio
async def test_confirmation_from_other_session_is_refused(harness, llm):
    llm.queue(tool_call_response(("delete_pod", {"name": "nginx-1"})))
    pending = await harness.chat("删掉 nginx-1")
    other = await harness.sessions.create("u1")

    resp = await harness.chat(
        session_id=other.id,
        confirmation=ConfirmationRequest(confirm_id=pending.pending_confirmation.confirm_id, action="approve"),
    )

    assert resp.status == "error"
    assert resp.assistant_message.content.startswith(MSG_CANCELLED)
    assert harness.calls == []
    assert await harness.confirmations.get(pending.pending_confirmation.confirm_id)


@pytest.mark.asyncio
async def test_fan_out_runs_tools_and_keeps_order(harness, llm):
    llm.queue(
        tool_call_response(("get_pods", {"namespace": "prod"}), ("get_nodes", {}), ("missing_tool", {})),
        text_response("汇总完成"),
    )

    resp = await harness.chat("集群概况")

    assert resp.status == "completed"
    assert resp.assistant_message.content == "汇总完成"
    assert [t.name for t in resp.tools] == ["get_pods", "get_nodes", "missing_tool"]
    assert [t.status for t in resp.tools] == ["success", "success", "failed"]
    assert resp.tool == resp.tools[0]
    tool_messages = [m for m in llm.requests[1].messages if m.role == "tool"]
    assert [m.tool_call_id for m in tool_messages] == ["call_0", "call_1", "call_2"]


@pytest.mark.asyncio
async def test_fan_out_with_risky_call_stages_whole_turn(harness, llm):
    llm.queue(
        tool_call_response(
            ("get_pods", {"namespace": "prod"}),
            ("get_nodes", {"action": "delete", "namespace": "prod", "name": "node-a"}),
        )
    )

    resp = await harness.chat("清理节点")

    assert resp.status == "pending_confirmation"
    assert resp.pending_confirmation.proposed_tool.name == "get_nodes"
    assert harness.calls == []


@pytest.mark.asyncio
async def test_cached_tool_result_is_reused(session_factory, redis, llm):
    optimization = OptimizationManager(tool_cache=ToolCache(redis, CacheConfig(idempotent_tools=["get_pods"])))
    harness = Harness(session_factory, redis, llm, optimization=optimization)
    for _ in range(2):
        llm.queue(tool_call_response(("get_pods", {"namespace": "dev"})), text_response("ok"))

    first = await harness.chat("pod 列表")
    second = await harness.chat("pod 列表", session_id=first.session_id)

    assert not first.tool.cache_hit
    assert second.tool.cache_hit
    assert second.tool.result == first.tool.result
    assert len(harness.calls) == 1


@pytest.mark.asyncio
async def test_rate_limited_request(session_factory, redis, llm):
    limiter = RateLimiter(redis, RateLimitConfig(default_rpm=1), clock=lambda: 1_000_000.0)
    harness = Harness(session_factory, redis, llm, optimization=OptimizationManager(rate_limiter=limiter))
    llm.queue(text_response("ok"))

    assert (await harness.chat("hi")).status == "completed"
    limited = await harness.chat("hi again")

    assert limited.status == "error"
    assert 1 <= limited.retry_after <= 60
    assert str(limited.retry_after) in limited.assistant_message.content
    assert len(llm.requests) == 1


@pytest.mark.asyncio
async def test_llm_not_configured(session_factory, redis):
    harness = Harness(session_factory, redis, None)

    resp = await harness.chat("hi")

    assert resp.status == "error"
    assert resp.assistant_message.content == MSG_NOT_CONFIGURED
    assert resp.session_id


@pytest.mark.asyncio
async def test_llm_failure_returns_error_envelope(harness, llm):
    llm.queue(RuntimeError("connection reset"))

    resp = await harness.chat("hi")

    assert resp.status == "error"
    assert resp.agent == "general"
    assert "失败" in resp.assistant_message.content
    assert [m.role for m in await harness.sessions.get_messages(resp.session_id)] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_session_of_other_user_is_refused(harness, llm):
    owned = await harness.sessions.create("u1")
    await harness.sessions.add_message(owned.id, ChatMessage(role="user", content="secret"))

    resp = await harness.chat("hi", user_id="u2", session_id=owned.id)

    assert resp.status == "error"
    assert resp.session_id == owned.id
    assert llm.requests == []


@pytest.mark.asyncio
async def test_unknown_session_starts_a_new_one(harness, llm):
    llm.queue(text_response("ok"))

    resp = await harness.chat("hi", session_id="ses_gone")

    assert resp.session_id != "ses_gone"
    assert await harness.sessions.check_owner(resp.session_id, "u1")


@pytest.mark.asyncio
async def test_mention_routes_and_strips_prefix(harness, llm):
    llm.queue(text_response("知识库回答"))

    resp = await harness.chat("@knowledge 网关怎么配置")

    assert resp.agent == "knowledge"
    assert llm.requests[0].messages[-1].content == "网关怎么配置"
    assert llm.requests[0].system_prompt.startswith("你是知识库助手")


@pytest.mark.asyncio
async def test_agent_bound_tools_limit_the_catalogue(session_factory, redis, llm):
    with session_factory() as session:
        agent = AIAgent(
            name="k8s_expert",
            description="K8s 专家",
            system_prompt="你是 K8s 专家",
            agent_type=AGENT_TYPE_EXPERT,
            keywords=["pod"],
            priority=50,
            enabled=True,
        )
        tool = AITool(name="get_pods", implementation_type=IMPL_NATIVE, description="列出 Pod")
        session.add_all([agent, tool])
        session.flush()
        session.add(AIAgentToolRel(agent_id=agent.id, tool_id=tool.id))
        session.commit()
    harness = Harness(session_factory, redis, llm)
    llm.queue(text_response("好的"))

    resp = await harness.chat("pod 状态")

    assert resp.agent == "k8s_expert"
    assert [d.function.name for d in llm.requests[0].tools] == ["get_pods"]


def _sample(name: str, **labels: str) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


@pytest.mark.asyncio
async def test_turn_records_chat_llm_and_tool_metrics(harness, llm):
    chat = _sample("ai_assistant_chat_requests_total", mode="chat", status="completed")
    calls = _sample("ai_assistant_llm_calls_total", model="fake-model", status="success")
    prompt = _sample("ai_assistant_tokens_total", model="fake-model", type="prompt")
    tool = _sample("ai_assistant_tool_calls_total", tool="get_pods", status="success")
    llm.queue(tool_call_response(("get_pods", {"namespace": "dev"})), text_response("ok", prompt_tokens=7))

    resp = await harness.chat("看看 pod")

    assert resp.status == "completed"
    assert _sample("ai_assistant_chat_requests_total", mode="chat", status="completed") == chat + 1
    assert _sample("ai_assistant_llm_calls_total", model="fake-model", status="success") == calls + 2
    assert _sample("ai_assistant_tokens_total", model="fake-model", type="prompt") == prompt + 27
    assert _sample("ai_assistant_tool_calls_total", tool="get_pods", status="success") == tool + 1


@pytest.mark.asyncio
async def test_failed_tool_and_llm_are_counted_as_errors(harness, llm):
    tool = _sample("ai_assistant_tool_calls_total", tool="broken", status="error")
    errors = _sample("ai_assistant_errors_total", type="tool", code=ErrorCode.TOOL_EXECUTION_FAILED)
    llm_errors = _sample("ai_assistant_llm_calls_total", model="fake-model", status="error")
    llm.queue(tool_call_response(("broken", {"id": 1})), RuntimeError("upstream 502"))

    first = await harness.chat("执行")
    second = await harness.chat("再试一次")

    assert first.status == second.status == "error"
    assert _sample("ai_assistant_tool_calls_total", tool="broken", status="error") == tool + 1
    assert _sample("ai_assistant_errors_total", type="tool", code=ErrorCode.TOOL_EXECUTION_FAILED) == errors + 1
    assert _sample("ai_assistant_llm_calls_total", model="fake-model", status="error") == llm_errors + 1


@pytest.fixture()
def spans(monkeypatch) -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    monkeypatch.setattr(tracing, "get_tracer", lambda: provider.get_tracer("tests"))
    return exporter


@pytest.mark.asyncio
async def test_turn_is_traced_as_one_chat_span_with_children(spans, harness, llm):
    llm.queue(tool_call_response(("get_pods", {"namespace": "dev"})), text_response("ok"))

    resp = await harness.chat("看看 pod")

    finished = spans.get_finished_spans()
    by_name: dict[str, list] = {}
    for span in finished:
        by_name.setdefault(span.name, []).append(span)

    (chat,) = by_name[tracing.SPAN_CHAT]
    (tool,) = by_name[tracing.SPAN_TOOL_CALL]
    assert len(by_name[tracing.SPAN_LLM_CALL]) == 2

    assert chat.attributes["ai.session_id"] == resp.session_id
    assert chat.attributes["ai.user_id"] == "u1"
    assert chat.attributes["ai.status"] == "completed"
    assert tool.attributes["tool.name"] == "get_pods"
    assert tool.attributes["tool.success"] is True
    assert tool.attributes["cache.hit"] is False
    assert tool.parent.span_id == chat.context.span_id
    assert by_name[tracing.SPAN_LLM_CALL][0].attributes["llm.prompt_tokens"] == 20

    # 响应里的 trace_id 与链路一致
    assert resp.trace_id == format(chat.context.trace_id, "032x")
    assert {span.context.trace_id for span in finished} == {chat.context.trace_id}
