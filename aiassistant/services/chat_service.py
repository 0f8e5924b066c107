"""
Chat orchestrator: one turn = route to an agent, call the model with the
agent's tool catalogue, dispatch the requested tools (single or fan-out),
then summarise the tool results with a second model call.

Every failure is folded into a `ChatResponse` envelope; nothing raised by
the model client or a tool back end reaches the HTTP layer.
"""

from __future__ import annotations

import asyncio
import json
import math
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from aiassistant.errors import AssistantError, ErrorCode
from aiassistant.knowledge import QueryResponse, format_results_for_llm
from aiassistant.llm.client import (
    ChatCompletionRequest,
    ChatCompletionResponse,
    LLMClient,
    LLMMessage,
    ToolCallFunction,
    ToolCallPayload,
    ToolDefinition,
)
from aiassistant.logging_config import logger
from aiassistant.models.agent import AGENT_SUMMARY
from aiassistant.models.tool import IMPL_KNOWLEDGE, RISK_HIGH
from aiassistant.observability.metrics import METRICS
from aiassistant.observability.metrics import STATUS_ERROR as METRIC_ERROR
from aiassistant.observability.metrics import STATUS_SUCCESS as METRIC_SUCCESS
from aiassistant.observability.tracing import (
    chat_span,
    current_trace_id,
    llm_span,
    set_llm_result,
    set_rate_limited,
    set_retry_info,
    set_tool_result,
    tool_span,
)
from aiassistant.optimization import OptimizationManager
from aiassistant.optimization.concurrent import ToolCall
from aiassistant.optimization.config import TASK_ROUTING, TASK_SUMMARY
from aiassistant.optimization.retry import MaxRetriesExceededError, RetryableError, non_retryable
from aiassistant.routing import AgentRouter
from aiassistant.schemas.chat import (
    FORMAT_MARKDOWN,
    FORMAT_TEXT,
    SOURCE_DIRECT,
    SOURCE_KNOWLEDGE_BASE,
    SOURCE_MCP_TOOL,
    STATUS_COMPLETED,
    STATUS_ERROR,
    STATUS_PENDING_CONFIRMATION,
    AssistantMessage,
    ChatRequest,
    ChatResponse,
    ClientContext,
    PendingConfirmationInfo,
    ProposedTool,
    ToolError,
    ToolInfo,
)
from aiassistant.settings import settings

from .agent_registry import AgentConfig, AgentRegistry
from .confirmation_service import ConfirmationManager, build_tool_operation
from .risk_checker import RiskChecker, max_risk
from .session_manager import ROLE_ASSISTANT, ROLE_USER, ChatMessage, SessionManager, SessionNotFoundError
from .tool_dispatcher import NON_RETRYABLE_CODES, DispatchContext, ToolDispatcher
from .tool_registry import ToolConfig, ToolRegistry

MSG_NOT_CONFIGURED = "AI 服务未配置，请联系管理员配置 AI 模型。"
MSG_LLM_FAILED = "AI 服务调用失败，请稍后重试。"
MSG_NO_KNOWLEDGE = "知识库中没有找到相关信息"
MSG_CANCELLED = "操作已取消"
MSG_INVALID_ARGS = "工具参数解析失败"
MSG_CONFIRM_UNAVAILABLE = "确认服务未配置"

CHAT_MODE_CHAT = "chat"
CHAT_MODE_CONFIRM = "confirm"

BASE_SYSTEM_PROMPT = "你是运维助手。"

CONTEXT_PROMPT_TEMPLATE = """

当前环境: {env}
时区: {timezone}
语言: {language}

## 工具使用原则
调用知识库工具时，query 参数直接使用用户的完整原始问题，不要自行提取关键词或改写问题。

## 回答原则
- 如果知识库返回了相关结果，基于结果回答
- 严禁修改知识库中返回的图片链接 (Markdown 格式)，必须原样保留
- 如果知识库没有相关信息，用你的知识直接回答用户问题
- 禁止编造不存在的信息
- 所有写操作必须二次确认"""


def build_system_prompt(agent: AgentConfig | None, client_context: ClientContext) -> str:
    base = agent.system_prompt if agent is not None and agent.system_prompt else BASE_SYSTEM_PROMPT
    return base + CONTEXT_PROMPT_TEMPLATE.format(
        env=client_context.env or "-",
        timezone=client_context.user_timezone or "-",
        language=client_context.ui_language or "-",
    )


def _unwrap_error(exc: BaseException) -> BaseException:
    """剥掉重试器加的包装，拿到真正的失败原因。"""
    while True:
        if isinstance(exc, MaxRetriesExceededError):
            exc = exc.last_error
        elif isinstance(exc, RetryableError) and isinstance(exc.error, BaseException):
            exc = exc.error
        else:
            return exc


def to_tool_error(exc: BaseException, *, default_code: str = ErrorCode.TOOL_EXECUTION_FAILED) -> ToolError:
    exc = _unwrap_error(exc)
    if isinstance(exc, AssistantError):
        return ToolError(code=exc.code, message=exc.message)
    return ToolError(code=default_code, message=str(exc) or exc.__class__.__name__, raw=exc.__class__.__name__)


def render_tool_result(tool: ToolConfig | None, result: Any) -> str:
    """把工具结果转成 tool 角色消息的文本。"""
    if tool is not None and tool.implementation_type == IMPL_KNOWLEDGE and isinstance(result, dict):
        return format_results_for_llm(QueryResponse.model_validate(result))
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False, default=str)


def parse_tool_arguments(raw: str) -> dict[str, Any] | None:
    """None 表示 arguments 不是合法的 JSON 对象。"""
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _is_empty_knowledge(result: Any) -> bool:
    if not isinstance(result, dict):
        return False
    response = QueryResponse.model_validate(result)
    return response.ok and response.is_empty


@dataclass
class _ToolRun:
    tool: ToolConfig | None
    info: ToolInfo
    text: str


@dataclass
class _TurnContext:
    trace_id: str
    session_id: str
    user_id: str
    request: ChatRequest
    agent: AgentConfig | None
    history: list[LLMMessage]
    cancel_event: asyncio.Event | None = None
    client_ip: str = ""

    @property
    def dispatch_context(self) -> DispatchContext:
        client = self.request.client_context
        return DispatchContext(
            user_id=self.user_id,
            session_id=self.session_id,
            trace_id=self.trace_id,
            env=client.env,
            busi_group_id=client.busi_group_id,
            conversation_id=self.request.conversation_id or "",
            client_ip=self.client_ip,
        )


class ChatOrchestrator:
    def __init__(
        self,
        *,
        agents: AgentRegistry,
        tools: ToolRegistry,
        dispatcher: ToolDispatcher,
        sessions: SessionManager,
        optimization: OptimizationManager,
        llm: LLMClient | None = None,
        router: AgentRouter | None = None,
        confirmations: ConfirmationManager | None = None,
        risk_checker: RiskChecker | None = None,
        history_limit: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.agents = agents
        self.tools = tools
        self.dispatcher = dispatcher
        self.sessions = sessions
        self.optimization = optimization
        # 配置热加载时由容器替换
        self.llm = llm
        self.router = router or AgentRouter(agents)
        self.confirmations = confirmations
        self.risk_checker = risk_checker or RiskChecker()
        self.history_limit = settings.chat_history_limit if history_limit is None else history_limit
        self._clock = clock

    # ---- envelope helpers ----

    @staticmethod
    def _response(
        turn: _TurnContext | None,
        *,
        trace_id: str = "",
        session_id: str = "",
        status: str,
        content: str,
        format: str = FORMAT_MARKDOWN,
        source: str | None = SOURCE_DIRECT,
        **extra: Any,
    ) -> ChatResponse:
        if turn is not None:
            trace_id, session_id = turn.trace_id, turn.session_id
            if turn.agent is not None:
                extra.setdefault("agent", turn.agent.name)
        return ChatResponse(
            trace_id=trace_id,
            session_id=session_id,
            status=status,
            source=source,
            assistant_message=AssistantMessage(format=format, content=content),
            **extra,
        )

    # ---- entry point ----

    async def handle_chat(
        self,
        request: ChatRequest,
        user_id: str,
        *,
        cancel_event: asyncio.Event | None = None,
        client_ip: str | None = None,
    ) -> ChatResponse:
        mode = CHAT_MODE_CONFIRM if request.confirmation is not None else CHAT_MODE_CHAT
        started = time.perf_counter()
        with chat_span(request.session_id or "", str(user_id), mode) as span:
            response = await self._handle_chat(request, user_id, cancel_event=cancel_event, client_ip=client_ip)
            span.set_attribute("ai.session_id", response.session_id)
            span.set_attribute("ai.status", response.status)
        METRICS.record_chat_request(mode, response.status, time.perf_counter() - started)
        return response

    async def _handle_chat(
        self,
        request: ChatRequest,
        user_id: str,
        *,
        cancel_event: asyncio.Event | None,
        client_ip: str | None,
    ) -> ChatResponse:
        # 有 trace 上下文时沿用其 trace id，便于日志与链路对齐
        trace_id = current_trace_id() or uuid.uuid4().hex
        user_id = str(user_id)
        logger.info("trace_id=%s chat request from user %s (session=%s)", trace_id, user_id, request.session_id)

        session_id, denied = await self._resolve_session(request.session_id, user_id, trace_id)
        if denied is not None:
            return self._response(
                None,
                trace_id=trace_id,
                session_id=session_id,
                status=STATUS_ERROR,
                content=denied,
                format=FORMAT_TEXT,
            )

        if request.confirmation is not None:
            return await self._handle_confirmation(
                request, trace_id, session_id, user_id, cancel_event, client_ip=client_ip or ""
            )

        limited = await self.optimization.check_rate_limit(
            user_id,
            str(request.client_context.busi_group_id) if request.client_context.busi_group_id else None,
        )
        if not limited.allowed:
            retry_after = max(1, min(60, int(math.ceil(limited.retry_after))))
            set_rate_limited(request.client_context.busi_group_id)
            logger.warning("trace_id=%s rate limited user %s, retry after %ss", trace_id, user_id, retry_after)
            return self._response(
                None,
                trace_id=trace_id,
                session_id=session_id,
                status=STATUS_ERROR,
                content=f"请求过于频繁，请在 {retry_after} 秒后重试。",
                format=FORMAT_TEXT,
                retry_after=retry_after,
            )

        llm = self.llm
        if llm is None:
            return self._response(
                None,
                trace_id=trace_id,
                session_id=session_id,
                status=STATUS_ERROR,
                content=MSG_NOT_CONFIGURED,
                format=FORMAT_TEXT,
            )

        route = await self.router.route(request.message, llm=llm)
        logger.info(
            "trace_id=%s routed to agent %s (%s)",
            trace_id,
            route.agent.name if route.agent else "-",
            route.match_type,
        )

        history = await self._load_history(session_id)
        await self._append(session_id, ChatMessage(role=ROLE_USER, content=request.message, trace_id=trace_id))
        history.append(LLMMessage(role=ROLE_USER, content=route.clean_query or request.message))

        turn = _TurnContext(
            trace_id=trace_id,
            session_id=session_id,
            user_id=user_id,
            request=request,
            agent=route.agent,
            history=history,
            cancel_event=cancel_event,
            client_ip=client_ip or "",
        )
        response = await self._run_turn(turn, llm)
        await self._append(
            session_id,
            ChatMessage(
                role=ROLE_ASSISTANT,
                content=response.assistant_message.content,
                trace_id=trace_id,
                tool_call=response.tool.model_dump(exclude_none=True) if response.tool else None,
            ),
        )
        return response

    # ---- session helpers ----

    async def _resolve_session(self, session_id: str | None, user_id: str, trace_id: str) -> tuple[str, str | None]:
        if session_id:
            try:
                session = await self.sessions.get(session_id)
            except SessionNotFoundError:
                logger.warning("trace_id=%s session %s not found, creating a new one", trace_id, session_id)
            else:
                if session.user_id != user_id:
                    return session_id, "无权访问该会话"
                await self.sessions.update_last_active(session_id)
                return session_id, None
        session = await self.sessions.create(user_id)
        return session.id, None

    async def _load_history(self, session_id: str) -> list[LLMMessage]:
        messages = await self.sessions.get_messages(session_id, self.history_limit)
        return [
            LLMMessage(role=m.role, content=m.content)
            for m in messages
            if m.role in (ROLE_USER, ROLE_ASSISTANT) and m.content
        ]

    async def _append(self, session_id: str, message: ChatMessage) -> None:
        await self.sessions.add_message(session_id, message)

    # ---- model calls ----

    def _model_params(self, task_type: str, agent: AgentConfig | None) -> tuple[str, float, int]:
        # 模型名始终经由路由器解析，任务未配置时落到全局 fallback_model
        model, temperature, max_tokens = self.optimization.get_model(task_type), 0.0, 0
        task = self.optimization.get_model_config(task_type)
        if task is not None:
            temperature, max_tokens = task.temperature, task.max_tokens
        if agent is not None:
            model = agent.model or model
            temperature = agent.temperature or temperature
            max_tokens = agent.max_tokens or max_tokens
        return model, temperature, max_tokens

    async def _call_llm(
        self,
        llm: LLMClient,
        turn: _TurnContext,
        *,
        task_type: str,
        agent: AgentConfig | None,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
    ) -> ChatCompletionResponse:
        model, temperature, max_tokens = self._model_params(task_type, agent)
        request = ChatCompletionRequest(
            model=model,
            messages=messages,
            tools=tools or [],
            system_prompt=build_system_prompt(agent or turn.agent, turn.request.client_context),
            temperature=temperature,
            max_tokens=max_tokens,
        )
        started = time.perf_counter()
        with llm_span(model or llm.model) as span:
            try:
                resp = await llm.chat_completion(request)
            except Exception:
                METRICS.record_llm_call(model or llm.model, METRIC_ERROR, time.perf_counter() - started)
                raise
            elapsed = time.perf_counter() - started
            set_llm_result(
                span,
                prompt_tokens=resp.usage.prompt_tokens,
                completion_tokens=resp.usage.completion_tokens,
                duration_ms=int(elapsed * 1000),
            )
        METRICS.record_llm_call(
            model or resp.model or llm.model,
            METRIC_SUCCESS,
            elapsed,
            prompt_tokens=resp.usage.prompt_tokens,
            completion_tokens=resp.usage.completion_tokens,
        )
        try:
            await self.optimization.record_usage(
                user_id=turn.user_id,
                session_id=turn.session_id,
                model=model or resp.model or llm.model,
                prompt_tokens=resp.usage.prompt_tokens,
                completion_tokens=resp.usage.completion_tokens,
            )
        except Exception as exc:
            logger.warning("trace_id=%s failed to record LLM usage: %s", turn.trace_id, exc)
        return resp

    # ---- turn ----

    def _catalogue(self, agent: AgentConfig | None) -> list[ToolDefinition]:
        if agent is not None and agent.tools:
            return [tool.definition() for tool in agent.tools]
        return self.tools.definitions()

    def _lookup_tool(self, name: str, agent: AgentConfig | None) -> ToolConfig | None:
        if agent is not None:
            for tool in agent.tools:
                if tool.name == name:
                    return tool
        return self.tools.get(name)

    async def _run_turn(self, turn: _TurnContext, llm: LLMClient) -> ChatResponse:
        try:
            resp = await self._call_llm(
                llm,
                turn,
                task_type=TASK_ROUTING,
                agent=turn.agent,
                messages=list(turn.history),
                tools=self._catalogue(turn.agent),
            )
        except Exception as exc:
            logger.error("trace_id=%s LLM call failed: %s", turn.trace_id, exc)
            return self._response(turn, status=STATUS_ERROR, content=MSG_LLM_FAILED, format=FORMAT_TEXT)

        tool_calls = resp.tool_calls
        if not tool_calls:
            return self._response(turn, status=STATUS_COMPLETED, content=resp.content)

        calls = [self._to_tool_call(tc) for tc in tool_calls]
        if len(calls) == 1:
            return await self._handle_single(turn, llm, calls[0])
        return await self._handle_fan_out(turn, llm, calls)

    @staticmethod
    def _to_tool_call(payload: ToolCallPayload) -> ToolCall:
        raw = payload.function.arguments or ""
        return ToolCall(
            id=payload.id or f"call_{uuid.uuid4().hex[:12]}",
            name=payload.function.name,
            args=parse_tool_arguments(raw) or {},
            raw_arguments=raw,
        )

    async def _stage_confirmation(
        self,
        turn: _TurnContext,
        tool: ToolConfig,
        args: dict[str, Any],
    ) -> ChatResponse | None:
        """高风险工具转入二次确认；返回 None 表示可以直接执行。"""
        assessed = self.risk_checker.assess_tool_args(args)
        level = max_risk(tool.risk_level, assessed.level)
        if level != RISK_HIGH:
            return None
        if self.confirmations is None:
            logger.warning("trace_id=%s high risk tool %s blocked: confirmation disabled", turn.trace_id, tool.name)
            return self._response(
                turn,
                status=STATUS_ERROR,
                content=MSG_CONFIRM_UNAVAILABLE,
                format=FORMAT_TEXT,
                source=SOURCE_MCP_TOOL,
            )

        summary = assessed.reason or f"执行高风险工具 {tool.name}"
        pending = await self.confirmations.create(
            session_id=turn.session_id,
            user_id=turn.user_id,
            risk_level=level,
            summary=summary,
            operation=build_tool_operation(tool.name, args),
            check_result={"level": assessed.level, "reason": assessed.reason, "suggestion": assessed.suggestion},
        )
        logger.info("trace_id=%s tool %s staged for confirmation %s", turn.trace_id, tool.name, pending.confirm_id)
        return self._response(
            turn,
            status=STATUS_PENDING_CONFIRMATION,
            content=f"⚠️ 检测到高风险操作，请确认：\n\n{summary}",
            source=SOURCE_MCP_TOOL,
            pending_confirmation=PendingConfirmationInfo(
                confirm_id=pending.confirm_id,
                risk_level=RISK_HIGH,
                summary=summary,
                proposed_tool=ProposedTool(name=tool.name, request=args),
                check_result=pending.check_result,
                expires_at=pending.expires_at,
            ),
        )

    async def _execute_tool(
        self,
        turn: _TurnContext,
        tool: ToolConfig,
        args: dict[str, Any],
    ) -> tuple[Any, bool]:
        """缓存命中直接返回；否则带重试执行并写缓存。失败时抛出。"""
        cached = await self.optimization.get_cached_result(tool.name, args)
        if cached is not None:
            logger.info("trace_id=%s cache hit for tool %s", turn.trace_id, tool.name)
            return cached.result, True

        ctx = turn.dispatch_context

        async def _attempt() -> Any:
            try:
                return await self.dispatcher.dispatch(tool, args, ctx)
            except AssistantError as exc:
                if exc.code in NON_RETRYABLE_CODES:
                    raise non_retryable(exc) from exc
                raise

        outcome = await self.optimization.execute_with_retry(
            _attempt, cancel_event=turn.cancel_event, operation=tool.name
        )
        set_retry_info(outcome.attempts)
        if outcome.error is not None:
            logger.error(
                "trace_id=%s tool %s failed after %d attempts: %s",
                turn.trace_id,
                tool.name,
                outcome.attempts,
                outcome.error,
            )
            raise _unwrap_error(outcome.error)

        await self.optimization.set_cached_result(tool.name, args, outcome.result)
        return outcome.result, False

    async def _run_tool(self, turn: _TurnContext, call: ToolCall) -> _ToolRun:
        """执行单个工具并整理成 ToolInfo + tool 消息文本，不抛异常。"""
        started = time.perf_counter()
        with tool_span(call.name) as span:
            run = await self._run_tool_once(turn, call)
            elapsed = time.perf_counter() - started
            success = run.info.status == "success"
            set_tool_result(
                span,
                success=success,
                status=run.info.status,
                duration_ms=int(elapsed * 1000),
                cache_hit=run.info.cache_hit if success else None,
            )
        METRICS.record_tool_call(call.name, METRIC_SUCCESS if success else METRIC_ERROR, elapsed)
        if run.info.error is not None:
            METRICS.record_error("tool", run.info.error.code)
        return run

    async def _run_tool_once(self, turn: _TurnContext, call: ToolCall) -> _ToolRun:
        if parse_tool_arguments(call.raw_arguments) is None:
            return _ToolRun(
                tool=None,
                info=ToolInfo(
                    name=call.name,
                    status="failed",
                    error=ToolError(
                        code=ErrorCode.INVALID_TOOL_ARGUMENTS,
                        message=MSG_INVALID_ARGS,
                        raw=call.raw_arguments[:500],
                    ),
                ),
                text=f"工具 {call.name} 执行失败: {MSG_INVALID_ARGS}",
            )

        tool = self._lookup_tool(call.name, turn.agent)
        if tool is None:
            return _ToolRun(
                tool=None,
                info=ToolInfo(
                    name=call.name,
                    status="failed",
                    request=call.args,
                    error=ToolError(code=ErrorCode.TOOL_NOT_FOUND, message=f"工具 {call.name} 不存在或未启用"),
                ),
                text=f"工具 {call.name} 不存在或未启用",
            )

        started = time.perf_counter()
        try:
            result, cache_hit = await self._execute_tool(turn, tool, call.args)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            default_code = (
                ErrorCode.KNOWLEDGE_QUERY_FAILED
                if tool.implementation_type == IMPL_KNOWLEDGE
                else ErrorCode.TOOL_EXECUTION_FAILED
            )
            error = to_tool_error(exc, default_code=default_code)
            return _ToolRun(
                tool=tool,
                info=ToolInfo(
                    name=tool.name,
                    status="failed",
                    request=call.args,
                    error=error,
                    duration_ms=int((time.perf_counter() - started) * 1000),
                ),
                text=f"工具 {tool.name} 执行失败: {error.message}",
            )

        return _ToolRun(
            tool=tool,
            info=ToolInfo(
                name=tool.name,
                status="success",
                request=call.args,
                result=result,
                cache_hit=cache_hit,
                duration_ms=int((time.perf_counter() - started) * 1000),
            ),
            text=render_tool_result(tool, result),
        )

    async def _summarize(
        self,
        turn: _TurnContext,
        llm: LLMClient,
        calls: list[ToolCall],
        runs: list[_ToolRun],
    ) -> str | None:
        """把工具结果交给 summary 模型；失败返回 None。"""
        messages = list(turn.history)
        messages.append(
            LLMMessage(
                role=ROLE_ASSISTANT,
                content="",
                tool_calls=[
                    ToolCallPayload(
                        id=call.id,
                        function=ToolCallFunction(
                            name=call.name,
                            arguments=call.raw_arguments or json.dumps(call.args or {}, ensure_ascii=False),
                        ),
                    )
                    for call in calls
                ],
            )
        )
        for call, run in zip(calls, runs):
            messages.append(LLMMessage(role="tool", tool_call_id=call.id, content=run.text))

        summary_agent = self.agents.get_system_agent(AGENT_SUMMARY)
        try:
            resp = await self._call_llm(
                llm,
                turn,
                task_type=TASK_SUMMARY,
                agent=summary_agent,
                messages=messages,
            )
        except Exception as exc:
            logger.error("trace_id=%s summary LLM call failed: %s", turn.trace_id, exc)
            return None
        return resp.content

    @staticmethod
    def _source_for(runs: list[_ToolRun]) -> str:
        tools = [r.tool for r in runs if r.tool is not None]
        if tools and all(t.implementation_type == IMPL_KNOWLEDGE for t in tools):
            return SOURCE_KNOWLEDGE_BASE
        return SOURCE_MCP_TOOL

    @staticmethod
    def _conversation_id(runs: list[_ToolRun]) -> str | None:
        for run in runs:
            result = run.info.result
            if run.tool is not None and run.tool.implementation_type == IMPL_KNOWLEDGE and isinstance(result, dict):
                conversation_id = result.get("conversation_id")
                if conversation_id:
                    return str(conversation_id)
        return None

    async def _handle_single(self, turn: _TurnContext, llm: LLMClient, call: ToolCall) -> ChatResponse:
        logger.info("trace_id=%s tool call: %s args=%s", turn.trace_id, call.name, call.raw_arguments)

        if parse_tool_arguments(call.raw_arguments) is not None:
            tool = self._lookup_tool(call.name, turn.agent)
            if tool is not None:
                pending = await self._stage_confirmation(turn, tool, call.args)
                if pending is not None:
                    return pending

        return await self._finish_single(turn, llm, call, await self._run_tool(turn, call))

    async def _finish_single(
        self,
        turn: _TurnContext,
        llm: LLMClient,
        call: ToolCall,
        run: _ToolRun,
    ) -> ChatResponse:
        source = self._source_for([run])
        if run.info.status == "failed":
            return self._response(
                turn,
                status=STATUS_ERROR,
                content=run.text,
                format=FORMAT_TEXT,
                source=source,
                tool=run.info,
                tools=[run.info],
            )

        conversation_id = self._conversation_id([run])
        if (
            run.tool is not None
            and run.tool.implementation_type == IMPL_KNOWLEDGE
            and _is_empty_knowledge(run.info.result)
        ):
            logger.info("trace_id=%s knowledge base returned no results", turn.trace_id)
            return self._response(
                turn,
                status=STATUS_COMPLETED,
                content=MSG_NO_KNOWLEDGE,
                format=FORMAT_TEXT,
                source=source,
                conversation_id=conversation_id,
                tool=run.info,
                tools=[run.info],
            )

        summary = await self._summarize(turn, llm, [call], [run])
        if summary is None:
            summary = f"工具执行完成，但汇总失败:\n\n{run.text}"
        return self._response(
            turn,
            status=STATUS_COMPLETED,
            content=summary,
            source=source,
            conversation_id=conversation_id,
            tool=run.info,
            tools=[run.info],
        )

    async def _handle_fan_out(self, turn: _TurnContext, llm: LLMClient, calls: list[ToolCall]) -> ChatResponse:
        logger.info("trace_id=%s handling %d tool calls concurrently", turn.trace_id, len(calls))

        # 任一高风险调用都会让整轮进入确认，不执行其它工具
        for call in calls:
            if parse_tool_arguments(call.raw_arguments) is None:
                continue
            tool = self._lookup_tool(call.name, turn.agent)
            if tool is None:
                continue
            pending = await self._stage_confirmation(turn, tool, call.args)
            if pending is not None:
                return pending

        async def _executor(call: ToolCall) -> _ToolRun:
            return await self._run_tool(turn, call)

        results = await self.optimization.execute_tools_concurrently(calls, _executor)
        runs: list[_ToolRun] = []
        for call, result in zip(calls, results):
            if result.success:
                runs.append(result.result)
            else:
                error = to_tool_error(result.error) if result.error else ToolError(
                    code=ErrorCode.TOOL_EXECUTION_FAILED, message="unknown error"
                )
                runs.append(
                    _ToolRun(
                        tool=None,
                        info=ToolInfo(name=call.name, status="failed", request=call.args, error=error),
                        text=f"工具 {call.name} 执行失败: {error.message}",
                    )
                )

        infos = [run.info for run in runs]
        source = self._source_for(runs)
        summary = await self._summarize(turn, llm, calls, runs)
        if summary is None:
            summary = "工具执行完成，但汇总失败:\n\n" + "\n\n".join(run.text for run in runs)
        return self._response(
            turn,
            status=STATUS_COMPLETED,
            content=summary,
            source=source,
            conversation_id=self._conversation_id(runs),
            tool=infos[0],
            tools=infos,
        )

    # ---- confirmation ----

    async def _handle_confirmation(
        self,
        request: ChatRequest,
        trace_id: str,
        session_id: str,
        user_id: str,
        cancel_event: asyncio.Event | None,
        *,
        client_ip: str = "",
    ) -> ChatResponse:
        confirmation = request.confirmation
        assert confirmation is not None

        if self.confirmations is None:
            return self._response(
                None,
                trace_id=trace_id,
                session_id=session_id,
                status=STATUS_ERROR,
                content=MSG_CONFIRM_UNAVAILABLE,
                format=FORMAT_TEXT,
                source=None,
            )

        result = await self.confirmations.validate_and_consume(
            confirmation.confirm_id,
            user_id=user_id,
            session_id=session_id,
            action=confirmation.action,
        )
        if not result.success:
            error = result.error
            if error is not None and error.code == ErrorCode.RISK_REJECTED:
                await self._append(
                    session_id,
                    ChatMessage(role=ROLE_ASSISTANT, content=MSG_CANCELLED, trace_id=trace_id),
                )
                return self._response(
                    None,
                    trace_id=trace_id,
                    session_id=session_id,
                    status=STATUS_COMPLETED,
                    content=MSG_CANCELLED,
                    format=FORMAT_TEXT,
                    source=None,
                )
            message = error.message if error is not None else MSG_CANCELLED
            logger.warning("trace_id=%s confirmation %s failed: %s", trace_id, confirmation.confirm_id, error)
            return self._response(
                None,
                trace_id=trace_id,
                session_id=session_id,
                status=STATUS_ERROR,
                content=f"{MSG_CANCELLED}：{message}",
                format=FORMAT_TEXT,
                source=None,
            )

        operation = result.operation
        assert operation is not None
        llm = self.llm
        history = await self._load_history(session_id)
        turn = _TurnContext(
            trace_id=trace_id,
            session_id=session_id,
            user_id=user_id,
            request=request,
            agent=None,
            history=history,
            cancel_event=cancel_event,
            client_ip=client_ip or "",
        )
        call = ToolCall(
            id=f"call_{confirmation.confirm_id}",
            name=operation.tool_name,
            args=dict(operation.request),
            raw_arguments=json.dumps(operation.request, ensure_ascii=False),
        )
        logger.info("trace_id=%s executing confirmed tool %s", trace_id, operation.tool_name)
        run = await self._run_tool(turn, call)

        if llm is None:
            response = self._response(
                turn,
                status=STATUS_COMPLETED if run.info.status == "success" else STATUS_ERROR,
                content=f"操作已确认执行: {operation.name}\n\n{run.text}",
                source=self._source_for([run]),
                tool=run.info,
                tools=[run.info],
            )
        else:
            response = await self._finish_single(turn, llm, call, run)

        await self._append(
            session_id,
            ChatMessage(
                role=ROLE_ASSISTANT,
                content=response.assistant_message.content,
                trace_id=trace_id,
                tool_call=run.info.model_dump(exclude_none=True),
            ),
        )
        return response


__all__ = [
    "BASE_SYSTEM_PROMPT",
    "ChatOrchestrator",
    "MSG_CANCELLED",
    "MSG_NO_KNOWLEDGE",
    "MSG_NOT_CONFIGURED",
    "build_system_prompt",
    "parse_tool_arguments",
    "render_tool_result",
    "to_tool_error",
]
