"""
OpenTelemetry tracing for chat turns, LLM calls and tool calls.

Spans are always created through the OpenTelemetry API; without a configured
provider they are non-recording. ``configure_tracing`` installs an SDK
provider with an OTLP/HTTP exporter only when OTEL_EXPORTER_OTLP_ENDPOINT is
set.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode

from aiassistant.logging_config import logger
from aiassistant.settings import settings

TRACER_NAME = "aiassistant"

SPAN_CHAT = "ai.chat"
SPAN_LLM_CALL = "ai.llm.call"
SPAN_TOOL_CALL = "ai.tool.call"

_CONFIGURED = False


def configure_tracing(endpoint: str | None = None, service_name: str | None = None) -> bool:
    """
    安装 SDK TracerProvider 并通过 OTLP/HTTP 导出。

    未配置 endpoint 时跳过，返回 False；重复调用只生效一次。
    """
    global _CONFIGURED
    if _CONFIGURED:
        return True

    endpoint = endpoint if endpoint is not None else settings.otel_exporter_otlp_endpoint
    if not endpoint:
        logger.debug("OTEL_EXPORTER_OTLP_ENDPOINT not set, trace export disabled")
        return False

    resource = Resource.create(
        {
            "service.name": service_name or settings.otel_service_name,
            "deployment.environment": settings.environment,
        }
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)

    _CONFIGURED = True
    logger.info("OpenTelemetry tracing configured -> %s", endpoint)
    return True


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(TRACER_NAME)


@contextmanager
def _span(name: str, attributes: dict[str, Any]) -> Iterator[Span]:
    # 异常记录到 span 后继续向上抛
    with get_tracer().start_as_current_span(name, attributes=_clean(attributes)) as span:
        yield span


def _clean(attributes: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in attributes.items() if v is not None and v != ""}


def chat_span(session_id: str, user_id: str, mode: str = "") -> Any:
    return _span(SPAN_CHAT, {"ai.session_id": session_id, "ai.user_id": user_id, "ai.mode": mode})


def llm_span(model: str) -> Any:
    return _span(SPAN_LLM_CALL, {"llm.model": model})


def tool_span(tool_name: str) -> Any:
    return _span(SPAN_TOOL_CALL, {"tool.name": tool_name})


def set_llm_result(
    span: Span,
    *,
    prompt_tokens: int = 0,
    completion_tokens: int = 0,
    duration_ms: int = 0,
) -> None:
    span.set_attribute("llm.prompt_tokens", prompt_tokens)
    span.set_attribute("llm.completion_tokens", completion_tokens)
    span.set_attribute("llm.total_tokens", prompt_tokens + completion_tokens)
    span.set_attribute("llm.duration_ms", duration_ms)


def set_tool_result(span: Span, *, success: bool, status: str, duration_ms: int, cache_hit: bool | None = None) -> None:
    span.set_attribute("tool.success", success)
    span.set_attribute("tool.status", status)
    span.set_attribute("tool.duration_ms", duration_ms)
    if cache_hit is not None:
        span.set_attribute("cache.hit", cache_hit)
    if not success:
        span.set_status(Status(StatusCode.ERROR, status))


def set_retry_info(attempts: int) -> None:
    """标注在当前 span 上（工具调用内即 ai.tool.call）。"""
    trace.get_current_span().set_attribute("retry.attempts", attempts)


def set_rate_limited(busi_group_id: int | None) -> None:
    span = trace.get_current_span()
    span.set_attribute("rate_limit.exceeded", True)
    if busi_group_id is not None:
        span.set_attribute("rate_limit.busi_group_id", busi_group_id)


def current_trace_id() -> str:
    """当前 span 的 trace id（32 位 hex），非采样上下文返回空串。"""
    ctx = trace.get_current_span().get_span_context()
    if not ctx.is_valid:
        return ""
    return format(ctx.trace_id, "032x")


__all__ = [
    "SPAN_CHAT",
    "SPAN_LLM_CALL",
    "SPAN_TOOL_CALL",
    "chat_span",
    "configure_tracing",
    "current_trace_id",
    "get_tracer",
    "llm_span",
    "set_llm_result",
    "set_rate_limited",
    "set_retry_info",
    "set_tool_result",
    "tool_span",
]
