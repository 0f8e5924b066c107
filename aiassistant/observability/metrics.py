"""
Prometheus metrics for the AI assistant.

All series are prefixed ``ai_assistant_`` and registered on the default
registry; ``/metrics`` renders them with ``generate_latest``.

Usage:
    from aiassistant.observability.metrics import METRICS

    METRICS.record_tool_call("list_pods", "success", 0.12)
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

registry = REGISTRY

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"


class AssistantMetrics:
    """All assistant metrics in one place."""

    def __init__(self, reg: CollectorRegistry = registry):
        # -- chat --
        self.chat_requests_total = Counter(
            "ai_assistant_chat_requests_total",
            "Total chat requests handled",
            ["mode", "status"],
            registry=reg,
        )
        self.chat_request_duration = Histogram(
            "ai_assistant_chat_request_duration_seconds",
            "Chat request duration in seconds",
            ["mode"],
            buckets=[0.1, 0.5, 1, 2, 5, 10, 30],
            registry=reg,
        )
        self.active_sessions = Gauge(
            "ai_assistant_active_sessions",
            "Sessions present in the active index",
            registry=reg,
        )
        self.confirmations_pending = Gauge(
            "ai_assistant_confirmations_pending",
            "High-risk confirmations awaiting an answer",
            registry=reg,
        )

        # -- LLM --
        self.llm_calls_total = Counter(
            "ai_assistant_llm_calls_total",
            "Total LLM completion calls",
            ["model", "status"],
            registry=reg,
        )
        self.llm_call_duration = Histogram(
            "ai_assistant_llm_call_duration_seconds",
            "LLM completion call duration in seconds",
            ["model"],
            buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60],
            registry=reg,
        )
        self.tokens_total = Counter(
            "ai_assistant_tokens_total",
            "Tokens consumed, by model and prompt/completion",
            ["model", "type"],
            registry=reg,
        )
        self.cost_total = Counter(
            "ai_assistant_cost_total",
            "Accumulated LLM cost in USD",
            ["model"],
            registry=reg,
        )

        # -- tools --
        self.tool_calls_total = Counter(
            "ai_assistant_tool_calls_total",
            "Total tool executions",
            ["tool", "status"],
            registry=reg,
        )
        self.tool_call_duration = Histogram(
            "ai_assistant_tool_call_duration_seconds",
            "Tool execution duration in seconds",
            ["tool", "status"],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
            registry=reg,
        )
        self.cache_hits_total = Counter(
            "ai_assistant_cache_hits_total",
            "Tool result cache lookups",
            ["tool", "hit"],
            registry=reg,
        )
        self.retry_attempts = Histogram(
            "ai_assistant_retry_attempts",
            "Attempts used per retried operation",
            ["operation"],
            buckets=[1, 2, 3, 4, 5, 10],
            registry=reg,
        )
        self.concurrent_executions = Gauge(
            "ai_assistant_concurrent_executions",
            "Tool executions currently running",
            registry=reg,
        )

        # -- rate limiting --
        # 不带 user_id 标签，避免高基数
        self.rate_limit_hits_total = Counter(
            "ai_assistant_rate_limit_hits_total",
            "Requests rejected by the rate limiter",
            ["busi_group_id"],
            registry=reg,
        )

        # -- knowledge / files --
        self.knowledge_queries_total = Counter(
            "ai_assistant_knowledge_queries_total",
            "Knowledge provider queries",
            ["provider", "status"],
            registry=reg,
        )
        self.file_uploads_total = Counter(
            "ai_assistant_file_uploads_total",
            "File uploads",
            ["mime_type", "status"],
            registry=reg,
        )
        self.file_upload_size = Histogram(
            "ai_assistant_file_upload_size_bytes",
            "Size of accepted uploads in bytes",
            buckets=[1024, 10240, 102400, 1048576, 10485760],
            registry=reg,
        )

        # -- errors --
        self.errors_total = Counter(
            "ai_assistant_errors_total",
            "Errors surfaced to callers",
            ["type", "code"],
            registry=reg,
        )

    # ---- helpers ----

    def record_chat_request(self, mode: str, status: str, duration: float) -> None:
        self.chat_requests_total.labels(mode=mode or "chat", status=status).inc()
        self.chat_request_duration.labels(mode=mode or "chat").observe(duration)

    def record_llm_call(
        self,
        model: str,
        status: str,
        duration: float,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
    ) -> None:
        model = model or "unknown"
        self.llm_calls_total.labels(model=model, status=status).inc()
        self.llm_call_duration.labels(model=model).observe(duration)
        if prompt_tokens:
            self.tokens_total.labels(model=model, type="prompt").inc(prompt_tokens)
        if completion_tokens:
            self.tokens_total.labels(model=model, type="completion").inc(completion_tokens)

    def record_cost(self, model: str, cost: float) -> None:
        if cost > 0:
            self.cost_total.labels(model=model or "unknown").inc(cost)

    def record_tool_call(self, tool: str, status: str, duration: float) -> None:
        self.tool_calls_total.labels(tool=tool, status=status).inc()
        self.tool_call_duration.labels(tool=tool, status=status).observe(duration)

    def record_cache_access(self, tool: str, hit: bool) -> None:
        self.cache_hits_total.labels(tool=tool, hit="true" if hit else "false").inc()

    def record_retry_attempts(self, operation: str, attempts: int) -> None:
        self.retry_attempts.labels(operation=operation or "default").observe(attempts)

    def record_rate_limit_hit(self, busi_group_id: int | str | None) -> None:
        self.rate_limit_hits_total.labels(busi_group_id=str(busi_group_id or "")).inc()

    def record_knowledge_query(self, provider: str, status: str) -> None:
        self.knowledge_queries_total.labels(provider=provider, status=status).inc()

    def record_file_upload(self, mime_type: str, status: str, size: int = 0) -> None:
        self.file_uploads_total.labels(mime_type=mime_type or "unknown", status=status).inc()
        if status == STATUS_SUCCESS:
            self.file_upload_size.observe(size)

    def record_error(self, error_type: str, code: str) -> None:
        self.errors_total.labels(type=error_type, code=code).inc()

    @contextmanager
    def track_concurrent(self) -> Iterator[None]:
        self.concurrent_executions.inc()
        try:
            yield
        finally:
            self.concurrent_executions.dec()


METRICS = AssistantMetrics()


def render_latest(reg: CollectorRegistry = registry) -> tuple[bytes, str]:
    """返回 (body, content_type)，供 /metrics 直接输出。"""
    return generate_latest(reg), CONTENT_TYPE_LATEST


__all__ = [
    "AssistantMetrics",
    "METRICS",
    "STATUS_ERROR",
    "STATUS_SUCCESS",
    "registry",
    "render_latest",
]
