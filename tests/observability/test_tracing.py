from __future__ import annotations

from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from aiassistant.observability import tracing


def test_configure_without_endpoint_is_a_no_op():
    assert tracing.configure_tracing(endpoint="") is False
    assert tracing.current_trace_id() == ""


def test_failed_tool_span_carries_error_status(monkeypatch):
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    monkeypatch.setattr(tracing, "get_tracer", lambda: provider.get_tracer("tests"))

    with tracing.tool_span("restart_pod") as span:
        tracing.set_retry_info(3)
        tracing.set_tool_result(span, success=False, status="failed", duration_ms=40)

    (finished,) = exporter.get_finished_spans()
    assert finished.name == tracing.SPAN_TOOL_CALL
    assert finished.attributes["tool.name"] == "restart_pod"
    assert finished.attributes["retry.attempts"] == 3
    assert finished.attributes["tool.success"] is False
    assert "cache.hit" not in finished.attributes
    assert finished.status.status_code == StatusCode.ERROR
