from .metrics import METRICS, AssistantMetrics, render_latest
from .tracing import configure_tracing

__all__ = [
    "AssistantMetrics",
    "METRICS",
    "configure_tracing",
    "render_latest",
]
