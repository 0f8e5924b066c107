from .concurrent import ConcurrentExecutor, ToolCall, ToolCallResult
from .cost_tracker import CostTracker, UsageRecord
from .manager import OptimizationManager, OptimizationReloadError
from .model_router import ModelRouter
from .rate_limiter import RateLimiter, RateLimitResult
from .retry import RetryableError, RetryHandler, RetryResult
from .tool_cache import CachedResult, ToolCache, build_cache_key

__all__ = [
    "CachedResult",
    "ConcurrentExecutor",
    "CostTracker",
    "ModelRouter",
    "OptimizationManager",
    "OptimizationReloadError",
    "RateLimitResult",
    "RateLimiter",
    "RetryHandler",
    "RetryResult",
    "RetryableError",
    "ToolCache",
    "ToolCall",
    "ToolCallResult",
    "UsageRecord",
    "build_cache_key",
]
