"""
Typed configuration blobs for the optimization engines.

Each engine owns one row in `ai_optimization_configs` keyed by
(config_type, "default"). A missing or disabled row falls back to the
defaults declared here, which are also what `seed_defaults` writes.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from aiassistant.logging_config import logger
from aiassistant.models import AIOptimizationConfig
from aiassistant.models.optimization_config import (
    CONFIG_TYPE_CACHE,
    CONFIG_TYPE_CONCURRENT,
    CONFIG_TYPE_COST,
    CONFIG_TYPE_MODEL_ROUTER,
    CONFIG_TYPE_RATE_LIMIT,
    CONFIG_TYPE_RETRY,
    DEFAULT_CONFIG_KEY,
)

# 任务类型
TASK_ROUTING = "routing"
TASK_EXECUTION = "execution"
TASK_SUMMARY = "summary"
TASK_GENERAL = "general"
TASK_KNOWLEDGE = "knowledge"
ALL_TASK_TYPES = (TASK_ROUTING, TASK_EXECUTION, TASK_SUMMARY, TASK_GENERAL, TASK_KNOWLEDGE)


class OptimizationConfigError(RuntimeError):
    """Raised when an optimization config row cannot be parsed or is invalid."""


class RateLimitConfig(BaseModel):
    default_rpm: int = Field(10, ge=0, description="默认每分钟请求数")
    burst_size: int = Field(5, ge=0, description="本地令牌桶突发容量")
    user_limits: Dict[str, int] = Field(default_factory=dict, description="按用户覆盖的 RPM")
    busi_group_limits: Dict[str, int] = Field(default_factory=dict, description="按业务组覆盖的 RPM")


class CacheConfig(BaseModel):
    enabled: bool = True
    default_ttl: int = Field(120, ge=1, description="默认缓存秒数")
    tool_ttls: Dict[str, int] = Field(default_factory=dict)
    idempotent_tools: List[str] = Field(default_factory=list)


class TaskModelConfig(BaseModel):
    model: str = ""
    max_tokens: int = 2000
    temperature: float = 0.7
    fallbacks: List[str] = Field(default_factory=list)


class ModelRouterConfig(BaseModel):
    task_models: Dict[str, TaskModelConfig] = Field(default_factory=dict)
    fallback_model: str = ""
    model_priority: List[str] = Field(default_factory=list)


class RetryConfig(BaseModel):
    max_retries: int = Field(3, ge=0)
    initial_backoff: int = Field(1000, ge=0, description="首次退避毫秒数")
    max_backoff: int = Field(30000, ge=0, description="最大退避毫秒数")
    multiplier: float = Field(2.0, ge=1.0)


class ConcurrentConfig(BaseModel):
    max_concurrency: int = Field(5, description="工具并发上限，<=0 时按 5 处理")


class ModelPrice(BaseModel):
    prompt_price_per_1k: float = 0.0
    completion_price_per_1k: float = 0.0


class CostConfig(BaseModel):
    model_prices: Dict[str, ModelPrice] = Field(default_factory=dict)
    alert_threshold: float = 100.0
    retention_days: int = Field(30, ge=1)


def default_model_router_config() -> ModelRouterConfig:
    return ModelRouterConfig(
        task_models={
            TASK_ROUTING: TaskModelConfig(max_tokens=500, temperature=0.1),
            TASK_EXECUTION: TaskModelConfig(max_tokens=2000, temperature=0.3),
            TASK_SUMMARY: TaskModelConfig(max_tokens=4000, temperature=0.5),
            TASK_GENERAL: TaskModelConfig(max_tokens=2000, temperature=0.7),
            TASK_KNOWLEDGE: TaskModelConfig(max_tokens=2000, temperature=0.3),
        }
    )


CONFIG_MODELS: dict[str, Type[BaseModel]] = {
    CONFIG_TYPE_RATE_LIMIT: RateLimitConfig,
    CONFIG_TYPE_CACHE: CacheConfig,
    CONFIG_TYPE_MODEL_ROUTER: ModelRouterConfig,
    CONFIG_TYPE_RETRY: RetryConfig,
    CONFIG_TYPE_CONCURRENT: ConcurrentConfig,
    CONFIG_TYPE_COST: CostConfig,
}

_DEFAULT_FACTORIES: dict[str, Callable[[], BaseModel]] = {
    CONFIG_TYPE_RATE_LIMIT: RateLimitConfig,
    CONFIG_TYPE_CACHE: CacheConfig,
    CONFIG_TYPE_MODEL_ROUTER: default_model_router_config,
    CONFIG_TYPE_RETRY: RetryConfig,
    CONFIG_TYPE_CONCURRENT: ConcurrentConfig,
    CONFIG_TYPE_COST: CostConfig,
}

ConfigT = TypeVar("ConfigT", bound=BaseModel)


def default_config(config_type: str) -> BaseModel:
    factory = _DEFAULT_FACTORIES.get(config_type)
    if factory is None:
        raise OptimizationConfigError(f"unknown optimization config type: {config_type}")
    return factory()


def parse_config(config_type: str, raw: Any) -> BaseModel:
    model_cls = CONFIG_MODELS.get(config_type)
    if model_cls is None:
        raise OptimizationConfigError(f"unknown optimization config type: {config_type}")
    try:
        return model_cls.model_validate(raw)
    except ValidationError as exc:
        raise OptimizationConfigError(f"invalid {config_type} config: {exc}") from exc


class OptimizationConfigSource:
    """
    从关系库读取优化配置；行缺失或被禁用时返回默认值。
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def load_raw(self, config_type: str) -> Any | None:
        with self._session_factory() as session:
            stmt = select(AIOptimizationConfig).where(
                AIOptimizationConfig.config_type == config_type,
                AIOptimizationConfig.config_key == DEFAULT_CONFIG_KEY,
                AIOptimizationConfig.enabled.is_(True),
            )
            row = session.execute(stmt).scalars().first()
            return None if row is None else row.config_value

    def load(self, config_type: str, model_cls: Type[ConfigT]) -> ConfigT:
        raw = self.load_raw(config_type)
        if raw is None:
            logger.info("optimization config %s not found, using defaults", config_type)
            return default_config(config_type)  # type: ignore[return-value]
        parsed = parse_config(config_type, raw)
        assert isinstance(parsed, model_cls)
        return parsed


__all__ = [
    "ALL_TASK_TYPES",
    "CONFIG_MODELS",
    "CacheConfig",
    "ConcurrentConfig",
    "CostConfig",
    "ModelPrice",
    "ModelRouterConfig",
    "OptimizationConfigError",
    "OptimizationConfigSource",
    "RateLimitConfig",
    "RetryConfig",
    "TASK_EXECUTION",
    "TASK_GENERAL",
    "TASK_KNOWLEDGE",
    "TASK_ROUTING",
    "TASK_SUMMARY",
    "TaskModelConfig",
    "default_config",
    "default_model_router_config",
    "parse_config",
]
