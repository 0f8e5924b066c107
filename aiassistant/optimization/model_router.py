from __future__ import annotations

import threading
from typing import Callable

from .config import (
    ALL_TASK_TYPES,
    ModelRouterConfig,
    OptimizationConfigError,
    TaskModelConfig,
)

DEFAULT_MAX_TOKENS = 2000
DEFAULT_TEMPERATURE = 0.7


def validate_model_router_config(config: ModelRouterConfig) -> None:
    if not config.task_models and not config.fallback_model:
        raise OptimizationConfigError(
            "at least one task model or fallback model must be configured"
        )


class ModelRouter:
    """任务类型 -> 模型参数；未配置的任务落到全局 fallback。"""

    def __init__(
        self,
        config: ModelRouterConfig,
        *,
        loader: Callable[[], ModelRouterConfig] | None = None,
    ) -> None:
        validate_model_router_config(config)
        self._config = config
        self._loader = loader
        self._lock = threading.RLock()

    @property
    def config(self) -> ModelRouterConfig:
        with self._lock:
            return self._config

    def get_model_config(self, task_type: str) -> TaskModelConfig | None:
        return self.config.task_models.get(task_type)

    def get_fallback_model(self) -> str:
        return self.config.fallback_model

    def get_model(self, task_type: str) -> str:
        task = self.get_model_config(task_type)
        if task is not None and task.model:
            return task.model
        return self.get_fallback_model()

    def get_fallback_chain(self, task_type: str) -> list[str]:
        config = self.config
        chain: list[str] = []
        task = config.task_models.get(task_type)
        if task is not None:
            chain.extend(task.fallbacks)
        chain.extend(config.model_priority)
        if config.fallback_model:
            chain.append(config.fallback_model)
        return chain

    def get_max_tokens(self, task_type: str) -> int:
        task = self.get_model_config(task_type)
        if task is not None and task.max_tokens > 0:
            return task.max_tokens
        return DEFAULT_MAX_TOKENS

    def get_temperature(self, task_type: str) -> float:
        task = self.get_model_config(task_type)
        if task is not None:
            return task.temperature
        return DEFAULT_TEMPERATURE

    def is_configured(self, task_type: str) -> bool:
        task = self.get_model_config(task_type)
        return task is not None and bool(task.model)

    def reload(self) -> None:
        if self._loader is None:
            return
        config = self._loader()
        validate_model_router_config(config)
        with self._lock:
            self._config = config


def all_task_types() -> list[str]:
    return list(ALL_TASK_TYPES)


__all__ = ["ModelRouter", "all_task_types", "validate_model_router_config"]
