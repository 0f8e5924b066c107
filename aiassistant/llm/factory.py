from __future__ import annotations

from typing import Callable

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from aiassistant.logging_config import logger
from aiassistant.models import AILLMModel
from aiassistant.services.config_loader import ConfigLoader, ConfigParseError, expand_env_vars
from aiassistant.settings import settings

from .client import OpenAIClient, OpenAIClientConfig


def _from_ai_config(loader: ConfigLoader) -> OpenAIClientConfig | None:
    try:
        model_config = loader.get_ai_model_config()
    except ConfigParseError as exc:
        logger.warning("ignore invalid default model config: %s", exc)
        return None
    if model_config is None or not model_config.model or not model_config.api_key:
        return None
    return OpenAIClientConfig(
        model=model_config.model,
        api_key=model_config.api_key,
        base_url=model_config.base_url,
        timeout=model_config.timeout or settings.llm_timeout_seconds,
        skip_ssl_verify=settings.llm_skip_ssl_verify,
        proxy=settings.llm_proxy,
    )


def _from_llm_model_row(session_factory: Callable[[], Session]) -> OpenAIClientConfig | None:
    with session_factory() as session:
        stmt = (
            select(AILLMModel)
            .where(AILLMModel.is_default.is_(True), AILLMModel.enabled.is_(True))
            .order_by(AILLMModel.id)
        )
        row = session.execute(stmt).scalars().first()
        if row is None or not row.api_key:
            return None
        return OpenAIClientConfig(
            model=row.model_id,
            api_key=expand_env_vars(row.api_key),
            base_url=expand_env_vars(row.base_url or ""),
            timeout=float(row.timeout or settings.llm_timeout_seconds),
            skip_ssl_verify=settings.llm_skip_ssl_verify,
            proxy=settings.llm_proxy,
        )


def _from_settings() -> OpenAIClientConfig | None:
    if not settings.llm_api_key:
        return None
    return OpenAIClientConfig(
        model=settings.llm_model,
        api_key=settings.llm_api_key,
        base_url=settings.llm_base_url,
        timeout=settings.llm_timeout_seconds,
        skip_ssl_verify=settings.llm_skip_ssl_verify,
        proxy=settings.llm_proxy,
    )


def resolve_llm_config(
    loader: ConfigLoader,
    session_factory: Callable[[], Session],
) -> OpenAIClientConfig | None:
    """
    依次尝试 ai.default_model 配置行、is_default 的 ai_llm_models 行、LLM_* 环境变量。
    """
    for source, resolve in (
        ("ai_config", lambda: _from_ai_config(loader)),
        ("ai_llm_models", lambda: _from_llm_model_row(session_factory)),
        ("settings", _from_settings),
    ):
        config = resolve()
        if config is not None:
            logger.info("LLM client configured from %s (model=%s)", source, config.model)
            return config
    logger.warning("no LLM model configured")
    return None


def build_llm_client(
    loader: ConfigLoader,
    session_factory: Callable[[], Session],
    *,
    http_client: httpx.AsyncClient | None = None,
) -> OpenAIClient | None:
    config = resolve_llm_config(loader, session_factory)
    if config is None:
        return None
    return OpenAIClient(config, client=http_client)


__all__ = ["build_llm_client", "resolve_llm_config"]
