from __future__ import annotations

import json
from typing import List

from sqlalchemy import Select, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from aiassistant.logging_config import logger
from aiassistant.models import AIConfig, AIOptimizationConfig
from aiassistant.models.optimization_config import DEFAULT_CONFIG_KEY, OPTIMIZATION_CONFIG_TYPES
from aiassistant.optimization.config import OptimizationConfigError, default_config, parse_config
from aiassistant.schemas.admin import (
    AIConfigCreateRequest,
    AIConfigUpdateRequest,
    OptimizationConfigResponse,
    OptimizationConfigUpdateRequest,
)


class AIConfigServiceError(RuntimeError):
    """Base error for AI config rows."""


class AIConfigKeyExistsError(AIConfigServiceError):
    pass


class AIConfigNotFoundError(AIConfigServiceError):
    pass


class AIConfigInvalidError(AIConfigServiceError):
    """Raised when config_value is not valid JSON or fails validation."""


def _ensure_json(value: str) -> None:
    # 占位符 ${...} 出现在字符串值里时仍是合法 JSON
    if not value.strip():
        return
    try:
        json.loads(value)
    except json.JSONDecodeError as exc:
        raise AIConfigInvalidError(f"config_value 不是合法的 JSON: {exc}") from exc


# ---- generic AI config rows ----


def list_ai_configs(session: Session, *, config_type: str | None = None) -> List[AIConfig]:
    stmt: Select[tuple[AIConfig]] = select(AIConfig).order_by(AIConfig.config_key)
    if config_type:
        stmt = stmt.where(AIConfig.config_type == config_type)
    return list(session.execute(stmt).scalars().all())


def get_ai_config(session: Session, config_id: int) -> AIConfig:
    row = session.get(AIConfig, config_id)
    if row is None:
        raise AIConfigNotFoundError(f"AI config {config_id} not found")
    return row


def create_ai_config(session: Session, payload: AIConfigCreateRequest, *, operator: str | None = None) -> AIConfig:
    _ensure_json(payload.config_value)
    row = AIConfig(**payload.model_dump(), created_by=operator, updated_by=operator)
    session.add(row)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        logger.error("Failed to create AI config: %s", exc)
        raise AIConfigKeyExistsError("配置项已存在") from exc
    session.refresh(row)
    return row


def update_ai_config(
    session: Session,
    config_id: int,
    payload: AIConfigUpdateRequest,
    *,
    operator: str | None = None,
) -> AIConfig:
    row = get_ai_config(session, config_id)
    data = payload.model_dump(exclude_unset=True)
    if data.get("config_value") is not None:
        _ensure_json(data["config_value"])
    for name, value in data.items():
        if name == "config_value" and value is None:
            value = ""
        setattr(row, name, value)
    row.updated_by = operator
    session.add(row)
    session.commit()
    session.refresh(row)
    return row


def delete_ai_config(session: Session, config_id: int) -> None:
    row = get_ai_config(session, config_id)
    session.delete(row)
    session.commit()


# ---- optimization configs ----


def _ensure_type(config_type: str) -> None:
    if config_type not in OPTIMIZATION_CONFIG_TYPES:
        raise AIConfigNotFoundError(f"unknown optimization config type: {config_type}")


def _get_optimization_row(session: Session, config_type: str) -> AIOptimizationConfig | None:
    stmt: Select[tuple[AIOptimizationConfig]] = select(AIOptimizationConfig).where(
        AIOptimizationConfig.config_type == config_type,
        AIOptimizationConfig.config_key == DEFAULT_CONFIG_KEY,
    )
    return session.execute(stmt).scalars().first()


def get_optimization_config(session: Session, config_type: str) -> OptimizationConfigResponse:
    _ensure_type(config_type)
    row = _get_optimization_row(session, config_type)
    if row is None:
        return OptimizationConfigResponse(
            config_type=config_type,
            config_key=DEFAULT_CONFIG_KEY,
            config_value=default_config(config_type).model_dump(),
            enabled=True,
            is_default=True,
        )
    return OptimizationConfigResponse(
        config_type=row.config_type,
        config_key=row.config_key,
        config_value=dict(row.config_value or {}),
        description=row.description,
        enabled=row.enabled,
    )


def list_optimization_configs(session: Session) -> List[OptimizationConfigResponse]:
    return [get_optimization_config(session, config_type) for config_type in OPTIMIZATION_CONFIG_TYPES]


def update_optimization_config(
    session: Session,
    config_type: str,
    payload: OptimizationConfigUpdateRequest,
    *,
    operator: str | None = None,
) -> OptimizationConfigResponse:
    _ensure_type(config_type)
    try:
        parsed = parse_config(config_type, payload.config_value)
    except OptimizationConfigError as exc:
        raise AIConfigInvalidError(str(exc)) from exc

    row = _get_optimization_row(session, config_type)
    if row is None:
        row = AIOptimizationConfig(
            config_type=config_type,
            config_key=DEFAULT_CONFIG_KEY,
            created_by=operator,
        )
    row.config_value = parsed.model_dump()
    if payload.description is not None:
        row.description = payload.description
    if payload.enabled is not None:
        row.enabled = payload.enabled
    row.updated_by = operator
    session.add(row)
    session.commit()
    logger.info("optimization config %s updated by %s", config_type, operator or "-")
    return get_optimization_config(session, config_type)


__all__ = [
    "AIConfigInvalidError",
    "AIConfigKeyExistsError",
    "AIConfigNotFoundError",
    "AIConfigServiceError",
    "create_ai_config",
    "delete_ai_config",
    "get_ai_config",
    "get_optimization_config",
    "list_ai_configs",
    "list_optimization_configs",
    "update_ai_config",
    "update_optimization_config",
]
