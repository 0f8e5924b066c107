from __future__ import annotations

from typing import List

from sqlalchemy import Select, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from aiassistant.log_sanitizer import sanitize_config_for_log
from aiassistant.logging_config import logger
from aiassistant.models import KnowledgeProvider, KnowledgeTool
from aiassistant.models.base import utcnow
from aiassistant.models.knowledge import HEALTH_HEALTHY, HEALTH_UNHEALTHY
from aiassistant.schemas.admin import (
    KnowledgeProviderCreateRequest,
    KnowledgeProviderResponse,
    KnowledgeProviderUpdateRequest,
    KnowledgeToolCreateRequest,
    KnowledgeToolUpdateRequest,
)


class KnowledgeServiceError(RuntimeError):
    """Base error for knowledge provider/tool operations."""


class KnowledgeProviderNameExistsError(KnowledgeServiceError):
    pass


class KnowledgeProviderNotFoundError(KnowledgeServiceError):
    pass


class KnowledgeToolNameExistsError(KnowledgeServiceError):
    pass


class KnowledgeToolNotFoundError(KnowledgeServiceError):
    pass


def provider_to_response(provider: KnowledgeProvider) -> KnowledgeProviderResponse:
    response = KnowledgeProviderResponse.model_validate(provider)
    response.config = sanitize_config_for_log(provider.config)
    return response


# ---- providers ----


def list_providers(session: Session) -> List[KnowledgeProvider]:
    stmt: Select[tuple[KnowledgeProvider]] = select(KnowledgeProvider).order_by(KnowledgeProvider.id)
    return list(session.execute(stmt).scalars().all())


def get_provider(session: Session, provider_id: int) -> KnowledgeProvider:
    provider = session.get(KnowledgeProvider, provider_id)
    if provider is None:
        raise KnowledgeProviderNotFoundError(f"Knowledge provider {provider_id} not found")
    return provider


def create_provider(
    session: Session,
    payload: KnowledgeProviderCreateRequest,
    *,
    operator: str | None = None,
) -> KnowledgeProvider:
    provider = KnowledgeProvider(**payload.model_dump(), created_by=operator, updated_by=operator)
    session.add(provider)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        logger.error("Failed to create knowledge provider: %s", exc)
        raise KnowledgeProviderNameExistsError("知识库名称已存在") from exc
    session.refresh(provider)
    return provider


def update_provider(
    session: Session,
    provider_id: int,
    payload: KnowledgeProviderUpdateRequest,
    *,
    operator: str | None = None,
) -> KnowledgeProvider:
    provider = get_provider(session, provider_id)
    for name, value in payload.model_dump(exclude_unset=True).items():
        setattr(provider, name, value)
    provider.updated_by = operator
    session.add(provider)
    session.commit()
    session.refresh(provider)
    return provider


def delete_provider(session: Session, provider_id: int) -> None:
    provider = get_provider(session, provider_id)
    session.delete(provider)
    session.commit()


def record_provider_health(session: Session, provider_id: int, error: str | None) -> None:
    """
    写入健康检查结果。updated_at 保持不变，否则配置轮询器会把每次探活都当成配置变更。
    """
    session.execute(
        update(KnowledgeProvider)
        .where(KnowledgeProvider.id == provider_id)
        .values(
            health_status=HEALTH_HEALTHY if error is None else HEALTH_UNHEALTHY,
            last_check_time=utcnow(),
            last_check_error=error,
            updated_at=KnowledgeProvider.updated_at,
        )
    )
    session.commit()


# ---- tools ----


def list_knowledge_tools(session: Session, *, provider_id: int | None = None) -> List[KnowledgeTool]:
    stmt: Select[tuple[KnowledgeTool]] = select(KnowledgeTool).order_by(
        KnowledgeTool.priority.desc(), KnowledgeTool.name
    )
    if provider_id is not None:
        stmt = stmt.where(KnowledgeTool.provider_id == provider_id)
    return list(session.execute(stmt).scalars().all())


def get_knowledge_tool(session: Session, tool_id: int) -> KnowledgeTool:
    tool = session.get(KnowledgeTool, tool_id)
    if tool is None:
        raise KnowledgeToolNotFoundError(f"Knowledge tool {tool_id} not found")
    return tool


def create_knowledge_tool(
    session: Session,
    payload: KnowledgeToolCreateRequest,
    *,
    operator: str | None = None,
) -> KnowledgeTool:
    get_provider(session, payload.provider_id)
    tool = KnowledgeTool(**payload.model_dump(), created_by=operator, updated_by=operator)
    session.add(tool)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        logger.error("Failed to create knowledge tool: %s", exc)
        raise KnowledgeToolNameExistsError("知识库工具名称已存在") from exc
    session.refresh(tool)
    return tool


def update_knowledge_tool(
    session: Session,
    tool_id: int,
    payload: KnowledgeToolUpdateRequest,
    *,
    operator: str | None = None,
) -> KnowledgeTool:
    tool = get_knowledge_tool(session, tool_id)
    data = payload.model_dump(exclude_unset=True)
    if data.get("provider_id") is not None:
        get_provider(session, data["provider_id"])
    for name, value in data.items():
        setattr(tool, name, value)
    tool.updated_by = operator
    session.add(tool)
    session.commit()
    session.refresh(tool)
    return tool


def delete_knowledge_tool(session: Session, tool_id: int) -> None:
    tool = get_knowledge_tool(session, tool_id)
    session.delete(tool)
    session.commit()


__all__ = [
    "KnowledgeProviderNameExistsError",
    "KnowledgeProviderNotFoundError",
    "KnowledgeServiceError",
    "KnowledgeToolNameExistsError",
    "KnowledgeToolNotFoundError",
    "create_knowledge_tool",
    "create_provider",
    "delete_knowledge_tool",
    "delete_provider",
    "get_knowledge_tool",
    "get_provider",
    "list_knowledge_tools",
    "list_providers",
    "provider_to_response",
    "record_provider_health",
    "update_knowledge_tool",
    "update_provider",
]
