from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from aiassistant.deps import get_db, get_operator, get_services
from aiassistant.errors import bad_request, conflict, not_found
from aiassistant.models.base import utcnow
from aiassistant.schemas.admin import (
    KnowledgeHealthResponse,
    KnowledgeProviderCreateRequest,
    KnowledgeProviderResponse,
    KnowledgeProviderUpdateRequest,
    KnowledgeToolCreateRequest,
    KnowledgeToolResponse,
    KnowledgeToolUpdateRequest,
)
from aiassistant.services.container import COMPONENT_KNOWLEDGE, COMPONENT_TOOLS, AssistantServices
from aiassistant.services.knowledge_service import (
    KnowledgeProviderNameExistsError,
    KnowledgeProviderNotFoundError,
    KnowledgeToolNameExistsError,
    KnowledgeToolNotFoundError,
    create_knowledge_tool,
    create_provider,
    delete_knowledge_tool,
    delete_provider,
    get_knowledge_tool,
    get_provider,
    list_knowledge_tools,
    list_providers,
    provider_to_response,
    record_provider_health,
    update_knowledge_tool,
    update_provider,
)

router = APIRouter(
    prefix="/ai-assistant/admin/knowledge",
    tags=["ai-assistant-admin"],
    dependencies=[Depends(get_operator)],
)


async def _reload(services: AssistantServices) -> None:
    # 知识库工具也出现在工具注册表的目录里
    await services.reload_component(COMPONENT_KNOWLEDGE)
    await services.reload_component(COMPONENT_TOOLS)


# ---- providers ----


@router.get("/providers", response_model=List[KnowledgeProviderResponse])
def list_providers_endpoint(db: Session = Depends(get_db)) -> List[KnowledgeProviderResponse]:
    return [provider_to_response(p) for p in list_providers(db)]


@router.get("/providers/{provider_id}", response_model=KnowledgeProviderResponse)
def get_provider_endpoint(provider_id: int, db: Session = Depends(get_db)) -> KnowledgeProviderResponse:
    try:
        provider = get_provider(db, provider_id)
    except KnowledgeProviderNotFoundError as exc:
        raise not_found(str(exc))
    return provider_to_response(provider)


@router.post(
    "/providers",
    response_model=KnowledgeProviderResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_provider_endpoint(
    payload: KnowledgeProviderCreateRequest,
    db: Session = Depends(get_db),
    operator: str = Depends(get_operator),
    services: AssistantServices = Depends(get_services),
) -> KnowledgeProviderResponse:
    try:
        provider = create_provider(db, payload, operator=operator)
    except KnowledgeProviderNameExistsError as exc:
        raise conflict(str(exc))
    await _reload(services)
    return provider_to_response(provider)


@router.put("/providers/{provider_id}", response_model=KnowledgeProviderResponse)
async def update_provider_endpoint(
    provider_id: int,
    payload: KnowledgeProviderUpdateRequest,
    db: Session = Depends(get_db),
    operator: str = Depends(get_operator),
    services: AssistantServices = Depends(get_services),
) -> KnowledgeProviderResponse:
    try:
        provider = update_provider(db, provider_id, payload, operator=operator)
    except KnowledgeProviderNotFoundError as exc:
        raise not_found(str(exc))
    await _reload(services)
    return provider_to_response(provider)


@router.delete("/providers/{provider_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_provider_endpoint(
    provider_id: int,
    db: Session = Depends(get_db),
    services: AssistantServices = Depends(get_services),
) -> None:
    try:
        delete_provider(db, provider_id)
    except KnowledgeProviderNotFoundError as exc:
        raise not_found(str(exc))
    await _reload(services)


@router.post("/providers/{provider_id}/health-check", response_model=KnowledgeHealthResponse)
async def check_provider_health_endpoint(
    provider_id: int,
    db: Session = Depends(get_db),
    services: AssistantServices = Depends(get_services),
) -> KnowledgeHealthResponse:
    """
    手动触发一次健康检查，结果同时写回数据库。
    """
    try:
        get_provider(db, provider_id)
    except KnowledgeProviderNotFoundError as exc:
        raise not_found(str(exc))
    error = await services.knowledge.check_health(provider_id)
    record_provider_health(db, provider_id, error)
    return KnowledgeHealthResponse(
        provider_id=provider_id,
        healthy=error is None,
        error=error,
        checked_at=utcnow(),
    )


# ---- tools ----


@router.get("/tools", response_model=List[KnowledgeToolResponse])
def list_knowledge_tools_endpoint(
    provider_id: int | None = None,
    db: Session = Depends(get_db),
) -> List[KnowledgeToolResponse]:
    tools = list_knowledge_tools(db, provider_id=provider_id)
    return [KnowledgeToolResponse.model_validate(t) for t in tools]


@router.get("/tools/{tool_id}", response_model=KnowledgeToolResponse)
def get_knowledge_tool_endpoint(tool_id: int, db: Session = Depends(get_db)) -> KnowledgeToolResponse:
    try:
        tool = get_knowledge_tool(db, tool_id)
    except KnowledgeToolNotFoundError as exc:
        raise not_found(str(exc))
    return KnowledgeToolResponse.model_validate(tool)


@router.post("/tools", response_model=KnowledgeToolResponse, status_code=status.HTTP_201_CREATED)
async def create_knowledge_tool_endpoint(
    payload: KnowledgeToolCreateRequest,
    db: Session = Depends(get_db),
    operator: str = Depends(get_operator),
    services: AssistantServices = Depends(get_services),
) -> KnowledgeToolResponse:
    try:
        tool = create_knowledge_tool(db, payload, operator=operator)
    except KnowledgeProviderNotFoundError as exc:
        raise bad_request(str(exc))
    except KnowledgeToolNameExistsError as exc:
        raise conflict(str(exc))
    await _reload(services)
    return KnowledgeToolResponse.model_validate(tool)


@router.put("/tools/{tool_id}", response_model=KnowledgeToolResponse)
async def update_knowledge_tool_endpoint(
    tool_id: int,
    payload: KnowledgeToolUpdateRequest,
    db: Session = Depends(get_db),
    operator: str = Depends(get_operator),
    services: AssistantServices = Depends(get_services),
) -> KnowledgeToolResponse:
    try:
        tool = update_knowledge_tool(db, tool_id, payload, operator=operator)
    except KnowledgeToolNotFoundError as exc:
        raise not_found(str(exc))
    except KnowledgeProviderNotFoundError as exc:
        raise bad_request(str(exc))
    await _reload(services)
    return KnowledgeToolResponse.model_validate(tool)


@router.delete("/tools/{tool_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_knowledge_tool_endpoint(
    tool_id: int,
    db: Session = Depends(get_db),
    services: AssistantServices = Depends(get_services),
) -> None:
    try:
        delete_knowledge_tool(db, tool_id)
    except KnowledgeToolNotFoundError as exc:
        raise not_found(str(exc))
    await _reload(services)


__all__ = ["router"]
