from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from aiassistant.deps import get_db, get_operator, get_services
from aiassistant.errors import AssistantError, assistant_http_error, bad_request, conflict, not_found
from aiassistant.logging_config import logger
from aiassistant.schemas.admin import (
    MCPRemoteToolResponse,
    MCPServerCreateRequest,
    MCPServerResponse,
    MCPServerUpdateRequest,
    MCPTemplateCreateRequest,
    MCPTemplateResponse,
    MCPTemplateUpdateRequest,
)
from aiassistant.services.container import COMPONENT_MCP, AssistantServices
from aiassistant.services.mcp_server_service import (
    MCPServerNameExistsError,
    MCPServerNotFoundError,
    MCPTemplateNameExistsError,
    MCPTemplateNotFoundError,
    create_server,
    create_server_from_template,
    create_template,
    delete_server,
    delete_template,
    get_server,
    get_template,
    list_servers,
    list_templates,
    update_server,
    update_template,
)

router = APIRouter(
    prefix="/ai-assistant/admin/mcp",
    tags=["ai-assistant-admin"],
    dependencies=[Depends(get_operator)],
)


class CreateFromTemplateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)


class MCPHealthResponse(BaseModel):
    server_id: int
    healthy: bool
    error: str | None = None


# ---- servers ----


@router.get("/servers", response_model=List[MCPServerResponse])
def list_servers_endpoint(db: Session = Depends(get_db)) -> List[MCPServerResponse]:
    return [MCPServerResponse.model_validate(s) for s in list_servers(db)]


@router.get("/servers/{server_id}", response_model=MCPServerResponse)
def get_server_endpoint(server_id: int, db: Session = Depends(get_db)) -> MCPServerResponse:
    try:
        server = get_server(db, server_id)
    except MCPServerNotFoundError as exc:
        raise not_found(str(exc))
    return MCPServerResponse.model_validate(server)


@router.post("/servers", response_model=MCPServerResponse, status_code=status.HTTP_201_CREATED)
async def create_server_endpoint(
    payload: MCPServerCreateRequest,
    db: Session = Depends(get_db),
    operator: str = Depends(get_operator),
    services: AssistantServices = Depends(get_services),
) -> MCPServerResponse:
    try:
        server = create_server(db, payload, operator=operator)
    except MCPServerNameExistsError as exc:
        raise conflict(str(exc))
    await services.reload_component(COMPONENT_MCP)
    return MCPServerResponse.model_validate(server)


@router.put("/servers/{server_id}", response_model=MCPServerResponse)
async def update_server_endpoint(
    server_id: int,
    payload: MCPServerUpdateRequest,
    db: Session = Depends(get_db),
    operator: str = Depends(get_operator),
    services: AssistantServices = Depends(get_services),
) -> MCPServerResponse:
    try:
        server = update_server(db, server_id, payload, operator=operator)
    except MCPServerNotFoundError as exc:
        raise not_found(str(exc))
    await services.reload_component(COMPONENT_MCP)
    return MCPServerResponse.model_validate(server)


@router.delete("/servers/{server_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_server_endpoint(
    server_id: int,
    db: Session = Depends(get_db),
    services: AssistantServices = Depends(get_services),
) -> None:
    try:
        delete_server(db, server_id)
    except MCPServerNotFoundError as exc:
        raise not_found(str(exc))
    await services.reload_component(COMPONENT_MCP)


@router.get("/servers/{server_id}/tools", response_model=List[MCPRemoteToolResponse])
async def list_remote_tools_endpoint(
    server_id: int,
    services: AssistantServices = Depends(get_services),
) -> List[MCPRemoteToolResponse]:
    """列出远端 Server 当前暴露的工具，便于在管理端登记为 mcp 工具。"""
    try:
        tools = await services.mcp.list_server_tools(server_id)
    except AssistantError as exc:
        raise assistant_http_error(exc)
    return [
        MCPRemoteToolResponse(name=t.name, description=t.description, input_schema=t.input_schema)
        for t in tools
    ]


@router.post("/servers/{server_id}/health-check", response_model=MCPHealthResponse)
async def check_server_health_endpoint(
    server_id: int,
    db: Session = Depends(get_db),
    services: AssistantServices = Depends(get_services),
) -> MCPHealthResponse:
    try:
        get_server(db, server_id)
    except MCPServerNotFoundError as exc:
        raise not_found(str(exc))
    error = await services.mcp.check_server(server_id)
    return MCPHealthResponse(server_id=server_id, healthy=error is None, error=error)


# ---- templates ----


@router.get("/templates", response_model=List[MCPTemplateResponse])
def list_templates_endpoint(
    category: str | None = None,
    db: Session = Depends(get_db),
) -> List[MCPTemplateResponse]:
    return [MCPTemplateResponse.model_validate(t) for t in list_templates(db, category=category)]


@router.get("/templates/{template_id}", response_model=MCPTemplateResponse)
def get_template_endpoint(template_id: int, db: Session = Depends(get_db)) -> MCPTemplateResponse:
    try:
        template = get_template(db, template_id)
    except MCPTemplateNotFoundError as exc:
        raise not_found(str(exc))
    return MCPTemplateResponse.model_validate(template)


@router.post("/templates", response_model=MCPTemplateResponse, status_code=status.HTTP_201_CREATED)
def create_template_endpoint(
    payload: MCPTemplateCreateRequest,
    db: Session = Depends(get_db),
    operator: str = Depends(get_operator),
) -> MCPTemplateResponse:
    try:
        template = create_template(db, payload, operator=operator)
    except MCPTemplateNameExistsError as exc:
        raise conflict(str(exc))
    return MCPTemplateResponse.model_validate(template)


@router.put("/templates/{template_id}", response_model=MCPTemplateResponse)
def update_template_endpoint(
    template_id: int,
    payload: MCPTemplateUpdateRequest,
    db: Session = Depends(get_db),
    operator: str = Depends(get_operator),
) -> MCPTemplateResponse:
    try:
        template = update_template(db, template_id, payload, operator=operator)
    except MCPTemplateNotFoundError as exc:
        raise not_found(str(exc))
    return MCPTemplateResponse.model_validate(template)


@router.delete("/templates/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_template_endpoint(template_id: int, db: Session = Depends(get_db)) -> None:
    try:
        delete_template(db, template_id)
    except MCPTemplateNotFoundError as exc:
        raise not_found(str(exc))


@router.post(
    "/templates/{template_id}/servers",
    response_model=MCPServerResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_server_from_template_endpoint(
    template_id: int,
    payload: CreateFromTemplateRequest,
    db: Session = Depends(get_db),
    operator: str = Depends(get_operator),
    services: AssistantServices = Depends(get_services),
) -> MCPServerResponse:
    try:
        server = create_server_from_template(db, template_id, payload.name, operator=operator)
    except MCPTemplateNotFoundError as exc:
        raise not_found(str(exc))
    except MCPServerNameExistsError as exc:
        raise conflict(str(exc))
    except ValueError as exc:
        # 模板里的 server_config 不满足创建请求的校验
        logger.warning("template %s produced an invalid server config: %s", template_id, exc)
        raise bad_request(f"模板配置无效: {exc}")
    await services.reload_component(COMPONENT_MCP)
    return MCPServerResponse.model_validate(server)


__all__ = ["router"]
