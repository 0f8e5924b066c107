from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from aiassistant.deps import get_db, get_operator, get_services
from aiassistant.errors import bad_request, conflict, not_found
from aiassistant.schemas.admin import (
    AgentCreateRequest,
    AgentResponse,
    AgentUpdateRequest,
    ToolCreateRequest,
    ToolResponse,
    ToolUpdateRequest,
)
from aiassistant.services.agent_service import (
    AgentNameExistsError,
    AgentNotFoundError,
    AgentToolNotFoundError,
    SystemAgentDeleteError,
    create_agent,
    delete_agent,
    get_agent,
    list_agents,
    update_agent,
)
from aiassistant.services.container import COMPONENT_AGENTS, COMPONENT_TOOLS, AssistantServices
from aiassistant.services.tool_service import (
    ToolNameExistsError,
    ToolNotFoundError,
    create_tool,
    delete_tool,
    get_tool,
    list_tools,
    update_tool,
)

router = APIRouter(
    prefix="/ai-assistant/admin",
    tags=["ai-assistant-admin"],
    dependencies=[Depends(get_operator)],
)


# ---- agents ----


@router.get("/agents", response_model=List[AgentResponse])
def list_agents_endpoint(db: Session = Depends(get_db)) -> List[AgentResponse]:
    return [AgentResponse.from_model(agent) for agent in list_agents(db)]


@router.get("/agents/{agent_id}", response_model=AgentResponse)
def get_agent_endpoint(agent_id: int, db: Session = Depends(get_db)) -> AgentResponse:
    try:
        agent = get_agent(db, agent_id)
    except AgentNotFoundError as exc:
        raise not_found(str(exc))
    return AgentResponse.from_model(agent)


@router.post("/agents", response_model=AgentResponse, status_code=status.HTTP_201_CREATED)
async def create_agent_endpoint(
    payload: AgentCreateRequest,
    db: Session = Depends(get_db),
    operator: str = Depends(get_operator),
    services: AssistantServices = Depends(get_services),
) -> AgentResponse:
    try:
        agent = create_agent(db, payload, operator=operator)
    except AgentNameExistsError as exc:
        raise conflict(str(exc))
    except AgentToolNotFoundError as exc:
        raise bad_request(str(exc))
    await services.reload_component(COMPONENT_AGENTS)
    return AgentResponse.from_model(agent)


@router.put("/agents/{agent_id}", response_model=AgentResponse)
async def update_agent_endpoint(
    agent_id: int,
    payload: AgentUpdateRequest,
    db: Session = Depends(get_db),
    operator: str = Depends(get_operator),
    services: AssistantServices = Depends(get_services),
) -> AgentResponse:
    try:
        agent = update_agent(db, agent_id, payload, operator=operator)
    except AgentNotFoundError as exc:
        raise not_found(str(exc))
    except AgentToolNotFoundError as exc:
        raise bad_request(str(exc))
    await services.reload_component(COMPONENT_AGENTS)
    return AgentResponse.from_model(agent)


@router.delete("/agents/{agent_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_agent_endpoint(
    agent_id: int,
    db: Session = Depends(get_db),
    services: AssistantServices = Depends(get_services),
) -> None:
    try:
        delete_agent(db, agent_id)
    except AgentNotFoundError as exc:
        raise not_found(str(exc))
    except SystemAgentDeleteError as exc:
        raise bad_request(str(exc))
    await services.reload_component(COMPONENT_AGENTS)


# ---- tools ----


@router.get("/tools", response_model=List[ToolResponse])
def list_tools_endpoint(
    implementation_type: str | None = None,
    db: Session = Depends(get_db),
) -> List[ToolResponse]:
    return [ToolResponse.model_validate(tool) for tool in list_tools(db, implementation_type=implementation_type)]


@router.get("/tools/{tool_id}", response_model=ToolResponse)
def get_tool_endpoint(tool_id: int, db: Session = Depends(get_db)) -> ToolResponse:
    try:
        tool = get_tool(db, tool_id)
    except ToolNotFoundError as exc:
        raise not_found(str(exc))
    return ToolResponse.model_validate(tool)


@router.post("/tools", response_model=ToolResponse, status_code=status.HTTP_201_CREATED)
async def create_tool_endpoint(
    payload: ToolCreateRequest,
    db: Session = Depends(get_db),
    operator: str = Depends(get_operator),
    services: AssistantServices = Depends(get_services),
) -> ToolResponse:
    try:
        tool = create_tool(db, payload, operator=operator)
    except ToolNameExistsError as exc:
        raise conflict(str(exc))
    await services.reload_component(COMPONENT_TOOLS)
    # Agent 快照里嵌着绑定工具的配置
    await services.reload_component(COMPONENT_AGENTS)
    return ToolResponse.model_validate(tool)


@router.put("/tools/{tool_id}", response_model=ToolResponse)
async def update_tool_endpoint(
    tool_id: int,
    payload: ToolUpdateRequest,
    db: Session = Depends(get_db),
    operator: str = Depends(get_operator),
    services: AssistantServices = Depends(get_services),
) -> ToolResponse:
    try:
        tool = update_tool(db, tool_id, payload, operator=operator)
    except ToolNotFoundError as exc:
        raise not_found(str(exc))
    await services.reload_component(COMPONENT_TOOLS)
    await services.reload_component(COMPONENT_AGENTS)
    return ToolResponse.model_validate(tool)


@router.delete("/tools/{tool_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_tool_endpoint(
    tool_id: int,
    db: Session = Depends(get_db),
    services: AssistantServices = Depends(get_services),
) -> None:
    try:
        delete_tool(db, tool_id)
    except ToolNotFoundError as exc:
        raise not_found(str(exc))
    await services.reload_component(COMPONENT_TOOLS)
    await services.reload_component(COMPONENT_AGENTS)


__all__ = ["router"]
