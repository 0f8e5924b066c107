from __future__ import annotations

from typing import List

from sqlalchemy import Select, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from aiassistant.logging_config import logger
from aiassistant.models import AIAgent, AIAgentToolRel, AITool
from aiassistant.models.agent import SYSTEM_AGENT_NAMES
from aiassistant.models.base import utcnow
from aiassistant.schemas.admin import AgentCreateRequest, AgentUpdateRequest


class AgentServiceError(RuntimeError):
    """Base error for agent operations."""


class AgentNameExistsError(AgentServiceError):
    """Raised when the agent name is taken."""


class AgentNotFoundError(AgentServiceError):
    """Raised when the agent cannot be found."""


class AgentToolNotFoundError(AgentServiceError):
    """Raised when a bound tool id does not exist."""


class SystemAgentDeleteError(AgentServiceError):
    """Raised when trying to delete a reserved system agent."""


def list_agents(session: Session) -> List[AIAgent]:
    stmt: Select[tuple[AIAgent]] = (
        select(AIAgent)
        .options(selectinload(AIAgent.tool_links))
        .order_by(AIAgent.priority.desc(), AIAgent.id)
    )
    return list(session.execute(stmt).scalars().all())


def get_agent(session: Session, agent_id: int) -> AIAgent:
    stmt: Select[tuple[AIAgent]] = (
        select(AIAgent).options(selectinload(AIAgent.tool_links)).where(AIAgent.id == agent_id)
    )
    agent = session.execute(stmt).scalars().first()
    if agent is None:
        raise AgentNotFoundError(f"Agent {agent_id} not found")
    return agent


def _set_tools(session: Session, agent: AIAgent, tool_ids: list[int]) -> None:
    wanted = list(dict.fromkeys(tool_ids))
    if wanted:
        found = set(session.execute(select(AITool.id).where(AITool.id.in_(wanted))).scalars().all())
        missing = [tid for tid in wanted if tid not in found]
        if missing:
            raise AgentToolNotFoundError(f"工具不存在: {missing}")
    # 复用已有的关联行，避免 flush 时先插入后删除撞上唯一约束
    existing = {link.tool_id: link for link in agent.tool_links}
    agent.tool_links = [existing.get(tid) or AIAgentToolRel(tool_id=tid) for tid in wanted]
    # 只改关联表时 ai_agents 本身没有变更，手动刷新 updated_at 让轮询器感知
    agent.updated_at = utcnow()


def create_agent(session: Session, payload: AgentCreateRequest, *, operator: str | None = None) -> AIAgent:
    agent = AIAgent(
        name=payload.name,
        description=payload.description,
        system_prompt=payload.system_prompt,
        llm_config=payload.llm_config.model_dump() if payload.llm_config else None,
        keywords=payload.keywords,
        priority=payload.priority,
        agent_type=payload.agent_type,
        enabled=payload.enabled,
        created_by=operator,
        updated_by=operator,
    )
    _set_tools(session, agent, payload.tool_ids)
    session.add(agent)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        logger.error("Failed to create agent: %s", exc)
        raise AgentNameExistsError("Agent 名称已存在") from exc
    return get_agent(session, agent.id)


def update_agent(
    session: Session,
    agent_id: int,
    payload: AgentUpdateRequest,
    *,
    operator: str | None = None,
) -> AIAgent:
    agent = get_agent(session, agent_id)
    data = payload.model_dump(exclude_unset=True)

    tool_ids = data.pop("tool_ids", None)
    if tool_ids is not None:
        _set_tools(session, agent, tool_ids)
    if "llm_config" in data:
        agent.llm_config = data.pop("llm_config")
    for name, value in data.items():
        if name == "keywords" and value is None:
            value = []
        setattr(agent, name, value)
    agent.updated_by = operator

    session.add(agent)
    session.commit()
    return get_agent(session, agent_id)


def delete_agent(session: Session, agent_id: int) -> None:
    agent = get_agent(session, agent_id)
    if agent.name in SYSTEM_AGENT_NAMES:
        raise SystemAgentDeleteError(f"系统 Agent {agent.name} 不能删除")
    session.delete(agent)
    session.commit()


__all__ = [
    "AgentNameExistsError",
    "AgentNotFoundError",
    "AgentServiceError",
    "AgentToolNotFoundError",
    "SystemAgentDeleteError",
    "create_agent",
    "delete_agent",
    "get_agent",
    "list_agents",
    "update_agent",
]
