from __future__ import annotations

from typing import List

from sqlalchemy import Select, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from aiassistant.logging_config import logger
from aiassistant.models import AITool
from aiassistant.schemas.admin import ToolCreateRequest, ToolUpdateRequest


class ToolServiceError(RuntimeError):
    """Base error for tool operations."""


class ToolNameExistsError(ToolServiceError):
    """Raised when the tool name is taken."""


class ToolNotFoundError(ToolServiceError):
    """Raised when the tool cannot be found."""


def list_tools(session: Session, *, implementation_type: str | None = None) -> List[AITool]:
    stmt: Select[tuple[AITool]] = select(AITool).order_by(AITool.name)
    if implementation_type:
        stmt = stmt.where(AITool.implementation_type == implementation_type)
    return list(session.execute(stmt).scalars().all())


def get_tool(session: Session, tool_id: int) -> AITool:
    tool = session.get(AITool, tool_id)
    if tool is None:
        raise ToolNotFoundError(f"Tool {tool_id} not found")
    return tool


def create_tool(session: Session, payload: ToolCreateRequest, *, operator: str | None = None) -> AITool:
    tool = AITool(**payload.model_dump(), created_by=operator, updated_by=operator)
    if tool.method:
        tool.method = tool.method.upper()
    session.add(tool)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        logger.error("Failed to create tool: %s", exc)
        raise ToolNameExistsError("工具名称已存在") from exc
    session.refresh(tool)
    return tool


def update_tool(
    session: Session,
    tool_id: int,
    payload: ToolUpdateRequest,
    *,
    operator: str | None = None,
) -> AITool:
    tool = get_tool(session, tool_id)
    for name, value in payload.model_dump(exclude_unset=True).items():
        if name == "method" and value:
            value = value.upper()
        setattr(tool, name, value)
    tool.updated_by = operator

    session.add(tool)
    session.commit()
    session.refresh(tool)
    return tool


def delete_tool(session: Session, tool_id: int) -> None:
    tool = get_tool(session, tool_id)
    session.delete(tool)
    session.commit()


__all__ = [
    "ToolNameExistsError",
    "ToolNotFoundError",
    "ToolServiceError",
    "create_tool",
    "delete_tool",
    "get_tool",
    "list_tools",
    "update_tool",
]
