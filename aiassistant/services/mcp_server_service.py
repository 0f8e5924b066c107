from __future__ import annotations

from typing import List

from sqlalchemy import Select, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from aiassistant.logging_config import logger
from aiassistant.models import MCPServer, MCPTemplate
from aiassistant.schemas.admin import (
    MCPServerCreateRequest,
    MCPServerUpdateRequest,
    MCPTemplateCreateRequest,
    MCPTemplateUpdateRequest,
)


class MCPServerServiceError(RuntimeError):
    """Base error for remote tool server operations."""


class MCPServerNameExistsError(MCPServerServiceError):
    pass


class MCPServerNotFoundError(MCPServerServiceError):
    pass


class MCPTemplateNameExistsError(MCPServerServiceError):
    pass


class MCPTemplateNotFoundError(MCPServerServiceError):
    pass


# ---- servers ----


def list_servers(session: Session) -> List[MCPServer]:
    stmt: Select[tuple[MCPServer]] = select(MCPServer).order_by(MCPServer.id)
    return list(session.execute(stmt).scalars().all())


def get_server(session: Session, server_id: int) -> MCPServer:
    server = session.get(MCPServer, server_id)
    if server is None:
        raise MCPServerNotFoundError(f"MCP server {server_id} not found")
    return server


def create_server(session: Session, payload: MCPServerCreateRequest, *, operator: str | None = None) -> MCPServer:
    server = MCPServer(**payload.model_dump(), created_by=operator, updated_by=operator)
    session.add(server)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        logger.error("Failed to create MCP server: %s", exc)
        raise MCPServerNameExistsError("MCP Server 名称已存在") from exc
    session.refresh(server)
    return server


def create_server_from_template(
    session: Session,
    template_id: int,
    name: str,
    *,
    operator: str | None = None,
) -> MCPServer:
    template = get_template(session, template_id)
    config = dict(template.server_config or {})
    config["name"] = name
    config.setdefault("description", template.description)
    return create_server(session, MCPServerCreateRequest.model_validate(config), operator=operator)


def update_server(
    session: Session,
    server_id: int,
    payload: MCPServerUpdateRequest,
    *,
    operator: str | None = None,
) -> MCPServer:
    server = get_server(session, server_id)
    for name, value in payload.model_dump(exclude_unset=True).items():
        setattr(server, name, value)
    server.updated_by = operator
    session.add(server)
    session.commit()
    session.refresh(server)
    return server


def delete_server(session: Session, server_id: int) -> None:
    server = get_server(session, server_id)
    session.delete(server)
    session.commit()


# ---- templates ----


def list_templates(session: Session, *, category: str | None = None) -> List[MCPTemplate]:
    stmt: Select[tuple[MCPTemplate]] = select(MCPTemplate).order_by(MCPTemplate.category, MCPTemplate.name)
    if category:
        stmt = stmt.where(MCPTemplate.category == category)
    return list(session.execute(stmt).scalars().all())


def get_template(session: Session, template_id: int) -> MCPTemplate:
    template = session.get(MCPTemplate, template_id)
    if template is None:
        raise MCPTemplateNotFoundError(f"MCP template {template_id} not found")
    return template


def create_template(
    session: Session,
    payload: MCPTemplateCreateRequest,
    *,
    operator: str | None = None,
) -> MCPTemplate:
    template = MCPTemplate(**payload.model_dump(), created_by=operator, updated_by=operator)
    session.add(template)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        logger.error("Failed to create MCP template: %s", exc)
        raise MCPTemplateNameExistsError("模板名称已存在") from exc
    session.refresh(template)
    return template


def update_template(
    session: Session,
    template_id: int,
    payload: MCPTemplateUpdateRequest,
    *,
    operator: str | None = None,
) -> MCPTemplate:
    template = get_template(session, template_id)
    for name, value in payload.model_dump(exclude_unset=True).items():
        setattr(template, name, value)
    template.updated_by = operator
    session.add(template)
    session.commit()
    session.refresh(template)
    return template


def delete_template(session: Session, template_id: int) -> None:
    template = get_template(session, template_id)
    session.delete(template)
    session.commit()


__all__ = [
    "MCPServerNameExistsError",
    "MCPServerNotFoundError",
    "MCPServerServiceError",
    "MCPTemplateNameExistsError",
    "MCPTemplateNotFoundError",
    "create_server",
    "create_server_from_template",
    "create_template",
    "delete_server",
    "delete_template",
    "get_server",
    "get_template",
    "list_servers",
    "list_templates",
    "update_server",
    "update_template",
]
