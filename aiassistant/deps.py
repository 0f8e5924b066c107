from collections.abc import Iterator

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from .db import get_db_session
from .errors import http_error, service_unavailable
from .services.container import AssistantServices


def get_db() -> Iterator[Session]:
    """
    Provide a synchronous SQLAlchemy session.
    """
    yield from get_db_session()


def get_services(request: Request) -> AssistantServices:
    """
    运行时容器由 lifespan 构建；测试中预先注入到 app.state.services。
    """
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise service_unavailable("AI 助手服务尚未就绪")
    return services


def get_current_user_id(x_user_id: str | None = Header(default=None, alias="X-User-Id")) -> str:
    """
    调用方（网关）已完成鉴权，这里只读取透传的用户 ID。
    """
    if not x_user_id or not x_user_id.strip():
        raise http_error(401, error="unauthorized", message="缺少 X-User-Id")
    return x_user_id.strip()


def get_operator(user_id: str = Depends(get_current_user_id)) -> str:
    return user_id


def get_client_ip(
    request: Request,
    x_forwarded_for: str | None = Header(default=None, alias="X-Forwarded-For"),
) -> str:
    """
    优先取 X-Forwarded-For 的第一跳，其次是直连地址。
    """
    if x_forwarded_for:
        first = x_forwarded_for.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else ""


__all__ = [
    "get_client_ip",
    "get_current_user_id",
    "get_db",
    "get_operator",
    "get_services",
]
