from __future__ import annotations

from fastapi import APIRouter, Depends, File, UploadFile, status
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session

from aiassistant.deps import get_client_ip, get_current_user_id, get_db, get_services
from aiassistant.errors import AssistantError, assistant_http_error, forbidden, not_found
from aiassistant.logging_config import logger
from aiassistant.models.session_archive import ARCHIVE_REASON_USER_DELETED
from aiassistant.schemas.chat import (
    ChatRequest,
    ChatResponse,
    MessageItem,
    MessageListResponse,
    SessionItem,
    SessionListResponse,
    UploadResponse,
)
from aiassistant.services.container import AssistantServices
from aiassistant.services.session_archive_service import archive_session
from aiassistant.services.session_manager import ChatSession, SessionNotFoundError, SessionStats

router = APIRouter(prefix="/ai-assistant", tags=["ai-assistant"])


async def _owned_session(services: AssistantServices, session_id: str, user_id: str) -> ChatSession:
    try:
        session = await services.sessions.get(session_id)
    except SessionNotFoundError as exc:
        raise not_found(exc.message)
    if session.user_id != user_id:
        raise forbidden("无权访问该会话")
    return session


@router.post("/chat", response_model=ChatResponse, response_model_exclude_none=True)
async def chat_endpoint(
    payload: ChatRequest,
    user_id: str = Depends(get_current_user_id),
    client_ip: str = Depends(get_client_ip),
    services: AssistantServices = Depends(get_services),
) -> ChatResponse:
    """
    一轮对话。业务失败（限流、工具失败、模型不可用等）以 status=error 的响应体返回，HTTP 状态仍为 200。
    """
    return await services.orchestrator.handle_chat(payload, user_id, client_ip=client_ip)


@router.post(
    "/chat/upload",
    response_model=UploadResponse,
    status_code=status.HTTP_201_CREATED,
)
async def upload_endpoint(
    file: UploadFile = File(...),
    user_id: str = Depends(get_current_user_id),
    services: AssistantServices = Depends(get_services),
) -> UploadResponse:
    try:
        info = await services.files.upload(
            user_id=user_id,
            filename=file.filename or "",
            mime_type=file.content_type or "",
            source=file,
        )
    except AssistantError as exc:
        raise assistant_http_error(exc)
    finally:
        await file.close()
    return UploadResponse(
        file_id=info.file_id,
        filename=info.filename,
        mime_type=info.mime_type,
        size=info.size,
        sha256=info.sha256,
        expires_at=info.expires_at,
    )


@router.get("/files/{file_id}")
async def download_endpoint(
    file_id: str,
    user_id: str = Depends(get_current_user_id),
    services: AssistantServices = Depends(get_services),
) -> FileResponse:
    try:
        info = await services.files.get_info(file_id)
        if info.user_id != user_id:
            raise forbidden("无权访问该文件")
        path = await services.files.get_path(file_id)
    except AssistantError as exc:
        raise assistant_http_error(exc)
    return FileResponse(path, media_type=info.mime_type, filename=info.filename)


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions_endpoint(
    user_id: str = Depends(get_current_user_id),
    services: AssistantServices = Depends(get_services),
) -> SessionListResponse:
    items: list[SessionItem] = []
    for session_id in await services.sessions.get_user_sessions(user_id):
        try:
            session = await services.sessions.get(session_id)
        except SessionNotFoundError:
            continue
        items.append(SessionItem.model_validate(session.model_dump()))
    items.sort(key=lambda s: s.last_active_at, reverse=True)
    return SessionListResponse(items=items, total=len(items))


@router.get("/sessions-stats", response_model=SessionStats)
async def session_stats_endpoint(
    user_id: str = Depends(get_current_user_id),
    services: AssistantServices = Depends(get_services),
) -> SessionStats:
    return await services.sessions.get_stats()


@router.get("/sessions/{session_id}", response_model=SessionItem)
async def get_session_endpoint(
    session_id: str,
    user_id: str = Depends(get_current_user_id),
    services: AssistantServices = Depends(get_services),
) -> SessionItem:
    session = await _owned_session(services, session_id, user_id)
    return SessionItem.model_validate(session.model_dump())


@router.get("/sessions/{session_id}/messages", response_model=MessageListResponse)
async def list_messages_endpoint(
    session_id: str,
    limit: int = 0,
    user_id: str = Depends(get_current_user_id),
    services: AssistantServices = Depends(get_services),
) -> MessageListResponse:
    await _owned_session(services, session_id, user_id)
    messages = await services.sessions.get_messages(session_id, limit)
    return MessageListResponse(
        session_id=session_id,
        items=[
            MessageItem(
                id=m.id,
                role=m.role,
                content=m.content,
                timestamp=m.timestamp,
                trace_id=m.trace_id,
                tool_call=m.tool_call,
            )
            for m in messages
        ],
    )


@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_session_endpoint(
    session_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    services: AssistantServices = Depends(get_services),
) -> None:
    await _owned_session(services, session_id, user_id)
    try:
        await archive_session(db, services.sessions, session_id, ARCHIVE_REASON_USER_DELETED, user_id)
    except SessionNotFoundError as exc:
        raise not_found(exc.message)
    logger.info("session %s deleted by user %s", session_id, user_id)


__all__ = ["router"]
