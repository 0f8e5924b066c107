"""
Pydantic request/response models for the chat API and the admin API.
"""

from .chat import (
    AssistantMessage,
    Attachment,
    ChatRequest,
    ChatResponse,
    ClientContext,
    ConfirmationRequest,
    MessageItem,
    MessageListResponse,
    PendingConfirmationInfo,
    ProposedTool,
    SessionItem,
    SessionListResponse,
    ToolError,
    ToolInfo,
    UploadResponse,
)

__all__ = [
    "AssistantMessage",
    "Attachment",
    "ChatRequest",
    "ChatResponse",
    "ClientContext",
    "ConfirmationRequest",
    "MessageItem",
    "MessageListResponse",
    "PendingConfirmationInfo",
    "ProposedTool",
    "SessionItem",
    "SessionListResponse",
    "ToolError",
    "ToolInfo",
    "UploadResponse",
]
