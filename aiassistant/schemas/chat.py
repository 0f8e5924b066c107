from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

STATUS_COMPLETED = "completed"
STATUS_PENDING_CONFIRMATION = "pending_confirmation"
STATUS_ERROR = "error"

SOURCE_KNOWLEDGE_BASE = "knowledge_base"
SOURCE_MCP_TOOL = "mcp_tool"
SOURCE_DIRECT = "direct"

FORMAT_MARKDOWN = "markdown"
FORMAT_TEXT = "text"


class Attachment(BaseModel):
    # image / file
    type: str = "file"
    file_id: str
    mime_type: str = ""


class ClientContext(BaseModel):
    busi_group_id: int | None = None
    user_timezone: str = ""
    ui_language: str = ""
    env: str = ""


class ConfirmationRequest(BaseModel):
    confirm_id: str = Field(..., min_length=1)
    action: str = Field(..., description="approve / reject")


class ChatRequest(BaseModel):
    session_id: str | None = None
    message: str = Field(default="", max_length=20000)
    attachments: list[Attachment] = Field(default_factory=list)
    # 知识库侧会话 ID，用于多轮上下文
    conversation_id: str | None = None
    client_context: ClientContext = Field(default_factory=ClientContext)
    confirmation: ConfirmationRequest | None = None

    model_config = ConfigDict(extra="ignore")


class AssistantMessage(BaseModel):
    format: Literal["markdown", "text"] = FORMAT_MARKDOWN
    content: str = ""


class ToolError(BaseModel):
    code: str
    message: str
    raw: str | None = None


class ToolInfo(BaseModel):
    called: bool = True
    name: str
    status: Literal["success", "failed"] = "success"
    request: dict[str, Any] | None = None
    result: Any = None
    error: ToolError | None = None
    cache_hit: bool = False
    duration_ms: int | None = None


class ProposedTool(BaseModel):
    name: str
    request: dict[str, Any] = Field(default_factory=dict)


class PendingConfirmationInfo(BaseModel):
    confirm_id: str
    risk_level: Literal["high", "medium"] = "high"
    summary: str = ""
    proposed_tool: ProposedTool
    check_result: dict[str, Any] | None = None
    expires_at: int


class ChatResponse(BaseModel):
    trace_id: str
    session_id: str
    status: Literal["completed", "pending_confirmation", "error"]
    source: Literal["knowledge_base", "mcp_tool", "direct"] | None = None
    conversation_id: str | None = None
    assistant_message: AssistantMessage
    # 兼容旧客户端：多工具时为第一个工具
    tool: ToolInfo | None = None
    tools: list[ToolInfo] | None = None
    pending_confirmation: PendingConfirmationInfo | None = None
    # 被限流时的建议等待秒数
    retry_after: int | None = None
    agent: str | None = None


class UploadResponse(BaseModel):
    file_id: str
    filename: str
    mime_type: str
    size: int
    sha256: str
    expires_at: int


class SessionItem(BaseModel):
    id: str
    user_id: str
    mode: str
    created_at: int
    last_active_at: int
    message_count: int = 0


class SessionListResponse(BaseModel):
    items: list[SessionItem] = Field(default_factory=list)
    total: int = 0


class MessageItem(BaseModel):
    id: str
    role: str
    content: str = ""
    timestamp: int = 0
    trace_id: str | None = None
    tool_call: dict[str, Any] | None = None


class MessageListResponse(BaseModel):
    session_id: str
    items: list[MessageItem] = Field(default_factory=list)


__all__ = [
    "AssistantMessage",
    "Attachment",
    "ChatRequest",
    "ChatResponse",
    "ClientContext",
    "ConfirmationRequest",
    "FORMAT_MARKDOWN",
    "FORMAT_TEXT",
    "MessageItem",
    "MessageListResponse",
    "PendingConfirmationInfo",
    "ProposedTool",
    "SOURCE_DIRECT",
    "SOURCE_KNOWLEDGE_BASE",
    "SOURCE_MCP_TOOL",
    "STATUS_COMPLETED",
    "STATUS_ERROR",
    "STATUS_PENDING_CONFIRMATION",
    "SessionItem",
    "SessionListResponse",
    "ToolError",
    "ToolInfo",
    "UploadResponse",
]
