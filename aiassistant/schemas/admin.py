from __future__ import annotations

import datetime as dt
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

ImplementationTypeValue = Literal["native", "api", "mcp", "knowledge"]
RiskLevelValue = Literal["low", "medium", "high"]
ProviderTypeValue = Literal["cloudflare_autorag", "coze"]
ServerTypeValue = Literal["http", "sse"]


class _UpdateRequest(BaseModel):
    """Update payloads must carry at least one field."""

    @model_validator(mode="after")
    def ensure_any_field(self) -> "_UpdateRequest":
        if not self.model_fields_set:
            raise ValueError("至少需要提供一个字段")
        return self


# ---- agents ----


class AgentLLMConfig(BaseModel):
    model: str = ""
    temperature: float = 0.0
    max_tokens: int = 0


class AgentCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128, pattern=r"^\w+$")
    description: str | None = Field(default=None, max_length=2000)
    system_prompt: str | None = None
    llm_config: AgentLLMConfig | None = None
    keywords: list[str] = Field(default_factory=list)
    priority: int = 0
    agent_type: Literal["system", "expert", "knowledge"] = "expert"
    enabled: bool = True
    tool_ids: list[int] = Field(default_factory=list)


class AgentUpdateRequest(_UpdateRequest):
    description: str | None = Field(default=None, max_length=2000)
    system_prompt: str | None = None
    llm_config: AgentLLMConfig | None = None
    keywords: list[str] | None = None
    priority: int | None = None
    agent_type: Literal["system", "expert", "knowledge"] | None = None
    enabled: bool | None = None
    tool_ids: list[int] | None = None


class AgentResponse(BaseModel):
    id: int
    name: str
    description: str | None = None
    system_prompt: str | None = None
    llm_config: dict[str, Any] | None = None
    keywords: list[str] = Field(default_factory=list)
    priority: int
    agent_type: str
    enabled: bool
    tool_ids: list[int] = Field(default_factory=list)
    created_at: dt.datetime
    updated_at: dt.datetime

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_model(cls, row: Any) -> "AgentResponse":
        return cls(
            id=row.id,
            name=row.name,
            description=row.description,
            system_prompt=row.system_prompt,
            llm_config=row.llm_config,
            keywords=list(row.keywords or []),
            priority=row.priority,
            agent_type=row.agent_type,
            enabled=row.enabled,
            tool_ids=sorted(link.tool_id for link in row.tool_links),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


# ---- tools ----


class ToolCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128, pattern=r"^[A-Za-z0-9_\-]+$")
    description: str | None = Field(default=None, max_length=4000)
    implementation_type: ImplementationTypeValue
    method: str | None = Field(default=None, max_length=16)
    url_path: str | None = Field(default=None, max_length=512)
    response_mapping: dict[str, Any] | None = None
    mcp_server_id: int | None = None
    mcp_tool_name: str | None = None
    native_handler: str | None = None
    knowledge_provider_id: int | None = None
    parameter_schema: dict[str, Any] | None = None
    risk_level: RiskLevelValue = "low"
    enabled: bool = True

    @model_validator(mode="after")
    def ensure_kind_config(self) -> "ToolCreateRequest":
        if self.implementation_type == "api" and not self.url_path:
            raise ValueError("api 工具必须配置 url_path")
        if self.implementation_type == "mcp" and self.mcp_server_id is None:
            raise ValueError("mcp 工具必须配置 mcp_server_id")
        return self


class ToolUpdateRequest(_UpdateRequest):
    description: str | None = Field(default=None, max_length=4000)
    implementation_type: ImplementationTypeValue | None = None
    method: str | None = Field(default=None, max_length=16)
    url_path: str | None = Field(default=None, max_length=512)
    response_mapping: dict[str, Any] | None = None
    mcp_server_id: int | None = None
    mcp_tool_name: str | None = None
    native_handler: str | None = None
    knowledge_provider_id: int | None = None
    parameter_schema: dict[str, Any] | None = None
    risk_level: RiskLevelValue | None = None
    enabled: bool | None = None


class ToolResponse(BaseModel):
    id: int
    name: str
    description: str | None = None
    implementation_type: str
    method: str | None = None
    url_path: str | None = None
    response_mapping: dict[str, Any] | None = None
    mcp_server_id: int | None = None
    mcp_tool_name: str | None = None
    native_handler: str | None = None
    knowledge_provider_id: int | None = None
    parameter_schema: dict[str, Any] | None = None
    risk_level: str
    enabled: bool
    created_at: dt.datetime
    updated_at: dt.datetime

    model_config = ConfigDict(from_attributes=True)


# ---- knowledge ----


class KnowledgeProviderCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128, pattern=r"^[A-Za-z0-9_\-]+$")
    provider_type: ProviderTypeValue
    description: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True


class KnowledgeProviderUpdateRequest(_UpdateRequest):
    provider_type: ProviderTypeValue | None = None
    description: str | None = None
    config: dict[str, Any] | None = None
    enabled: bool | None = None


class KnowledgeProviderResponse(BaseModel):
    id: int
    name: str
    provider_type: str
    description: str | None = None
    # 敏感字段已打码
    config: dict[str, Any] | None = None
    enabled: bool
    health_status: int
    last_check_time: dt.datetime | None = None
    last_check_error: str | None = None
    created_at: dt.datetime
    updated_at: dt.datetime

    model_config = ConfigDict(from_attributes=True)


class KnowledgeHealthResponse(BaseModel):
    provider_id: int
    healthy: bool
    error: str | None = None
    checked_at: dt.datetime


class KnowledgeToolCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128, pattern=r"^[A-Za-z0-9_\-]+$")
    description: str | None = None
    provider_id: int
    parameters: dict[str, Any] = Field(default_factory=dict)
    keywords: list[str] = Field(default_factory=list)
    priority: int = 0
    enabled: bool = True


class KnowledgeToolUpdateRequest(_UpdateRequest):
    description: str | None = None
    provider_id: int | None = None
    parameters: dict[str, Any] | None = None
    keywords: list[str] | None = None
    priority: int | None = None
    enabled: bool | None = None


class KnowledgeToolResponse(BaseModel):
    id: int
    name: str
    description: str | None = None
    provider_id: int
    parameters: dict[str, Any] | None = None
    keywords: list[str] | None = None
    priority: int
    enabled: bool
    created_at: dt.datetime
    updated_at: dt.datetime

    model_config = ConfigDict(from_attributes=True)


# ---- remote tool servers ----


class MCPServerCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    description: str | None = None
    server_type: ServerTypeValue = "http"
    endpoint: str = Field(..., min_length=1, max_length=512)
    health_check_url: str | None = None
    health_check_interval: int = Field(default=60, ge=0)
    timeout_seconds: int = Field(default=30, ge=1, le=600)
    allowed_envs: list[str] = Field(default_factory=list)
    allowed_prefixes: list[str] = Field(default_factory=list)
    allowed_ips: list[str] = Field(default_factory=list)
    enabled: bool = True


class MCPServerUpdateRequest(_UpdateRequest):
    description: str | None = None
    server_type: ServerTypeValue | None = None
    endpoint: str | None = Field(default=None, min_length=1, max_length=512)
    health_check_url: str | None = None
    health_check_interval: int | None = Field(default=None, ge=0)
    timeout_seconds: int | None = Field(default=None, ge=1, le=600)
    allowed_envs: list[str] | None = None
    allowed_prefixes: list[str] | None = None
    allowed_ips: list[str] | None = None
    enabled: bool | None = None


class MCPServerResponse(BaseModel):
    id: int
    name: str
    description: str | None = None
    server_type: str
    endpoint: str
    health_check_url: str | None = None
    health_check_interval: int
    timeout_seconds: int
    allowed_envs: list[str] | None = None
    allowed_prefixes: list[str] | None = None
    allowed_ips: list[str] | None = None
    enabled: bool
    health_status: int
    last_check_time: dt.datetime | None = None
    last_check_error: str | None = None
    created_at: dt.datetime
    updated_at: dt.datetime

    model_config = ConfigDict(from_attributes=True)


class MCPRemoteToolResponse(BaseModel):
    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=dict)


class MCPTemplateCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    description: str | None = None
    server_config: dict[str, Any] = Field(default_factory=dict)
    category: Literal["k8s", "db", "monitor", "custom"] = "custom"
    is_default: bool = False
    is_public: bool = True


class MCPTemplateUpdateRequest(_UpdateRequest):
    description: str | None = None
    server_config: dict[str, Any] | None = None
    category: Literal["k8s", "db", "monitor", "custom"] | None = None
    is_default: bool | None = None
    is_public: bool | None = None


class MCPTemplateResponse(BaseModel):
    id: int
    name: str
    description: str | None = None
    server_config: dict[str, Any] | None = None
    category: str
    is_default: bool
    is_public: bool
    created_at: dt.datetime
    updated_at: dt.datetime

    model_config = ConfigDict(from_attributes=True)


# ---- LLM models ----


class LLMModelCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    model_id: str = Field(..., min_length=1, max_length=128)
    provider: str = "openai"
    api_key: str | None = None
    base_url: str | None = None
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: int = Field(default=4096, ge=1)
    timeout: int = Field(default=60, ge=1)
    is_default: bool = False
    enabled: bool = True


class LLMModelUpdateRequest(_UpdateRequest):
    model_id: str | None = Field(default=None, min_length=1, max_length=128)
    provider: str | None = None
    api_key: str | None = None
    base_url: str | None = None
    temperature: float | None = Field(default=None, ge=0, le=2)
    max_tokens: int | None = Field(default=None, ge=1)
    timeout: int | None = Field(default=None, ge=1)
    is_default: bool | None = None
    enabled: bool | None = None


class LLMModelResponse(BaseModel):
    id: int
    name: str
    model_id: str
    provider: str
    # 打码后的 key
    api_key: str | None = None
    base_url: str | None = None
    temperature: float
    max_tokens: int
    timeout: int
    is_default: bool
    enabled: bool
    created_at: dt.datetime
    updated_at: dt.datetime

    model_config = ConfigDict(from_attributes=True)


# ---- configuration ----


class OptimizationConfigResponse(BaseModel):
    config_type: str
    config_key: str
    config_value: dict[str, Any]
    description: str | None = None
    enabled: bool
    # 数据库中没有这一行时为 True，返回的是内置默认值
    is_default: bool = False


class OptimizationConfigUpdateRequest(BaseModel):
    config_value: dict[str, Any]
    description: str | None = None
    enabled: bool | None = None


class AIConfigCreateRequest(BaseModel):
    config_key: str = Field(..., min_length=1, max_length=128)
    config_value: str = Field(..., description="JSON 字符串，可包含 ${ENV} 占位符")
    config_type: str = "general"
    description: str | None = None
    scope: str | None = None
    scope_id: int | None = None
    enabled: bool = True


class AIConfigUpdateRequest(_UpdateRequest):
    config_value: str | None = None
    config_type: str | None = None
    description: str | None = None
    scope: str | None = None
    scope_id: int | None = None
    enabled: bool | None = None


class AIConfigResponse(BaseModel):
    id: int
    config_key: str
    config_value: str
    config_type: str
    description: str | None = None
    scope: str | None = None
    scope_id: int | None = None
    enabled: bool
    created_at: dt.datetime
    updated_at: dt.datetime

    model_config = ConfigDict(from_attributes=True)


class ReloadResponse(BaseModel):
    reloaded: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


# ---- stats / archives ----


class CostDailyResponse(BaseModel):
    date: str
    total_cost: float
    total_tokens: int
    request_count: int
    models: dict[str, float] = Field(default_factory=dict)


class CostUserResponse(BaseModel):
    user_id: str
    start_date: str
    end_date: str
    total_cost: float
    request_count: int


class CostThresholdResponse(BaseModel):
    date: str
    total_cost: float
    threshold: float
    exceeded: bool


class SessionArchiveResponse(BaseModel):
    id: int
    session_id: str
    user_id: str
    mode: str | None = None
    message_count: int
    first_message_at: dt.datetime | None = None
    last_message_at: dt.datetime | None = None
    messages: list[dict[str, Any]] | None = None
    trace_ids: list[str] | None = None
    archived_at: dt.datetime
    archived_by: str | None = None
    archive_reason: str

    model_config = ConfigDict(from_attributes=True)


class SessionArchiveListResponse(BaseModel):
    items: list[SessionArchiveResponse] = Field(default_factory=list)
    total: int = 0


__all__ = [
    "AIConfigCreateRequest",
    "AIConfigResponse",
    "AIConfigUpdateRequest",
    "AgentCreateRequest",
    "AgentLLMConfig",
    "AgentResponse",
    "AgentUpdateRequest",
    "CostDailyResponse",
    "CostThresholdResponse",
    "CostUserResponse",
    "KnowledgeHealthResponse",
    "KnowledgeProviderCreateRequest",
    "KnowledgeProviderResponse",
    "KnowledgeProviderUpdateRequest",
    "KnowledgeToolCreateRequest",
    "KnowledgeToolResponse",
    "KnowledgeToolUpdateRequest",
    "LLMModelCreateRequest",
    "LLMModelResponse",
    "LLMModelUpdateRequest",
    "MCPRemoteToolResponse",
    "MCPServerCreateRequest",
    "MCPServerResponse",
    "MCPServerUpdateRequest",
    "MCPTemplateCreateRequest",
    "MCPTemplateResponse",
    "MCPTemplateUpdateRequest",
    "OptimizationConfigResponse",
    "OptimizationConfigUpdateRequest",
    "ReloadResponse",
    "SessionArchiveListResponse",
    "SessionArchiveResponse",
    "ToolCreateRequest",
    "ToolResponse",
    "ToolUpdateRequest",
]
