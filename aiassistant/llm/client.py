"""
OpenAI-compatible chat completion client.

Only the non-streaming `/chat/completions` call is implemented; the
streaming hook exists so callers can code against it, but raises
NotImplementedError for now.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from aiassistant.errors import AssistantError, ErrorCode
from aiassistant.logging_config import logger

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_TIMEOUT_SECONDS = 30.0
_ERROR_BODY_PREVIEW = 500


class ToolCallFunction(BaseModel):
    name: str = ""
    # JSON 字符串，由模型生成，可能不合法
    arguments: str = ""


class ToolCallPayload(BaseModel):
    id: str = ""
    type: str = "function"
    function: ToolCallFunction = Field(default_factory=ToolCallFunction)


class LLMMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: str
    # str 或多模态 content parts
    content: Any = None
    name: str | None = None
    tool_calls: list[ToolCallPayload] | None = None
    tool_call_id: str | None = None

    def to_wire(self) -> dict[str, Any]:
        payload = self.model_dump(exclude_none=True)
        if self.role == "assistant" and self.tool_calls and "content" not in payload:
            payload["content"] = None
        return payload


class ToolFunction(BaseModel):
    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)


class ToolDefinition(BaseModel):
    type: str = "function"
    function: ToolFunction


class ChatCompletionRequest(BaseModel):
    model: str = ""
    messages: list[LLMMessage] = Field(default_factory=list)
    tools: list[ToolDefinition] = Field(default_factory=list)
    tool_choice: Any = None
    # 作为第一条 system 消息插入，不直接序列化
    system_prompt: str = ""
    temperature: float = 0.0
    max_tokens: int = 0
    custom_params: dict[str, Any] = Field(default_factory=dict)


class Choice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    index: int = 0
    message: LLMMessage = Field(default_factory=lambda: LLMMessage(role="assistant"))
    finish_reason: str | None = None


class Usage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatCompletionResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = ""
    object: str = ""
    created: int = 0
    model: str = ""
    choices: list[Choice] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)

    @property
    def message(self) -> LLMMessage | None:
        return self.choices[0].message if self.choices else None

    @property
    def content(self) -> str:
        message = self.message
        if message is None or message.content is None:
            return ""
        if isinstance(message.content, str):
            return message.content
        return json.dumps(message.content, ensure_ascii=False)

    @property
    def tool_calls(self) -> list[ToolCallPayload]:
        message = self.message
        if message is None or not message.tool_calls:
            return []
        return list(message.tool_calls)


@dataclass(frozen=True)
class StreamDelta:
    content: str = ""
    tool_calls: list[ToolCallPayload] = field(default_factory=list)
    done: bool = False


class LLMCallError(AssistantError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        details = {"status_code": status_code} if status_code is not None else None
        super().__init__(ErrorCode.LLM_CALL_FAILED, message, details=details)
        self.status_code = status_code


class LLMClient(Protocol):
    model: str

    async def chat_completion(self, request: ChatCompletionRequest) -> ChatCompletionResponse: ...

    def stream_completion(self, request: ChatCompletionRequest) -> AsyncIterator[StreamDelta]: ...

    async def aclose(self) -> None: ...


@dataclass
class OpenAIClientConfig:
    model: str
    api_key: str = ""
    base_url: str = DEFAULT_BASE_URL
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    skip_ssl_verify: bool = False
    proxy: str | None = None
    custom_params: dict[str, Any] = field(default_factory=dict)


class OpenAIClient:
    """
    OpenAI 兼容的 chat completions 客户端（Bearer 认证）。

    传入 `client` 时复用调用方的 httpx.AsyncClient（测试里用 MockTransport），
    否则按配置自建，支持跳过 TLS 校验与 HTTP 代理。
    """

    def __init__(self, config: OpenAIClientConfig, *, client: httpx.AsyncClient | None = None) -> None:
        if not config.base_url:
            config.base_url = DEFAULT_BASE_URL
        if not config.timeout or config.timeout <= 0:
            config.timeout = DEFAULT_TIMEOUT_SECONDS
        self.config = config
        self._owns_client = client is None
        if client is None:
            client = httpx.AsyncClient(
                timeout=config.timeout,
                verify=not config.skip_ssl_verify,
                proxy=config.proxy or None,
            )
        self._client = client

    @property
    def model(self) -> str:
        return self.config.model

    def build_messages(self, request: ChatCompletionRequest) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.extend(m.to_wire() for m in request.messages)
        return messages

    def build_body(self, request: ChatCompletionRequest) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": request.model or self.config.model,
            "messages": self.build_messages(request),
        }
        if request.temperature > 0:
            body["temperature"] = request.temperature
        if request.max_tokens > 0:
            body["max_tokens"] = request.max_tokens
        if request.tools:
            body["tools"] = [t.model_dump() for t in request.tools]
            body["tool_choice"] = request.tool_choice if request.tool_choice is not None else "auto"
        body.update(self.config.custom_params)
        body.update(request.custom_params)
        return body

    async def chat_completion(self, request: ChatCompletionRequest) -> ChatCompletionResponse:
        body = self.build_body(request)
        url = self.config.base_url.rstrip("/") + "/chat/completions"
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.config.api_key}",
        }
        try:
            resp = await self._client.post(url, json=body, headers=headers, timeout=self.config.timeout)
        except httpx.TimeoutException as exc:
            raise LLMCallError(f"LLM request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise LLMCallError(f"LLM request failed: {exc}") from exc

        if resp.status_code != 200:
            preview = resp.text[:_ERROR_BODY_PREVIEW]
            logger.warning("LLM API error: status=%s model=%s body=%s", resp.status_code, body["model"], preview)
            raise LLMCallError(
                f"API error: status={resp.status_code}, body={preview}",
                status_code=resp.status_code,
            )

        try:
            return ChatCompletionResponse.model_validate(resp.json())
        except (ValueError, ValidationError) as exc:
            raise LLMCallError(f"parse response failed: {exc}") from exc

    def stream_completion(self, request: ChatCompletionRequest) -> AsyncIterator[StreamDelta]:
        # TODO: 接入 SSE 流式响应（stream=true + data: 行解析）
        raise NotImplementedError("streaming not implemented yet")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = [
    "ChatCompletionRequest",
    "ChatCompletionResponse",
    "Choice",
    "LLMCallError",
    "LLMClient",
    "LLMMessage",
    "OpenAIClient",
    "OpenAIClientConfig",
    "StreamDelta",
    "ToolCallFunction",
    "ToolCallPayload",
    "ToolDefinition",
    "ToolFunction",
    "Usage",
]
