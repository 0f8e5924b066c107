from __future__ import annotations

from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from aiassistant.models.knowledge import PROVIDER_COZE

from .base import STATUS_COMPLETED, KnowledgeProviderClient, QueryRequest, QueryResponse

DEFAULT_TIMEOUT_SECONDS = 30


class CozeConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    base_url: str = "https://api.coze.cn"
    api_key: str
    default_bot_id: str = ""
    timeout: int = 0


class _CozeMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: str = ""
    content: str = ""
    content_type: str = ""


class _CozeData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    conversation_id: str = ""
    status: str = ""


class _CozeResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: int = 0
    msg: str = ""
    data: _CozeData = Field(default_factory=_CozeData)
    messages: list[_CozeMessage] = Field(default_factory=list)


class CozeProvider(KnowledgeProviderClient):
    """Coze Bot 对话式知识库，跨轮保留 conversation_id。"""

    provider_type = PROVIDER_COZE

    def __init__(self, name: str, config: CozeConfig, *, client: httpx.AsyncClient | None = None) -> None:
        super().__init__(name)
        self.config = config
        self._client = client
        self.timeout = float(config.timeout if config.timeout > 0 else DEFAULT_TIMEOUT_SECONDS)

    def build_chat_body(self, request: QueryRequest, bot_id: str) -> dict[str, Any]:
        body: dict[str, Any] = {
            "bot_id": bot_id,
            "user_id": request.user_id,
            "stream": False,
            "auto_save_history": True,
            "additional_messages": [
                {
                    "role": "user",
                    "content": request.get_query_text(),
                    "content_type": "text",
                }
            ],
        }
        if request.conversation_id:
            body["conversation_id"] = request.conversation_id
        return body

    async def query(self, request: QueryRequest) -> QueryResponse:
        bot_id = request.bot_id or self.config.default_bot_id
        if not bot_id:
            return QueryResponse.failed("bot_id is required")

        url = self.config.base_url.rstrip("/") + "/v3/chat"
        kwargs: dict[str, Any] = {
            "json": self.build_chat_body(request, bot_id),
            "headers": {
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.config.api_key}",
            },
        }
        try:
            if self._client is not None:
                resp = await self._client.post(url, timeout=self.timeout, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(url, **kwargs)
        except httpx.HTTPError as exc:
            return QueryResponse.failed(f"request failed: {exc}")

        try:
            payload = _CozeResponse.model_validate(resp.json())
        except (ValueError, ValidationError) as exc:
            return QueryResponse.failed(f"failed to parse response: {exc}")

        if payload.code != 0:
            return QueryResponse.failed(payload.msg or f"coze error code {payload.code}")

        answer = next(
            (m.content for m in payload.messages if m.role == "assistant" and m.content_type == "text"),
            "",
        )
        return QueryResponse(
            conversation_id=payload.data.conversation_id,
            answer=answer,
            status=payload.data.status or STATUS_COMPLETED,
        )

    async def health(self) -> None:
        # Coze 没有无副作用的探活接口
        return None


__all__ = ["CozeConfig", "CozeProvider"]
