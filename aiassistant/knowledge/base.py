from __future__ import annotations

import abc
from typing import Any

from pydantic import BaseModel, Field

STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


class QueryRequest(BaseModel):
    query: str = ""
    user_id: str = ""
    session_id: str = ""
    # 知识库侧的会话 ID，用于多轮上下文
    conversation_id: str = ""
    max_results: int = 0
    score_threshold: float = 0.0
    extra: dict[str, Any] = Field(default_factory=dict)

    # 旧字段
    message: str = ""
    bot_id: str = ""

    def get_query_text(self) -> str:
        return self.query or self.message


class QueryResult(BaseModel):
    content: str = ""
    score: float = 0.0
    source: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class QueryResponse(BaseModel):
    results: list[QueryResult] = Field(default_factory=list)
    conversation_id: str = ""
    answer: str = ""
    status: str = STATUS_COMPLETED
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.status == STATUS_COMPLETED

    @property
    def is_empty(self) -> bool:
        return not self.results and not self.answer

    @classmethod
    def failed(cls, error: str) -> "QueryResponse":
        return cls(status=STATUS_FAILED, error=error)


class KnowledgeProviderClient(abc.ABC):
    """
    知识库 Provider 接口。

    领域内失败（鉴权错误、空查询等）通过 QueryResponse.status=failed 返回，
    不抛异常；health() 失败时抛出异常。
    """

    provider_type: str = ""

    def __init__(self, name: str) -> None:
        self.name = name

    @abc.abstractmethod
    async def query(self, request: QueryRequest) -> QueryResponse:
        raise NotImplementedError

    @abc.abstractmethod
    async def health(self) -> None:
        raise NotImplementedError


class KnowledgeProviderError(RuntimeError):
    """Provider 配置不合法或类型不支持。"""


def format_results_for_llm(response: QueryResponse) -> str:
    """把查询结果整理成 tool 消息文本：汇总答案优先，否则拼接文档片段。"""
    if response.status != STATUS_COMPLETED:
        return f"查询失败: {response.error}"

    if not response.results:
        return response.answer or "未找到相关信息"

    if response.answer:
        return response.answer

    parts: list[str] = []
    for item in response.results:
        text = item.content
        if item.source:
            text += f"\n(来源: {item.source})"
        parts.append(text)
    return "\n\n---\n\n".join(parts)


__all__ = [
    "KnowledgeProviderClient",
    "KnowledgeProviderError",
    "QueryRequest",
    "QueryResponse",
    "QueryResult",
    "STATUS_COMPLETED",
    "STATUS_FAILED",
    "format_results_for_llm",
]
