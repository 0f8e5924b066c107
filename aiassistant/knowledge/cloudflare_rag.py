from __future__ import annotations

from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from aiassistant.logging_config import logger
from aiassistant.models.knowledge import PROVIDER_CLOUDFLARE_AUTORAG

from .base import KnowledgeProviderClient, QueryRequest, QueryResponse, QueryResult

CLOUDFLARE_API_BASE = "https://api.cloudflare.com/client/v4"
DEFAULT_MAX_RESULTS = 10
DEFAULT_SCORE_THRESHOLD = 0.3
DEFAULT_TIMEOUT_SECONDS = 30


class CloudflareRAGConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    account_id: str
    rag_name: str
    api_token: str
    model: str = ""
    rewrite_query: bool = False
    max_num_results: int = 0
    score_threshold: float = 0.0
    timeout: int = 0


class _ContentItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = ""
    type: str = ""
    text: str = ""


class _SearchData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    file_id: str = ""
    filename: str = ""
    score: float = 0.0
    attributes: dict[str, Any] = Field(default_factory=dict)
    content: list[_ContentItem] = Field(default_factory=list)


class _SearchResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    response: str = ""
    search_query: str = ""
    data: list[_SearchData] = Field(default_factory=list)
    has_more: bool = False


class _SearchError(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: int = 0
    message: str = ""


class _SearchResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    success: bool = False
    errors: list[_SearchError] = Field(default_factory=list)
    result: _SearchResult = Field(default_factory=_SearchResult)


class CloudflareRAGProvider(KnowledgeProviderClient):
    """Cloudflare AutoRAG 检索。"""

    provider_type = PROVIDER_CLOUDFLARE_AUTORAG

    def __init__(
        self,
        name: str,
        config: CloudflareRAGConfig,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(name)
        self.config = config
        self._client = client
        self.timeout = float(config.timeout if config.timeout > 0 else DEFAULT_TIMEOUT_SECONDS)

    @property
    def rag_url(self) -> str:
        return f"{CLOUDFLARE_API_BASE}/accounts/{self.config.account_id}/autorag/rags/{self.config.rag_name}"

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.config.api_token}",
        }

    def build_search_body(self, request: QueryRequest) -> dict[str, Any]:
        max_results = request.max_results or self.config.max_num_results or DEFAULT_MAX_RESULTS
        score_threshold = request.score_threshold or self.config.score_threshold or DEFAULT_SCORE_THRESHOLD
        body: dict[str, Any] = {
            "query": request.get_query_text(),
            "rewrite_query": self.config.rewrite_query,
            "max_num_results": max_results,
            "ranking_options": {"score_threshold": score_threshold},
        }
        if self.config.model:
            body["model"] = self.config.model
        return body

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self._client is not None:
            return await self._client.request(method, url, timeout=self.timeout, **kwargs)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.request(method, url, **kwargs)

    async def query(self, request: QueryRequest) -> QueryResponse:
        query_text = request.get_query_text()
        if not query_text:
            return QueryResponse.failed("query text is empty")

        logger.debug("CloudflareRAG query (%s): %s", self.name, query_text)
        try:
            resp = await self._send(
                "POST",
                f"{self.rag_url}/search",
                json=self.build_search_body(request),
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            return QueryResponse.failed(f"request failed: {exc}")

        if resp.status_code != 200:
            logger.error("CloudflareRAG error: status=%s, body=%s", resp.status_code, resp.text[:500])
            return QueryResponse.failed(f"API returned status {resp.status_code}: {resp.text}")

        try:
            payload = _SearchResponse.model_validate(resp.json())
        except (ValueError, ValidationError) as exc:
            return QueryResponse.failed(f"failed to parse response: {exc}")

        if not payload.success:
            message = payload.errors[0].message if payload.errors else "unknown error"
            return QueryResponse.failed(message)

        results = [
            QueryResult(
                content="\n".join(item.text for item in data.content if item.text),
                score=data.score,
                source=data.filename,
                metadata=data.attributes,
            )
            for data in payload.result.data
        ]
        return QueryResponse(
            results=results,
            answer=payload.result.response,
            conversation_id=request.conversation_id,
        )

    async def health(self) -> None:
        resp = await self._send(
            "GET",
            self.rag_url,
            headers={"Authorization": f"Bearer {self.config.api_token}"},
        )
        if resp.status_code != 200:
            raise RuntimeError(f"health check returned status {resp.status_code}: {resp.text[:500]}")


__all__ = ["CloudflareRAGConfig", "CloudflareRAGProvider"]
