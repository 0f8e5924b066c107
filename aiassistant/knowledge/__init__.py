from .base import (
    KnowledgeProviderClient,
    KnowledgeProviderError,
    QueryRequest,
    QueryResponse,
    QueryResult,
    format_results_for_llm,
)
from .registry import KnowledgeRegistry, RegisteredKnowledgeTool

__all__ = [
    "KnowledgeProviderClient",
    "KnowledgeProviderError",
    "KnowledgeRegistry",
    "QueryRequest",
    "QueryResponse",
    "QueryResult",
    "RegisteredKnowledgeTool",
    "format_results_for_llm",
]
