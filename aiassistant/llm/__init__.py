from .client import (
    ChatCompletionRequest,
    ChatCompletionResponse,
    LLMCallError,
    LLMClient,
    LLMMessage,
    OpenAIClient,
    OpenAIClientConfig,
    ToolCallFunction,
    ToolCallPayload,
    ToolDefinition,
    ToolFunction,
    Usage,
)

__all__ = [
    "ChatCompletionRequest",
    "ChatCompletionResponse",
    "LLMCallError",
    "LLMClient",
    "LLMMessage",
    "OpenAIClient",
    "OpenAIClientConfig",
    "ToolCallFunction",
    "ToolCallPayload",
    "ToolDefinition",
    "ToolFunction",
    "Usage",
]
