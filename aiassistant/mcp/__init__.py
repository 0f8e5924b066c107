from .client import ContentBlock, HTTPMCPClient, MCPError, MCPTool, ToolResponse
from .manager import MCPManager, MCPServerEntry, MCPServerNotFoundError

__all__ = [
    "ContentBlock",
    "HTTPMCPClient",
    "MCPError",
    "MCPManager",
    "MCPServerEntry",
    "MCPServerNotFoundError",
    "MCPTool",
    "ToolResponse",
]
