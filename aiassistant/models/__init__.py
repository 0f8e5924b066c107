from .agent import AIAgent, AIAgentToolRel
from .ai_config import AIConfig
from .base import Base, IdPrimaryKeyMixin, TimestampMixin
from .knowledge import KnowledgeProvider, KnowledgeTool
from .llm_model import AILLMModel
from .mcp_server import MCPServer, MCPTemplate
from .optimization_config import AIOptimizationConfig
from .session_archive import AISessionArchive
from .tool import AITool

__all__ = [
    "AIAgent",
    "AIAgentToolRel",
    "AIConfig",
    "AILLMModel",
    "AIOptimizationConfig",
    "AISessionArchive",
    "AITool",
    "Base",
    "IdPrimaryKeyMixin",
    "KnowledgeProvider",
    "KnowledgeTool",
    "MCPServer",
    "MCPTemplate",
    "TimestampMixin",
]
