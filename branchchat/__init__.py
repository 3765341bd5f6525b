"""
branchchat

A conversation engine for chatting with several AI providers over a
branching message history.

Supports multiple providers:
- OpenAI and OpenAI-compatible endpoints (OpenRouter, LiteLLM, Azure)
- Anthropic Messages API
- Google Gemini
- Ollama

Features:
- Message trees with edit, regenerate and branch switching
- Streaming replies with retry, backoff and user cancellation
- Tool calling through local tools and remote MCP servers
- JSON backup and restore
"""

__version__ = "0.1.0"

# Core exports
from .config import Config
from .storage import DuckDBStorage
from .tree import MessageTree, MessageTreeStore
from .model_manager import ModelManager, ResolvedModel
from .mcp_manager import McpManager
from .tools import ToolGateway, LocalToolRegistry
from .orchestration import (
    ConversationOrchestrator,
    EditMode,
    RegenerateMode,
    SendResult,
    TurnState,
    create_orchestrator,
)
from .exceptions import (
    ConfigurationError,
    OperationAborted,
    ProviderError,
    RequestLimitExceeded,
    ToolExecutionError,
)
from .models import (
    UNSET,
    Attachment,
    BranchInfo,
    Message,
    MessageRole,
    ModelInfo,
    ProviderType,
    Protocol,
    Thread,
    ThreadSettings,
)

__all__ = [
    # Configuration
    "Config",
    # Orchestration
    "ConversationOrchestrator",
    "create_orchestrator",  # Factory function (recommended)
    "EditMode",
    "RegenerateMode",
    "SendResult",
    "TurnState",
    # Storage and tree
    "DuckDBStorage",
    "MessageTree",
    "MessageTreeStore",
    # Models and tools
    "ModelManager",
    "ResolvedModel",
    "McpManager",
    "ToolGateway",
    "LocalToolRegistry",
    # Errors
    "ConfigurationError",
    "OperationAborted",
    "ProviderError",
    "RequestLimitExceeded",
    "ToolExecutionError",
    # Data types
    "UNSET",
    "Attachment",
    "BranchInfo",
    "Message",
    "MessageRole",
    "ModelInfo",
    "ProviderType",
    "Protocol",
    "Thread",
    "ThreadSettings",
    # Version
    "__version__",
]
