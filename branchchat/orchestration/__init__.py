"""Conversation orchestration on top of storage, providers and tools."""

from typing import Optional

from ..config import Config
from ..mcp_manager import McpManager
from ..model_manager import ModelManager
from ..storage import DuckDBStorage
from ..tools.gateway import ToolGateway
from .errors import categorize_error, format_error_message, get_error_note
from .orchestrator import (
    ConversationOrchestrator,
    EditMode,
    RegenerateMode,
    SendResult,
    TurnState,
)
from .sink import StreamSink


def create_orchestrator(
    config: Optional[Config] = None, storage: Optional[DuckDBStorage] = None
) -> ConversationOrchestrator:
    """Wire storage, model manager, MCP manager and tool gateway together."""
    config = config or Config()
    storage = storage or DuckDBStorage(config.db_path)
    mcp_manager = McpManager(storage)
    return ConversationOrchestrator(
        storage=storage,
        model_manager=ModelManager(storage, config),
        gateway=ToolGateway(storage, mcp_manager=mcp_manager, config=config),
        config=config,
    )


__all__ = [
    "ConversationOrchestrator",
    "EditMode",
    "RegenerateMode",
    "SendResult",
    "StreamSink",
    "TurnState",
    "categorize_error",
    "create_orchestrator",
    "format_error_message",
    "get_error_note",
]
