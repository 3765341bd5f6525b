"""Tool definitions and execution for the tool-call loop."""

from .gateway import ToolExecutionResult, ToolGateway, create_default_registry
from .local import LocalTool, LocalToolRegistry, ToolContext

__all__ = [
    "ToolExecutionResult",
    "ToolGateway",
    "create_default_registry",
    "LocalTool",
    "LocalToolRegistry",
    "ToolContext",
]
