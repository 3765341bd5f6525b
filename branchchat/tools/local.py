"""In-process tools registered with a decorator."""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from ..cancellation import CancellationToken
from ..providers.types import ToolSchema

if TYPE_CHECKING:
    from ..model_manager import ResolvedModel
    from .gateway import ToolGateway

logger = logging.getLogger(__name__)


@dataclass
class ToolContext:
    """What a tool handler may know about the turn that invoked it."""

    thread_id: Optional[int] = None
    model: Optional["ResolvedModel"] = None
    gateway: Optional["ToolGateway"] = None
    token: Optional[CancellationToken] = None


ToolHandler = Callable[[Dict[str, Any], ToolContext], Awaitable[str]]


@dataclass
class LocalTool:
    name: str
    description: str
    handler: ToolHandler
    parameters: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    builtin: bool = False

    def schema(self) -> ToolSchema:
        return ToolSchema(name=self.name, description=self.description, parameters=self.parameters)


class LocalToolRegistry:
    """Name to handler mapping for tools that run inside this process.

    Example:
        registry = LocalToolRegistry()

        @registry.tool("echo", "Echo the input back", {"type": "object", ...})
        async def echo(args, context):
            return args["text"]
    """

    def __init__(self):
        self._tools: Dict[str, LocalTool] = {}

    def tool(
        self,
        name: str,
        description: str,
        parameters: Optional[Dict[str, Any]] = None,
        builtin: bool = False,
    ) -> Callable[[ToolHandler], ToolHandler]:
        def decorator(handler: ToolHandler) -> ToolHandler:
            self.register(
                LocalTool(
                    name=name,
                    description=description,
                    handler=handler,
                    parameters=parameters or {"type": "object", "properties": {}},
                    builtin=builtin,
                )
            )
            return handler

        return decorator

    def register(self, tool: LocalTool) -> None:
        if "__" in tool.name:
            raise ValueError(f"Local tool name must not contain '__': {tool.name}")
        if tool.name in self._tools:
            logger.warning(f"Replacing already registered local tool '{tool.name}'")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[LocalTool]:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def tools(self) -> List[LocalTool]:
        return list(self._tools.values())

    async def run(self, name: str, args: Dict[str, Any], context: ToolContext) -> str:
        tool = self._tools[name]
        return await tool.handler(args, context)
