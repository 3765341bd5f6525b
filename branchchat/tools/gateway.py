"""Single entry point for listing and executing tools during a turn."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..config import Config
from ..mcp_manager import TOOL_NAME_SEPARATOR, McpManager
from ..models import McpAppUiData, ProviderType
from ..providers.types import WEB_SEARCH_TOOL, ToolSchema
from ..storage import DuckDBStorage
from .local import LocalToolRegistry, ToolContext
from .subagent import SUBAGENT_PARAMETERS, SUBAGENT_TOOL, run_subagent
from .web_search import WEB_FETCH_PARAMETERS, web_fetch

if TYPE_CHECKING:
    from ..model_manager import ResolvedModel

logger = logging.getLogger(__name__)

ENABLED_TOOLS_KEY = "enabled_tools"
ENABLED_BUILTIN_TOOLS_KEY = "enabled_builtin_tools"

# Provider types without a native search tool
NO_NATIVE_SEARCH_PROVIDERS = frozenset({ProviderType.OLLAMA})


@dataclass
class ToolExecutionResult:
    content: str
    ui_metadata: Optional[McpAppUiData] = None


async def get_current_time(args: Dict[str, Any], context: ToolContext) -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")


def create_default_registry() -> LocalToolRegistry:
    """Registry holding the built-in local tools."""
    registry = LocalToolRegistry()
    registry.tool(
        "get_current_time", "Get the current local date and time.", builtin=True
    )(get_current_time)
    registry.tool(
        "web_fetch",
        "Search the web and return the top results as title, url and snippet.",
        WEB_FETCH_PARAMETERS,
        builtin=True,
    )(web_fetch)
    registry.tool(
        SUBAGENT_TOOL,
        "Delegate a self-contained task to a subagent running on the current model. "
        "The subagent can use the other available tools and returns its final answer.",
        SUBAGENT_PARAMETERS,
        builtin=True,
    )(run_subagent)
    return registry


class ToolGateway:
    """Aggregates local, built-in and MCP tools and dispatches tool calls.

    Enable flags live in app settings: ``enabled_builtin_tools`` switches
    built-in tools on (off unless set), ``enabled_tools`` switches any other
    tool off (on unless set).
    """

    def __init__(
        self,
        storage: DuckDBStorage,
        mcp_manager: Optional[McpManager] = None,
        registry: Optional[LocalToolRegistry] = None,
        config: Optional[Config] = None,
    ):
        self.storage = storage
        self.mcp_manager = mcp_manager
        self.registry = registry if registry is not None else create_default_registry()
        self.config = config or Config()

    async def _flags(self):
        enabled_tools = await self.storage.get_setting(ENABLED_TOOLS_KEY, {}) or {}
        enabled_builtin = await self.storage.get_setting(ENABLED_BUILTIN_TOOLS_KEY, {}) or {}
        return enabled_tools, enabled_builtin

    async def set_tool_enabled(self, name: str, enabled: bool) -> None:
        enabled_tools, _ = await self._flags()
        enabled_tools[name] = enabled
        await self.storage.set_setting(ENABLED_TOOLS_KEY, enabled_tools)

    async def set_builtin_tool_enabled(self, name: str, enabled: bool) -> None:
        _, enabled_builtin = await self._flags()
        enabled_builtin[name] = enabled
        await self.storage.set_setting(ENABLED_BUILTIN_TOOLS_KEY, enabled_builtin)

    async def get_tool_definitions(self, model: Optional["ResolvedModel"] = None) -> List[ToolSchema]:
        """Schemas of every tool currently offered to the model."""
        enabled_tools, enabled_builtin = await self._flags()
        schemas: List[ToolSchema] = []

        for tool in self.registry.tools():
            if tool.builtin:
                if enabled_builtin.get(tool.name, False):
                    schemas.append(tool.schema())
            elif enabled_tools.get(tool.name, True):
                schemas.append(tool.schema())

        provider_type = model.provider.type if model is not None else None
        if enabled_builtin.get(WEB_SEARCH_TOOL, False) and provider_type not in NO_NATIVE_SEARCH_PROVIDERS:
            schemas.append(
                ToolSchema(
                    name=WEB_SEARCH_TOOL,
                    description="Search the web using the provider's native search.",
                    parameters={
                        "type": "object",
                        "properties": {"query": {"type": "string"}},
                        "required": ["query"],
                    },
                )
            )

        if self.mcp_manager is not None and self.config.enable_mcp_tools:
            for schema in await self.mcp_manager.list_tools():
                if enabled_tools.get(schema.name, True):
                    schemas.append(schema)

        return schemas

    async def execute_tool(
        self, name: str, args: Dict[str, Any], context: Optional[ToolContext] = None
    ) -> ToolExecutionResult:
        """Run one tool call.

        Raises:
            ToolExecutionError: the MCP server is unknown or unreachable
        """
        context = context or ToolContext()
        if context.gateway is None:
            context.gateway = self
        if self.config.log_tool_calls:
            logger.info(f"Executing tool: {name} {args}")

        if name in self.registry:
            return ToolExecutionResult(content=await self.registry.run(name, args, context))

        if TOOL_NAME_SEPARATOR in name and self.mcp_manager is not None:
            server_name, tool_name = name.split(TOOL_NAME_SEPARATOR, 1)
            result = await self.mcp_manager.call_tool(server_name, tool_name, args)
            return ToolExecutionResult(content=result.content, ui_metadata=result.ui_metadata)

        return ToolExecutionResult(content=f"Tool {name} is not implemented yet.")
