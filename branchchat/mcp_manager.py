"""Client-side manager for remote MCP tool servers."""

import json
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from fastmcp import Client
from fastmcp.client.transports import SSETransport, StreamableHttpTransport

from .exceptions import ToolExecutionError
from .models import McpAppUiData, McpAuthType, McpServerConfig, McpTransportType
from .providers.types import ToolSchema
from .storage import DuckDBStorage

logger = logging.getLogger(__name__)

# Separator between server name and tool name in namespaced tool names
TOOL_NAME_SEPARATOR = "__"
UI_SCHEME = "ui://"


class ServerStatus(Enum):
    SUCCESS = "success"
    ERROR = "error"
    NONE = "none"


@dataclass
class McpToolResult:
    content: str
    ui_metadata: Optional[McpAppUiData] = None


def _field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def extract_ui_metadata(result: Any, server_name: Optional[str] = None) -> Optional[McpAppUiData]:
    """Pull ``_meta.ui`` out of a raw tool-call result.

    Only ``ui://`` resource URIs are accepted; anything malformed yields None.
    """
    meta = _field(result, "meta")
    if meta is None and isinstance(result, dict):
        meta = result.get("_meta")
    if not isinstance(meta, dict):
        return None
    ui = meta.get("ui")
    if not isinstance(ui, dict):
        return None
    resource_uri = ui.get("resourceUri")
    if not isinstance(resource_uri, str) or not resource_uri.startswith(UI_SCHEME):
        return None

    permissions = ui.get("permissions")
    csp = ui.get("csp")
    allowed_origins = csp.get("allowedOrigins") if isinstance(csp, dict) else None
    return McpAppUiData(
        resource_uri=resource_uri,
        permissions=permissions if isinstance(permissions, list) else None,
        allowed_origins=allowed_origins if isinstance(allowed_origins, list) else None,
        server_name=server_name,
    )


def render_content(content: List[Any]) -> str:
    """Join text parts; fall back to JSON when any part is not text."""
    parts = list(content or [])
    if all(_field(part, "type") == "text" for part in parts):
        return "\n".join(_field(part, "text") or "" for part in parts)

    serialized = []
    for part in parts:
        if hasattr(part, "model_dump"):
            serialized.append(part.model_dump(mode="json", exclude_none=True))
        else:
            serialized.append(part)
    return json.dumps(serialized, ensure_ascii=False)


def build_client(server: McpServerConfig) -> Client:
    """fastmcp client for a stored server configuration."""
    headers: Dict[str, str] = {}
    if server.auth_type == McpAuthType.BEARER and server.bearer_token:
        headers["Authorization"] = f"Bearer {server.bearer_token}"

    if server.type == McpTransportType.SSE:
        transport = SSETransport(server.url, headers=headers)
    else:
        transport = StreamableHttpTransport(server.url, headers=headers)
    return Client(transport)


class McpManager:
    """Keeps one connected client per MCP server and routes tool calls to it."""

    def __init__(
        self,
        storage: DuckDBStorage,
        client_factory: Callable[[McpServerConfig], Client] = build_client,
    ):
        self.storage = storage
        self.client_factory = client_factory
        self._clients: Dict[int, Client] = {}
        self._stacks: Dict[int, AsyncExitStack] = {}
        self._statuses: Dict[int, ServerStatus] = {}

    async def _ensure_connected(self, server: McpServerConfig) -> Client:
        client = self._clients.get(server.id)
        if client is not None:
            return client

        stack = AsyncExitStack()
        try:
            client = await stack.enter_async_context(self.client_factory(server))
        except Exception as e:
            await stack.aclose()
            self._statuses[server.id] = ServerStatus.ERROR
            logger.error(f"Failed to connect to MCP server '{server.name}': {e}")
            raise ToolExecutionError(f"Failed to connect to MCP server '{server.name}': {e}") from e

        self._clients[server.id] = client
        self._stacks[server.id] = stack
        self._statuses[server.id] = ServerStatus.SUCCESS
        logger.info(f"Connected to MCP server '{server.name}' at {server.url}")
        return client

    async def list_server_tools(self, server: McpServerConfig) -> List[ToolSchema]:
        """Tools of one server, namespaced as ``server__tool``."""
        client = await self._ensure_connected(server)
        tools = await client.list_tools()
        return [
            ToolSchema(
                name=f"{server.name}{TOOL_NAME_SEPARATOR}{tool.name}",
                description=tool.description or "",
                parameters=tool.inputSchema or {"type": "object", "properties": {}},
            )
            for tool in tools
        ]

    async def list_tools(self) -> List[ToolSchema]:
        """Tools from every active server; failing servers are skipped."""
        schemas: List[ToolSchema] = []
        for server in await self.storage.list_mcp_servers(active_only=True):
            try:
                schemas.extend(await self.list_server_tools(server))
            except Exception as e:
                self._statuses[server.id] = ServerStatus.ERROR
                logger.error(f"Failed to get tools from MCP server '{server.name}': {e}")
        return schemas

    async def call_tool(
        self, server_name: str, tool_name: str, arguments: Dict[str, Any]
    ) -> McpToolResult:
        server = await self.storage.get_mcp_server_by_name(server_name)
        if server is None:
            raise ToolExecutionError(f"MCP server '{server_name}' not found")

        client = await self._ensure_connected(server)
        result = await client.call_tool_mcp(tool_name, arguments)
        if result.isError:
            logger.warning(f"MCP tool '{server_name}{TOOL_NAME_SEPARATOR}{tool_name}' reported an error")
        return McpToolResult(
            content=render_content(result.content),
            ui_metadata=extract_ui_metadata(result, server_name),
        )

    async def get_server_status(self, server_id: int) -> ServerStatus:
        """Check a server with a tool listing and record the outcome."""
        server = await self.storage.get_mcp_server(server_id)
        if server is None or not server.is_active:
            self._statuses.pop(server_id, None)
            return ServerStatus.NONE

        try:
            client = await self._ensure_connected(server)
            await client.list_tools()
        except Exception as e:
            logger.error(f"Failed to get status for MCP server '{server.name}': {e}")
            self._statuses[server_id] = ServerStatus.ERROR
            return ServerStatus.ERROR

        self._statuses[server_id] = ServerStatus.SUCCESS
        return ServerStatus.SUCCESS

    def get_all_statuses(self) -> Dict[int, ServerStatus]:
        return dict(self._statuses)

    async def disconnect_server(self, server_id: int) -> None:
        """Drop the cached client, e.g. after the server's settings changed."""
        self._statuses.pop(server_id, None)
        self._clients.pop(server_id, None)
        stack = self._stacks.pop(server_id, None)
        if stack is not None:
            try:
                await stack.aclose()
            except Exception as e:
                logger.error(f"Failed to close MCP client for server {server_id}: {e}")

    async def fetch_app_resource(self, ui_data: McpAppUiData) -> Optional[str]:
        """HTML of an interactive tool UI, or None when it cannot be fetched."""
        if not ui_data.resource_uri.startswith(UI_SCHEME):
            logger.error(f"Invalid resource URI scheme: {ui_data.resource_uri}")
            return None

        server_name = ui_data.server_name
        if not server_name:
            # ui://<server>/<path>
            server_name = ui_data.resource_uri[len(UI_SCHEME):].split("/", 1)[0]
        server = await self.storage.get_mcp_server_by_name(server_name)
        if server is None:
            logger.error(f"MCP server not found for resource {ui_data.resource_uri}")
            return None

        try:
            client = await self._ensure_connected(server)
            contents = await client.read_resource(ui_data.resource_uri)
        except Exception as e:
            logger.error(f"Failed to fetch MCP app resource {ui_data.resource_uri}: {e}")
            return None

        for item in contents:
            text = getattr(item, "text", None)
            if text is not None:
                return text
        return None

    async def aclose(self) -> None:
        for server_id in list(self._stacks):
            await self.disconnect_server(server_id)
