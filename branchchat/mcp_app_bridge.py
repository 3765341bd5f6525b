"""JSON-RPC 2.0 bridge between an interactive tool UI and the tool gateway."""

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from .tools.gateway import ToolGateway
from .tools.local import ToolContext

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2025-11-25"
SERVER_INFO = {"name": "branchchat-mcp-host", "version": "1.0.0"}

TOOL_ERROR = -32000
METHOD_NOT_FOUND = -32601

Notification = Callable[[Any], Union[None, Awaitable[None]]]


def _response(message_id: Union[str, int], result: Any) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": message_id, "result": result}


def _error(message_id: Union[str, int], code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": message_id, "error": {"code": code, "message": message}}


class McpAppBridge:
    """Answers messages posted by a sandboxed tool UI.

    ``handle_message`` returns the reply to post back, or None for
    notifications and ignored messages.
    """

    def __init__(
        self,
        gateway: ToolGateway,
        context: Optional[ToolContext] = None,
        on_update_context: Optional[Notification] = None,
        on_send_message: Optional[Notification] = None,
    ):
        self.gateway = gateway
        self.context = context or ToolContext()
        self.on_update_context = on_update_context
        self.on_send_message = on_send_message

    async def handle_message(self, data: Any) -> Optional[Dict[str, Any]]:
        if not isinstance(data, dict) or data.get("jsonrpc") != "2.0":
            logger.warning(f"Ignoring non JSON-RPC 2.0 message: {data!r}")
            return None
        method = data.get("method")
        if not isinstance(method, str):
            logger.warning(f"Ignoring JSON-RPC message without method: {data!r}")
            return None

        message_id = data.get("id")
        if not isinstance(message_id, (str, int)) or isinstance(message_id, bool):
            message_id = None
        params = data.get("params")

        if method == "ui/initialize":
            if message_id is None:
                return None
            return _response(
                message_id,
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {"tools": {}},
                    "serverInfo": SERVER_INFO,
                },
            )

        if method == "tools/call":
            if message_id is None:
                logger.warning("Received tools/call without id, ignoring")
                return None
            return await self._handle_tool_call(message_id, params)

        if method == "ui/updateContext":
            await self._notify(self.on_update_context, params)
            return None

        if method == "ui/sendMessage":
            await self._notify(self.on_send_message, params)
            return None

        logger.warning(f"Unknown app bridge method: {method}")
        if message_id is None:
            return None
        return _error(message_id, METHOD_NOT_FOUND, f"Unknown method: {method}")

    async def _handle_tool_call(self, message_id: Union[str, int], params: Any) -> Dict[str, Any]:
        if (
            not isinstance(params, dict)
            or not isinstance(params.get("name"), str)
            or not isinstance(params.get("arguments"), dict)
        ):
            return _error(message_id, TOOL_ERROR, "Invalid params for tools/call")

        try:
            result = await self.gateway.execute_tool(
                params["name"], params["arguments"], self.context
            )
        except Exception as e:
            logger.error(f"App bridge tool call '{params['name']}' failed: {e}")
            return _error(message_id, TOOL_ERROR, str(e))
        return _response(message_id, {"content": [{"type": "text", "text": result.content}]})

    @staticmethod
    async def _notify(callback: Optional[Notification], params: Any) -> None:
        if callback is None:
            return
        try:
            outcome = callback(params)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            # Notifications have no reply channel
            logger.warning(f"App bridge notification handler failed: {e}")
