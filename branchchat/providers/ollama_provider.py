"""Ollama adapter (native /api/chat endpoint)."""

import json
import logging
from typing import Any, AsyncIterator, Dict, List

import httpx

from ..exceptions import ProviderError
from ..models import TokenUsage, ToolCall, ToolCallFunction
from .base import BaseProvider, ReplyOrStream
from .streaming import iter_ndjson, new_call_id
from .types import (
    ChatDelta,
    ChatMessage,
    ChatReply,
    ChatRequest,
    FinishReason,
    ToolCallDelta,
)

logger = logging.getLogger(__name__)


def _to_ollama_message(message: ChatMessage) -> Dict[str, Any]:
    converted: Dict[str, Any] = {"role": message.role, "content": message.text()}
    images = []
    for url in message.images():
        # Ollama only takes raw base64, remote URLs are dropped
        if url.startswith("data:") and ";base64," in url:
            images.append(url.split(",", 1)[1])
    if images:
        converted["images"] = images
    if message.tool_calls:
        calls = []
        for call in message.tool_calls:
            try:
                arguments = json.loads(call.function.arguments or "{}")
            except json.JSONDecodeError:
                arguments = {}
            calls.append({"function": {"name": call.function.name, "arguments": arguments}})
        converted["tool_calls"] = calls
    if message.role == "tool" and message.tool_call_id:
        converted["tool_call_id"] = message.tool_call_id
    return converted


def _tool_calls_of(message: Dict[str, Any]) -> List[ToolCall]:
    calls = []
    for call in message.get("tool_calls") or []:
        function = call.get("function", {})
        arguments = function.get("arguments") or {}
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        calls.append(
            ToolCall(
                id=call.get("id") or new_call_id(),
                function=ToolCallFunction(name=function.get("name", ""), arguments=arguments),
            )
        )
    return calls


def _usage_of(data: Dict[str, Any]) -> TokenUsage:
    prompt = data.get("prompt_eval_count", 0) or 0
    completion = data.get("eval_count", 0) or 0
    return TokenUsage(
        prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion
    )


def _finish_reason(data: Dict[str, Any], has_tool_calls: bool) -> FinishReason:
    if has_tool_calls:
        return FinishReason.TOOL_CALLS
    if data.get("done_reason") == "length":
        return FinishReason.LENGTH
    return FinishReason.STOP


class OllamaProvider(BaseProvider):
    """Adapter for a local or remote Ollama server."""

    default_base_url = "http://localhost:11434"

    async def fetch_api_models(self) -> List[Dict[str, str]]:
        response = await self.http_client.get(f"{self.base_url}/api/tags")
        response.raise_for_status()
        return [
            {"id": entry["name"], "name": entry["name"]}
            for entry in response.json().get("models", [])
        ]

    def _build_payload(self, request: ChatRequest) -> Dict[str, Any]:
        extra = dict(request.extra_params)
        options = dict(extra.pop("options", {}))
        if request.max_tokens:
            options["num_predict"] = request.max_tokens
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": [_to_ollama_message(message) for message in request.messages],
            "stream": request.stream,
            **extra,
        }
        if options:
            payload["options"] = options
        if request.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters,
                    },
                }
                for tool in request.tools
            ]
        return payload

    async def chat_completion(self, request: ChatRequest) -> ReplyOrStream:
        http_request = self.http_client.build_request(
            "POST", f"{self.base_url}/api/chat", json=self._build_payload(request)
        )
        response = await self.http_client.send(http_request, stream=request.stream)
        await self.raise_for_status(response)

        if request.stream:
            return self._iter_stream(response)

        data = response.json()
        message = data.get("message") or {}
        tool_calls = _tool_calls_of(message)
        return ChatReply(
            content=message.get("content") or "",
            reasoning=message.get("thinking") or "",
            tool_calls=tool_calls,
            usage=_usage_of(data),
            finish_reason=_finish_reason(data, bool(tool_calls)),
        )

    @staticmethod
    async def _iter_stream(response: httpx.Response) -> AsyncIterator[ChatDelta]:
        next_index = 0
        saw_tool_calls = False
        try:
            async for chunk in iter_ndjson(response):
                if chunk.get("error"):
                    raise ProviderError(f"Ollama stream error: {chunk['error']}")
                message = chunk.get("message") or {}
                fragments = []
                for call in _tool_calls_of(message):
                    fragments.append(
                        ToolCallDelta(
                            index=next_index,
                            id=call.id,
                            name=call.function.name,
                            arguments=call.function.arguments,
                        )
                    )
                    next_index += 1
                saw_tool_calls = saw_tool_calls or bool(fragments)
                delta = ChatDelta(
                    content=message.get("content") or "",
                    reasoning=message.get("thinking") or "",
                    tool_calls=fragments,
                )
                if chunk.get("done"):
                    delta.usage = _usage_of(chunk)
                    delta.finish_reason = _finish_reason(chunk, saw_tool_calls)
                yield delta
        finally:
            await response.aclose()
