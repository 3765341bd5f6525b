"""Anthropic Messages API adapter."""

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from ..exceptions import ProviderError
from ..models import TokenUsage, ToolCall, ToolCallFunction
from .base import BaseProvider, ReplyOrStream
from .streaming import iter_sse_json, new_call_id
from .types import (
    WEB_SEARCH_TOOL,
    ChatDelta,
    ChatMessage,
    ChatReply,
    ChatRequest,
    FinishReason,
    ToolCallDelta,
    ToolSchema,
)

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096

_STOP_REASONS = {
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "max_tokens": FinishReason.LENGTH,
    "tool_use": FinishReason.TOOL_CALLS,
    "refusal": FinishReason.CONTENT_FILTER,
}


def _parse_data_url(url: str) -> Optional[Tuple[str, str]]:
    """(media_type, base64 data) of a ``data:`` URL, or None for remote URLs."""
    if not url.startswith("data:") or ";base64," not in url:
        return None
    header, data = url.split(",", 1)
    return header[len("data:"):].split(";")[0], data


def _image_block(url: str) -> Dict[str, Any]:
    parsed = _parse_data_url(url)
    if parsed is None:
        return {"type": "image", "source": {"type": "url", "url": url}}
    media_type, data = parsed
    return {"type": "image", "source": {"type": "base64", "media_type": media_type, "data": data}}


def _content_blocks(message: ChatMessage) -> List[Dict[str, Any]]:
    if isinstance(message.content, list):
        blocks = []
        for part in message.content:
            if part.type == "text":
                if part.text:
                    blocks.append({"type": "text", "text": part.text})
            elif part.image_url:
                blocks.append(_image_block(part.image_url))
        return blocks
    text = message.content or ""
    return [{"type": "text", "text": text}] if text else []


def _to_anthropic_messages(messages: List[ChatMessage]) -> Tuple[Optional[str], List[Dict[str, Any]]]:
    """Split out the system prompt and convert the rest to Anthropic messages.

    Tool results become ``tool_result`` blocks in a user turn; consecutive
    results are merged into the same turn.
    """
    system_parts: List[str] = []
    converted: List[Dict[str, Any]] = []

    for message in messages:
        if message.role == "system":
            system_parts.append(message.text())
            continue

        if message.role == "tool":
            block = {
                "type": "tool_result",
                "tool_use_id": message.tool_call_id,
                "content": message.text(),
            }
            previous = converted[-1] if converted else None
            if (
                previous
                and previous["role"] == "user"
                and previous["content"]
                and all(b.get("type") == "tool_result" for b in previous["content"])
            ):
                previous["content"].append(block)
            else:
                converted.append({"role": "user", "content": [block]})
            continue

        blocks = _content_blocks(message)
        if message.role == "assistant" and message.tool_calls:
            for call in message.tool_calls:
                try:
                    arguments = json.loads(call.function.arguments or "{}")
                except json.JSONDecodeError:
                    arguments = {}
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": call.id,
                        "name": call.function.name,
                        "input": arguments,
                    }
                )
        if not blocks:
            continue
        converted.append({"role": message.role, "content": blocks})

    system = "\n\n".join(part for part in system_parts if part) or None
    return system, converted


def _to_anthropic_tools(tools: List[ToolSchema]) -> List[Dict[str, Any]]:
    converted = []
    for tool in tools:
        if tool.name == WEB_SEARCH_TOOL:
            converted.append({"type": "web_search_20250305", "name": "web_search"})
            continue
        converted.append(
            {
                "name": tool.name,
                "description": tool.description,
                "input_schema": tool.parameters,
            }
        )
    return converted


class AnthropicProvider(BaseProvider):
    """Adapter for the Anthropic Messages API over httpx."""

    default_base_url = "https://api.anthropic.com"

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.provider.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    async def fetch_api_models(self) -> List[Dict[str, str]]:
        response = await self.http_client.get(
            f"{self.base_url}/v1/models", headers=self._headers()
        )
        response.raise_for_status()
        return [
            {"id": entry["id"], "name": entry.get("display_name") or entry["id"]}
            for entry in response.json().get("data", [])
        ]

    def _build_payload(self, request: ChatRequest) -> Dict[str, Any]:
        system, messages = _to_anthropic_messages(request.messages)
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
            **request.extra_params,
        }
        if system:
            payload["system"] = system
        if request.tools:
            payload["tools"] = _to_anthropic_tools(request.tools)
        if request.stream:
            payload["stream"] = True
        return payload

    async def chat_completion(self, request: ChatRequest) -> ReplyOrStream:
        payload = self._build_payload(request)
        http_request = self.http_client.build_request(
            "POST", f"{self.base_url}/v1/messages", headers=self._headers(), json=payload
        )
        response = await self.http_client.send(http_request, stream=request.stream)
        await self.raise_for_status(response)

        if request.stream:
            return self._iter_stream(response)
        return self._parse_message(response.json())

    @staticmethod
    def _parse_message(data: Dict[str, Any]) -> ChatReply:
        text_parts: List[str] = []
        thinking_parts: List[str] = []
        images: List[str] = []
        tool_calls: List[ToolCall] = []

        for block in data.get("content", []):
            block_type = block.get("type")
            if block_type == "text":
                text_parts.append(block.get("text", ""))
            elif block_type == "thinking":
                thinking_parts.append(block.get("thinking", ""))
            elif block_type == "image":
                source = block.get("source", {})
                if source.get("type") == "base64":
                    images.append(f"data:{source.get('media_type')};base64,{source.get('data')}")
            elif block_type == "tool_use":
                tool_calls.append(
                    ToolCall(
                        id=block.get("id") or new_call_id(),
                        function=ToolCallFunction(
                            name=block.get("name", ""),
                            arguments=json.dumps(block.get("input") or {}),
                        ),
                    )
                )

        usage = data.get("usage") or {}
        input_tokens = usage.get("input_tokens", 0)
        output_tokens = usage.get("output_tokens", 0)
        return ChatReply(
            content="".join(text_parts),
            reasoning="".join(thinking_parts),
            tool_calls=tool_calls,
            images=images,
            usage=TokenUsage(
                prompt_tokens=input_tokens,
                completion_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
            ),
            finish_reason=_STOP_REASONS.get(data.get("stop_reason")),
        )

    @staticmethod
    async def _iter_stream(response: httpx.Response) -> AsyncIterator[ChatDelta]:
        # Content block index -> tool-call ordinal
        tool_indexes: Dict[int, int] = {}
        input_tokens = 0
        try:
            async for event in iter_sse_json(response):
                event_type = event.get("type")
                if event_type == "message_start":
                    usage = event.get("message", {}).get("usage") or {}
                    input_tokens = usage.get("input_tokens", 0)
                elif event_type == "content_block_start":
                    block = event.get("content_block", {})
                    if block.get("type") == "tool_use":
                        ordinal = len(tool_indexes)
                        tool_indexes[event.get("index", ordinal)] = ordinal
                        yield ChatDelta(
                            tool_calls=[
                                ToolCallDelta(index=ordinal, id=block.get("id"), name=block.get("name"))
                            ]
                        )
                elif event_type == "content_block_delta":
                    delta = event.get("delta", {})
                    delta_type = delta.get("type")
                    if delta_type == "text_delta":
                        yield ChatDelta(content=delta.get("text", ""))
                    elif delta_type == "thinking_delta":
                        yield ChatDelta(reasoning=delta.get("thinking", ""))
                    elif delta_type == "input_json_delta":
                        ordinal = tool_indexes.get(event.get("index"))
                        if ordinal is not None:
                            yield ChatDelta(
                                tool_calls=[
                                    ToolCallDelta(index=ordinal, arguments=delta.get("partial_json", ""))
                                ]
                            )
                elif event_type == "message_delta":
                    usage = event.get("usage") or {}
                    output_tokens = usage.get("output_tokens", 0)
                    yield ChatDelta(
                        usage=TokenUsage(
                            prompt_tokens=input_tokens,
                            completion_tokens=output_tokens,
                            total_tokens=input_tokens + output_tokens,
                        ),
                        finish_reason=_STOP_REASONS.get(event.get("delta", {}).get("stop_reason")),
                    )
                elif event_type == "error":
                    error = event.get("error", {})
                    raise ProviderError(f"Anthropic stream error: {error.get('message', error)}")
        finally:
            await response.aclose()
