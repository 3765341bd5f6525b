"""OpenAI-compatible adapter (OpenAI, Azure, OpenRouter, LiteLLM and compatible servers)."""

import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx
from openai import AsyncOpenAI

from ..exceptions import ProviderError
from ..models import ProviderRecord, ProviderType, TokenUsage, ToolCall, ToolCallFunction
from ..storage import DuckDBStorage
from .base import BaseProvider, ReplyOrStream
from .streaming import new_call_id
from .types import (
    WEB_SEARCH_TOOL,
    ChatDelta,
    ChatMessage,
    ChatReply,
    ChatRequest,
    FinishReason,
    FunctionCallItem,
    FunctionCallOutputItem,
    InputItem,
    ResponseRequest,
    ToolCallDelta,
    ToolSchema,
)

logger = logging.getLogger(__name__)

_FINISH_REASONS = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "tool_calls": FinishReason.TOOL_CALLS,
    "function_call": FinishReason.TOOL_CALLS,
    "content_filter": FinishReason.CONTENT_FILTER,
}

# Native search tool type per provider family
_NATIVE_WEB_SEARCH = {
    ProviderType.OPENAI_COMPATIBLE: "web_search",
    ProviderType.AZURE: "web_search",
    ProviderType.LITELLM: "web_search_preview",
    ProviderType.OPENROUTER: "web_search_preview",
}


def _get(obj: Any, name: str) -> Any:
    """Read a field from an SDK object or a plain dict, including undeclared extras."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _image_url_of(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    url = _get(value, "url")
    return url if isinstance(url, str) else None


def _split_content(content: Any) -> Tuple[str, List[str]]:
    """Text and image URLs from string or multi-part content."""
    if content is None:
        return "", []
    if isinstance(content, str):
        return content, []
    text_parts: List[str] = []
    images: List[str] = []
    for part in content:
        part_type = _get(part, "type")
        if part_type == "text":
            text_parts.append(_get(part, "text") or "")
        elif part_type == "image_url":
            url = _image_url_of(_get(part, "image_url"))
            if url:
                images.append(url)
    return "".join(text_parts), images


def _extra_images(obj: Any) -> List[str]:
    """Images some gateways attach as ``images`` lists or a direct ``image_url``."""
    images: List[str] = []
    for item in _get(obj, "images") or []:
        url = _image_url_of(_get(item, "image_url")) or _image_url_of(item)
        if url:
            images.append(url)
    direct = _image_url_of(_get(obj, "image_url"))
    if direct:
        images.append(direct)
    return images


def _reasoning_of(obj: Any) -> str:
    for field in ("reasoning_content", "reasoning"):
        value = _get(obj, field)
        if isinstance(value, str) and value:
            return value
    blocks = _get(obj, "thinking_blocks") or []
    return "".join(_get(block, "thinking") or "" for block in blocks)


def _usage_of(usage: Any) -> Optional[TokenUsage]:
    if usage is None:
        return None
    prompt = _get(usage, "prompt_tokens")
    if prompt is None:
        prompt = _get(usage, "input_tokens")
    completion = _get(usage, "completion_tokens")
    if completion is None:
        completion = _get(usage, "output_tokens")
    prompt = prompt or 0
    completion = completion or 0
    return TokenUsage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=_get(usage, "total_tokens") or prompt + completion,
    )


class OpenAIProvider(BaseProvider):
    """Adapter over the ``openai`` SDK for every OpenAI-compatible endpoint."""

    default_base_url = "https://api.openai.com/v1"

    def __init__(
        self,
        provider: ProviderRecord,
        storage: Optional[DuckDBStorage] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        super().__init__(provider, storage, http_client)
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            # Retries are handled by branchchat.retry
            self._client = AsyncOpenAI(
                api_key=self.provider.api_key or "not-needed",
                base_url=self.base_url,
                http_client=self._http_client,
                max_retries=0,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
        await super().aclose()

    async def fetch_api_models(self) -> List[Dict[str, str]]:
        models = []
        async for model in self.client.models.list():
            models.append({"id": model.id, "name": model.id})
        return models

    # ------------------------------------------------------------------
    # Turn-based protocol
    # ------------------------------------------------------------------

    def _to_openai_tools(self, tools: List[ToolSchema]) -> List[Dict[str, Any]]:
        converted = []
        for tool in tools:
            if tool.name == WEB_SEARCH_TOOL and self.provider.type in _NATIVE_WEB_SEARCH:
                converted.append({"type": _NATIVE_WEB_SEARCH[self.provider.type]})
                continue
            converted.append(
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters,
                    },
                }
            )
        return converted

    @staticmethod
    def _to_openai_message(message: ChatMessage) -> Dict[str, Any]:
        if message.role == "tool":
            return {
                "role": "tool",
                "content": message.text(),
                "tool_call_id": message.tool_call_id,
            }
        if message.role == "assistant" and message.tool_calls:
            return {
                "role": "assistant",
                "content": message.text() or None,
                "tool_calls": [call.model_dump() for call in message.tool_calls],
            }
        if isinstance(message.content, list):
            parts = []
            for part in message.content:
                if part.type == "text":
                    parts.append({"type": "text", "text": part.text or ""})
                else:
                    parts.append({"type": "image_url", "image_url": {"url": part.image_url}})
            return {"role": message.role, "content": parts}
        return {"role": message.role, "content": message.content or ""}

    async def chat_completion(self, request: ChatRequest) -> ReplyOrStream:
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": [self._to_openai_message(m) for m in request.messages],
            **request.extra_params,
        }
        if request.tools:
            payload["tools"] = self._to_openai_tools(request.tools)
        if request.max_tokens:
            payload["max_tokens"] = request.max_tokens

        if request.stream:
            stream = await self.client.chat.completions.create(
                **payload, stream=True, stream_options={"include_usage": True}
            )
            return self._iter_chat_stream(stream)

        response = await self.client.chat.completions.create(**payload)
        return self._parse_chat_completion(response)

    @staticmethod
    def _parse_chat_completion(response: Any) -> ChatReply:
        choices = _get(response, "choices") or []
        if not choices:
            return ChatReply(usage=_usage_of(_get(response, "usage")))
        choice = choices[0]
        message = _get(choice, "message")
        content, images = _split_content(_get(message, "content"))
        images.extend(_extra_images(message))

        tool_calls = []
        for call in _get(message, "tool_calls") or []:
            function = _get(call, "function")
            tool_calls.append(
                ToolCall(
                    id=_get(call, "id") or new_call_id(),
                    function=ToolCallFunction(
                        name=_get(function, "name") or "",
                        arguments=_get(function, "arguments") or "{}",
                    ),
                )
            )

        return ChatReply(
            content=content,
            reasoning=_reasoning_of(message),
            tool_calls=tool_calls,
            images=images,
            usage=_usage_of(_get(response, "usage")),
            finish_reason=_FINISH_REASONS.get(_get(choice, "finish_reason")),
        )

    @staticmethod
    async def _iter_chat_stream(stream: Any) -> AsyncIterator[ChatDelta]:
        async for chunk in stream:
            usage = _usage_of(_get(chunk, "usage"))
            choices = _get(chunk, "choices") or []
            if not choices:
                if usage is not None:
                    yield ChatDelta(usage=usage)
                continue

            choice = choices[0]
            delta = _get(choice, "delta")
            content, images = _split_content(_get(delta, "content"))
            images.extend(_extra_images(delta))

            fragments = []
            for position, call in enumerate(_get(delta, "tool_calls") or []):
                function = _get(call, "function")
                index = _get(call, "index")
                fragments.append(
                    ToolCallDelta(
                        index=index if index is not None else position,
                        id=_get(call, "id"),
                        name=_get(function, "name"),
                        arguments=_get(function, "arguments"),
                    )
                )

            yield ChatDelta(
                content=content,
                reasoning=_reasoning_of(delta),
                tool_calls=fragments,
                images=images,
                usage=usage,
                finish_reason=_FINISH_REASONS.get(_get(choice, "finish_reason")),
            )

    # ------------------------------------------------------------------
    # Item-based protocol
    # ------------------------------------------------------------------

    def _to_response_tools(self, tools: List[ToolSchema]) -> List[Dict[str, Any]]:
        converted = []
        for tool in tools:
            if tool.name == WEB_SEARCH_TOOL and self.provider.type in _NATIVE_WEB_SEARCH:
                converted.append({"type": _NATIVE_WEB_SEARCH[self.provider.type]})
                continue
            converted.append(
                {
                    "type": "function",
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                }
            )
        return converted

    @staticmethod
    def _to_response_item(item: InputItem) -> Dict[str, Any]:
        if isinstance(item, FunctionCallItem):
            return {
                "type": "function_call",
                "call_id": item.call_id,
                "name": item.name,
                "arguments": item.arguments,
            }
        if isinstance(item, FunctionCallOutputItem):
            return {"type": "function_call_output", "call_id": item.call_id, "output": item.output}

        text_type = "output_text" if item.role == "assistant" else "input_text"
        content = []
        for part in item.content:
            if part.type == "text":
                content.append({"type": text_type, "text": part.text or ""})
            else:
                content.append({"type": "input_image", "image_url": part.image_url})
        return {"role": item.role, "content": content}

    async def create_response(self, request: ResponseRequest) -> ReplyOrStream:
        payload: Dict[str, Any] = {
            "model": request.model,
            "input": [self._to_response_item(item) for item in request.input],
            **request.extra_params,
        }
        if request.instructions:
            payload["instructions"] = request.instructions
        if request.tools:
            payload["tools"] = self._to_response_tools(request.tools)
        if request.max_tokens:
            payload["max_output_tokens"] = request.max_tokens

        if request.stream:
            stream = await self.client.responses.create(**payload, stream=True)
            return self._iter_response_stream(stream)

        response = await self.client.responses.create(**payload)
        return self._parse_response(response)

    @staticmethod
    def _parse_response(response: Any) -> ChatReply:
        content_parts: List[str] = []
        summary_parts: List[str] = []
        reasoning_parts: List[str] = []
        tool_calls: List[ToolCall] = []
        images: List[str] = []

        for item in _get(response, "output") or []:
            item_type = _get(item, "type")
            if item_type == "message":
                for part in _get(item, "content") or []:
                    if _get(part, "type") == "output_text":
                        content_parts.append(_get(part, "text") or "")
            elif item_type == "reasoning":
                for part in _get(item, "summary") or []:
                    summary_parts.append(_get(part, "text") or "")
                for part in _get(item, "content") or []:
                    reasoning_parts.append(_get(part, "text") or "")
            elif item_type == "function_call":
                tool_calls.append(
                    ToolCall(
                        id=_get(item, "call_id") or _get(item, "id") or new_call_id(),
                        function=ToolCallFunction(
                            name=_get(item, "name") or "",
                            arguments=_get(item, "arguments") or "{}",
                        ),
                    )
                )
            elif item_type == "image_generation_call":
                result = _get(item, "result")
                if result:
                    images.append(f"data:image/png;base64,{result}")

        if tool_calls:
            finish_reason = FinishReason.TOOL_CALLS
        elif _get(_get(response, "incomplete_details"), "reason") == "max_output_tokens":
            finish_reason = FinishReason.LENGTH
        else:
            finish_reason = FinishReason.STOP

        return ChatReply(
            content="".join(content_parts),
            reasoning="".join(reasoning_parts),
            reasoning_summary="\n".join(p for p in summary_parts if p),
            tool_calls=tool_calls,
            images=images,
            usage=_usage_of(_get(response, "usage")),
            finish_reason=finish_reason,
        )

    @classmethod
    async def _iter_response_stream(cls, stream: Any) -> AsyncIterator[ChatDelta]:
        async for event in stream:
            event_type = _get(event, "type")
            if event_type == "response.output_text.delta":
                yield ChatDelta(content=_get(event, "delta") or "")
            elif event_type == "response.reasoning_text.delta":
                yield ChatDelta(reasoning=_get(event, "delta") or "")
            elif event_type == "response.reasoning_summary_text.delta":
                yield ChatDelta(reasoning_summary=_get(event, "delta") or "")
            elif event_type == "response.completed":
                # Text already arrived as deltas; keep only the structured parts
                final = cls._parse_response(_get(event, "response"))
                yield ChatDelta(
                    tool_calls=[
                        ToolCallDelta(
                            index=index,
                            id=call.id,
                            name=call.function.name,
                            arguments=call.function.arguments,
                        )
                        for index, call in enumerate(final.tool_calls)
                    ],
                    images=final.images,
                    usage=final.usage,
                    finish_reason=final.finish_reason,
                )
            elif event_type in ("response.failed", "error"):
                error = _get(_get(event, "response"), "error") or event
                raise ProviderError(f"Response stream failed: {_get(error, 'message') or error}")
