"""Helpers for consuming streamed replies."""

import json
import logging
import uuid
from typing import AsyncIterator, Dict, List, Optional

import httpx

from ..models import TokenUsage, ToolCall, ToolCallFunction
from .types import ChatDelta, ChatReply, FinishReason, ToolCallDelta

logger = logging.getLogger(__name__)


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


class ToolCallAccumulator:
    """Reassembles streamed tool-call fragments keyed by index.

    The id is taken when a fragment carries one; name and arguments are
    concatenated in arrival order.
    """

    def __init__(self):
        self._calls: Dict[int, Dict[str, str]] = {}

    def add(self, delta: ToolCallDelta) -> None:
        call = self._calls.setdefault(delta.index, {"id": "", "name": "", "arguments": ""})
        if delta.id:
            call["id"] = delta.id
        if delta.name:
            call["name"] += delta.name
        if delta.arguments:
            call["arguments"] += delta.arguments

    def __bool__(self) -> bool:
        return bool(self._calls)

    def tool_calls(self) -> List[ToolCall]:
        result = []
        for index in sorted(self._calls):
            call = self._calls[index]
            result.append(
                ToolCall(
                    id=call["id"] or new_call_id(),
                    function=ToolCallFunction(
                        name=call["name"], arguments=call["arguments"] or "{}"
                    ),
                )
            )
        return result


class StreamAccumulator:
    """Folds a sequence of ChatDelta into the equivalent ChatReply."""

    def __init__(self):
        self.content = ""
        self.reasoning = ""
        self.reasoning_summary = ""
        self.images: List[str] = []
        self.usage: Optional[TokenUsage] = None
        self.finish_reason: Optional[FinishReason] = None
        self.tool_calls = ToolCallAccumulator()

    def add(self, delta: ChatDelta) -> None:
        self.content += delta.content
        self.reasoning += delta.reasoning
        self.reasoning_summary += delta.reasoning_summary
        self.images.extend(delta.images)
        for fragment in delta.tool_calls:
            self.tool_calls.add(fragment)
        if delta.usage is not None:
            self.usage = delta.usage
        if delta.finish_reason is not None:
            self.finish_reason = delta.finish_reason

    def reply(self) -> ChatReply:
        return ChatReply(
            content=self.content,
            reasoning=self.reasoning,
            reasoning_summary=self.reasoning_summary,
            tool_calls=self.tool_calls.tool_calls(),
            images=list(self.images),
            usage=self.usage,
            finish_reason=self.finish_reason,
        )


async def collect_stream(stream: AsyncIterator[ChatDelta]) -> ChatReply:
    accumulator = StreamAccumulator()
    async for delta in stream:
        accumulator.add(delta)
    return accumulator.reply()


async def iter_sse_json(response: httpx.Response) -> AsyncIterator[dict]:
    """Yield the JSON payload of each ``data:`` line of a server-sent event stream."""
    async for line in response.aiter_lines():
        line = line.strip()
        if not line.startswith("data:"):
            continue
        data = line[len("data:"):].strip()
        if not data or data == "[DONE]":
            continue
        try:
            yield json.loads(data)
        except json.JSONDecodeError:
            logger.debug(f"Skipping malformed stream line: {data[:200]}")


async def iter_ndjson(response: httpx.Response) -> AsyncIterator[dict]:
    """Yield each JSON object of a newline-delimited JSON stream."""
    async for line in response.aiter_lines():
        line = line.strip()
        if not line:
            continue
        try:
            yield json.loads(line)
        except json.JSONDecodeError:
            logger.debug(f"Skipping malformed stream line: {line[:200]}")
