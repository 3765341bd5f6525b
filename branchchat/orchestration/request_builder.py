"""Turns a thread's active path into provider requests."""

import logging
from typing import Any, Dict, List, Optional, Sequence

from ..models import Message, MessageRole
from ..providers.types import (
    ChatMessage,
    ChatRequest,
    ContentPart,
    FunctionCallItem,
    FunctionCallOutputItem,
    InputItem,
    InputMessage,
    ResponseRequest,
    ToolSchema,
)
from ..storage import DuckDBStorage
from .images import to_data_url

logger = logging.getLogger(__name__)


def truncate_history(history: List[Message], context_window: Optional[int]) -> List[Message]:
    """Keep the last ``context_window`` messages.

    Tool results cut off from the assistant call that produced them are
    dropped from the front, since providers reject orphaned results.
    """
    if context_window and context_window > 0 and len(history) > context_window:
        history = history[-context_window:]
    start = 0
    while start < len(history) and history[start].role == MessageRole.TOOL:
        start += 1
    return history[start:]


def _answered_call_ids(history: Sequence[Message], index: int) -> set:
    """Ids of the tool results directly following ``history[index]``."""
    answered = set()
    for message in history[index + 1:]:
        if message.role != MessageRole.TOOL:
            break
        answered.add(message.tool_call_id)
    return answered


async def build_chat_messages(
    storage: DuckDBStorage,
    history: Sequence[Message],
    system_prompt: Optional[str] = None,
    supports_images: bool = True,
) -> List[ChatMessage]:
    """Unified messages for a history, with image files inlined as data URLs.

    Error messages from earlier failed turns are not sent back to the model.
    """
    files = {}
    if supports_images:
        files = await storage.get_files_for_messages([m.id for m in history])

    messages: List[ChatMessage] = []
    if system_prompt:
        messages.append(ChatMessage(role="system", content=system_prompt))

    for index, message in enumerate(history):
        if message.is_error:
            continue
        if message.role == MessageRole.TOOL:
            messages.append(
                ChatMessage(role="tool", content=message.content, tool_call_id=message.tool_call_id or "")
            )
            continue
        if message.tool_calls:
            answered = _answered_call_ids(history, index)
            calls = [call for call in message.tool_calls if call.id in answered]
            if len(calls) < len(message.tool_calls):
                logger.warning(f"Dropping unanswered tool calls of message {message.id}")
            if calls:
                messages.append(
                    ChatMessage(role="assistant", content=message.content or None, tool_calls=calls)
                )
            elif message.content:
                messages.append(ChatMessage(role="assistant", content=message.content))
            continue

        images = [f for f in files.get(message.id, []) if f.is_image]
        if images:
            parts = [ContentPart.of_text(message.content)]
            parts.extend(ContentPart.of_image(to_data_url(f.mime_type, f.data)) for f in images)
            messages.append(ChatMessage(role=message.role.value, content=parts))
        else:
            messages.append(ChatMessage(role=message.role.value, content=message.content))

    return messages


def _parts_of(message: ChatMessage) -> List[ContentPart]:
    if isinstance(message.content, list):
        return list(message.content)
    return [ContentPart.of_text(message.content or "")]


def to_input_items(messages: Sequence[ChatMessage]):
    """Split unified messages into instructions and item-based input.

    Returns:
        (instructions, items): system text is hoisted into ``instructions``;
        tool calls and their results become function-call items.
    """
    instructions: List[str] = []
    items: List[InputItem] = []
    for message in messages:
        if message.role == "system":
            instructions.append(message.text())
        elif message.role == "tool":
            items.append(
                FunctionCallOutputItem(call_id=message.tool_call_id or "", output=message.text())
            )
        elif message.role == "assistant" and message.tool_calls:
            if message.text():
                items.append(InputMessage(role="assistant", content=[ContentPart.of_text(message.text())]))
            for call in message.tool_calls:
                items.append(
                    FunctionCallItem(
                        call_id=call.id,
                        name=call.function.name,
                        arguments=call.function.arguments or "{}",
                    )
                )
        else:
            items.append(InputMessage(role=message.role, content=_parts_of(message)))
    return "\n\n".join(text for text in instructions if text) or None, items


def build_chat_request(
    model: str,
    messages: List[ChatMessage],
    tools: Optional[List[ToolSchema]] = None,
    max_tokens: Optional[int] = None,
    stream: bool = False,
    extra_params: Optional[Dict[str, Any]] = None,
) -> ChatRequest:
    return ChatRequest(
        model=model,
        messages=messages,
        tools=tools or None,
        max_tokens=max_tokens,
        stream=stream,
        extra_params=extra_params or {},
    )


def build_response_request(
    model: str,
    messages: List[ChatMessage],
    tools: Optional[List[ToolSchema]] = None,
    max_tokens: Optional[int] = None,
    stream: bool = False,
    extra_params: Optional[Dict[str, Any]] = None,
) -> ResponseRequest:
    instructions, items = to_input_items(messages)
    return ResponseRequest(
        model=model,
        input=items,
        instructions=instructions,
        tools=tools or None,
        max_tokens=max_tokens,
        stream=stream,
        extra_params=extra_params or {},
    )
