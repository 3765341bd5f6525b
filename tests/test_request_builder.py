"""Tests for building provider requests from a thread's history."""

import pytest

from branchchat.models import Attachment, MessageRole, SYSTEM_MODEL_MARKER, ToolCall, ToolCallFunction
from branchchat.orchestration.request_builder import (
    build_chat_messages,
    build_response_request,
    to_input_items,
    truncate_history,
)
from branchchat.providers import ChatMessage, FunctionCallItem, FunctionCallOutputItem, InputMessage
from branchchat.storage import DuckDBStorage


@pytest.fixture
def storage():
    """Create a storage instance for testing."""
    return DuckDBStorage(":memory:")


@pytest.fixture
async def history(storage):
    """user -> assistant(tool call) -> tool -> assistant, plus a failed turn."""
    thread = await storage.create_thread("Chat")
    call = ToolCall(id="c1", function=ToolCallFunction(name="calc", arguments='{"x": 1}'))
    user = await storage.add_message(
        thread.id,
        MessageRole.USER,
        content="look at this",
        attachments=[
            Attachment(file_name="p.png", mime_type="image/png", data=b"PNG"),
            Attachment(file_name="notes.txt", mime_type="text/plain", data=b"text"),
        ],
    )
    calling = await storage.add_message(
        thread.id, MessageRole.ASSISTANT, content="", tool_calls=[call], parent_id=user.id
    )
    result = await storage.add_message(
        thread.id, MessageRole.TOOL, content="2", tool_call_id="c1", parent_id=calling.id
    )
    answer = await storage.add_message(
        thread.id, MessageRole.ASSISTANT, content="It is 2", parent_id=result.id
    )
    failed = await storage.add_message(
        thread.id,
        MessageRole.ASSISTANT,
        content="An error occurred: boom",
        model=SYSTEM_MODEL_MARKER,
        parent_id=answer.id,
    )
    return [user, calling, result, answer, failed]


@pytest.mark.asyncio
async def test_truncate_keeps_tail_and_drops_orphan_results(history):
    """Test that a window starting on a tool result skips it."""
    truncated = truncate_history(history, 3)

    assert [m.role for m in truncated] == [MessageRole.ASSISTANT, MessageRole.ASSISTANT]
    assert truncate_history(history, None) == history
    assert truncate_history(history, 0) == history


@pytest.mark.asyncio
async def test_build_chat_messages(storage, history):
    """Test system prompt, inlined images, tool turns and skipped error messages."""
    messages = await build_chat_messages(storage, history, system_prompt="be brief")

    assert [m.role for m in messages] == ["system", "user", "assistant", "tool", "assistant"]
    user = messages[1]
    assert user.text() == "look at this"
    assert user.images() == ["data:image/png;base64,UE5H"]
    assert messages[2].tool_calls[0].id == "c1"
    assert messages[2].content is None
    assert messages[3].tool_call_id == "c1"
    assert messages[4].content == "It is 2"


@pytest.mark.asyncio
async def test_unanswered_tool_calls_are_dropped(storage):
    """Test that tool calls without a following result never reach the provider."""
    thread = await storage.create_thread("Chat")
    user = await storage.add_message(thread.id, MessageRole.USER, content="first")
    calling = await storage.add_message(
        thread.id,
        MessageRole.ASSISTANT,
        content="Let me check",
        tool_calls=[
            ToolCall(id="c1", function=ToolCallFunction(name="calc")),
            ToolCall(id="c2", function=ToolCallFunction(name="calc")),
        ],
        parent_id=user.id,
    )
    result = await storage.add_message(
        thread.id, MessageRole.TOOL, content="1", tool_call_id="c1", parent_id=calling.id
    )
    follow_up = await storage.add_message(thread.id, MessageRole.USER, content="second", parent_id=result.id)

    partial = await build_chat_messages(storage, [user, calling, result, follow_up])
    bare = await build_chat_messages(storage, [user, calling, follow_up])

    assert [c.id for c in partial[1].tool_calls] == ["c1"]
    assert [(m.role, m.tool_calls) for m in bare] == [("user", None), ("assistant", None), ("user", None)]
    assert bare[1].content == "Let me check"


@pytest.mark.asyncio
async def test_images_left_out_for_text_only_models(storage, history):
    """Test that models without image support get plain text."""
    messages = await build_chat_messages(storage, history, supports_images=False)

    assert messages[0].content == "look at this"


def test_to_input_items():
    """Test the item-based layout of a tool exchange."""
    messages = [
        ChatMessage(role="system", content="sys"),
        ChatMessage(role="user", content="hi"),
        ChatMessage(
            role="assistant",
            content="checking",
            tool_calls=[ToolCall(id="c1", function=ToolCallFunction(name="calc", arguments=""))],
        ),
        ChatMessage(role="tool", content="2", tool_call_id="c1"),
    ]

    instructions, items = to_input_items(messages)

    assert instructions == "sys"
    assert [type(item) for item in items] == [
        InputMessage,
        InputMessage,
        FunctionCallItem,
        FunctionCallOutputItem,
    ]
    assert items[1].role == "assistant"
    assert items[2].arguments == "{}"
    assert items[3].output == "2"


def test_build_response_request():
    """Test that empty tool lists are omitted."""
    request = build_response_request(
        "m", [ChatMessage(role="user", content="hi")], tools=[], max_tokens=5, stream=True
    )

    assert request.instructions is None
    assert request.tools is None
    assert request.max_tokens == 5
    assert request.stream is True
