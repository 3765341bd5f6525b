"""Tests for stream accumulation and line-oriented stream parsing."""

import httpx
import pytest

from branchchat.models import TokenUsage
from branchchat.providers.streaming import (
    StreamAccumulator,
    ToolCallAccumulator,
    collect_stream,
    iter_ndjson,
    iter_sse_json,
)
from branchchat.providers.types import ChatDelta, FinishReason, ToolCallDelta


def test_tool_call_fragments_reassemble_by_index():
    """Test that interleaved fragments end up on the right call."""
    accumulator = ToolCallAccumulator()
    accumulator.add(ToolCallDelta(index=0, id="call_a", name="get_", arguments='{"ci'))
    accumulator.add(ToolCallDelta(index=1, id="call_b", name="other", arguments="{}"))
    accumulator.add(ToolCallDelta(index=0, name="weather", arguments='ty": "Oslo"}'))

    calls = accumulator.tool_calls()

    assert [c.id for c in calls] == ["call_a", "call_b"]
    assert calls[0].function.name == "get_weather"
    assert calls[0].function.arguments == '{"city": "Oslo"}'


def test_tool_call_without_id_gets_one():
    """Test that a call never seen with an id is given a generated one."""
    accumulator = ToolCallAccumulator()
    accumulator.add(ToolCallDelta(index=0, name="now"))

    call = accumulator.tool_calls()[0]

    assert call.id.startswith("call_")
    assert call.function.arguments == "{}"


def test_empty_accumulator_is_falsy():
    assert not ToolCallAccumulator()


def test_stream_accumulator_keeps_last_usage_and_finish():
    """Test folding content, reasoning, usage and finish reason."""
    accumulator = StreamAccumulator()
    accumulator.add(ChatDelta(reasoning="think "))
    accumulator.add(ChatDelta(content="Hel", reasoning="more"))
    accumulator.add(ChatDelta(content="lo", images=["data:image/png;base64,AAAA"]))
    accumulator.add(
        ChatDelta(
            usage=TokenUsage(prompt_tokens=1, completion_tokens=2, total_tokens=3),
            finish_reason=FinishReason.STOP,
        )
    )

    reply = accumulator.reply()

    assert reply.content == "Hello"
    assert reply.reasoning == "think more"
    assert reply.images == ["data:image/png;base64,AAAA"]
    assert reply.usage.total_tokens == 3
    assert reply.finish_reason == FinishReason.STOP
    assert reply.tool_calls == []


@pytest.mark.asyncio
async def test_collect_stream():
    """Test draining an async iterator of deltas."""

    async def deltas():
        yield ChatDelta(content="a")
        yield ChatDelta(tool_calls=[ToolCallDelta(index=0, id="c1", name="t", arguments="{}")])
        yield ChatDelta(finish_reason=FinishReason.TOOL_CALLS)

    reply = await collect_stream(deltas())

    assert reply.content == "a"
    assert reply.tool_calls[0].id == "c1"
    assert reply.finish_reason == FinishReason.TOOL_CALLS


@pytest.mark.asyncio
async def test_iter_sse_json_skips_noise():
    """Test SSE parsing ignores comments, events, DONE and malformed data."""
    body = (
        ": keep-alive\n"
        "event: message\n"
        'data: {"a": 1}\n'
        "\n"
        "data: not json\n"
        'data: {"b": 2}\n'
        "data: [DONE]\n"
    )
    response = httpx.Response(200, content=body.encode())

    items = [item async for item in iter_sse_json(response)]

    assert items == [{"a": 1}, {"b": 2}]


@pytest.mark.asyncio
async def test_iter_ndjson():
    """Test newline-delimited JSON parsing."""
    response = httpx.Response(200, content=b'{"x": 1}\n\n{"x": 2}\nbroken\n')

    items = [item async for item in iter_ndjson(response)]

    assert items == [{"x": 1}, {"x": 2}]
