"""Tests for provider adapters, model listing and the adapter factory."""

import json
from unittest.mock import AsyncMock, Mock

import httpx
import pytest
from openai import AsyncOpenAI

from branchchat.exceptions import ProviderError
from branchchat.models import (
    ManualModel,
    ModelConfigRecord,
    Protocol,
    ProviderRecord,
    ProviderType,
    ToolCall,
    ToolCallFunction,
)
from branchchat.providers import (
    AnthropicProvider,
    ChatMessage,
    ChatRequest,
    ContentPart,
    FinishReason,
    GoogleProvider,
    OllamaProvider,
    OpenAIProvider,
    ResponseRequest,
    ToolSchema,
    collect_stream,
    get_provider,
)
from branchchat.providers.anthropic_provider import _to_anthropic_messages
from branchchat.providers.google_provider import _to_gemini_contents, _to_gemini_tools
from branchchat.storage import DuckDBStorage


def _record(provider_type, **overrides):
    values = {"id": 1, "name": "test", "type": provider_type, "api_key": "key"}
    values.update(overrides)
    return ProviderRecord(**values)


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _sse(*events):
    return "".join(f"data: {json.dumps(event)}\n\n" for event in events).encode()


TOOL_HISTORY = [
    ChatMessage(role="system", content="be brief"),
    ChatMessage(role="user", content="weather in Oslo and Bergen?"),
    ChatMessage(
        role="assistant",
        content=None,
        tool_calls=[
            ToolCall(id="c1", function=ToolCallFunction(name="weather", arguments='{"city": "Oslo"}')),
            ToolCall(id="c2", function=ToolCallFunction(name="weather", arguments='{"city": "Bergen"}')),
        ],
    ),
    ChatMessage(role="tool", content="rain", tool_call_id="c1"),
    ChatMessage(role="tool", content="sun", tool_call_id="c2"),
]


# ----------------------------------------------------------------------
# Factory and model listing
# ----------------------------------------------------------------------


def test_factory_picks_adapter_by_type():
    """Test adapter selection; unknown families speak the OpenAI format."""
    assert isinstance(get_provider(_record(ProviderType.ANTHROPIC)), AnthropicProvider)
    assert isinstance(get_provider(_record(ProviderType.GOOGLE)), GoogleProvider)
    assert isinstance(get_provider(_record(ProviderType.OLLAMA)), OllamaProvider)
    assert isinstance(get_provider(_record(ProviderType.OPENROUTER)), OpenAIProvider)
    assert isinstance(get_provider(_record(ProviderType.OPENAI_COMPATIBLE)), OpenAIProvider)


def test_base_url_defaults_and_trailing_slash():
    """Test that the configured URL wins and loses its trailing slash."""
    assert get_provider(_record(ProviderType.OLLAMA)).base_url == "http://localhost:11434"
    custom = get_provider(_record(ProviderType.OLLAMA, base_url="http://box:1234/"))
    assert custom.base_url == "http://box:1234"


@pytest.fixture
def storage():
    """Create a storage instance for testing."""
    return DuckDBStorage(":memory:")


@pytest.mark.asyncio
async def test_list_models_merges_api_manual_and_config(storage):
    """Test the merged model list: overrides, configs and ordering."""
    record = await storage.add_provider("local", ProviderType.OLLAMA, base_url="http://ollama.test")
    await storage.add_manual_model(
        ManualModel(uuid="qwen", provider_id=record.id, model_id="qwen:7b", name="Qwen Custom")
    )
    await storage.add_manual_model(
        ManualModel(uuid="extra", provider_id=record.id, model_id="extra:1b", name="Extra", supports_tools=True)
    )
    await storage.save_model_config(
        ModelConfigRecord(provider_id=record.id, model_id="llama3", is_enabled=False)
    )

    def handler(request):
        assert request.url.path == "/api/tags"
        return httpx.Response(200, json={"models": [{"name": "llama3"}, {"name": "qwen"}]})

    adapter = OllamaProvider(record, storage=storage, http_client=_client(handler))
    models = await adapter.list_models()

    assert [m.id for m in models] == ["llama3", "qwen", "extra"]
    llama, qwen, extra = models
    assert llama.is_enabled is False
    assert llama.supports_tools is False  # tools are off by default for Ollama
    assert qwen.is_api_override is True
    assert qwen.target_model_id == "qwen:7b"
    assert qwen.name == "Qwen Custom"
    assert extra.is_manual is True
    assert extra.supports_tools is True
    assert extra.order > qwen.order


@pytest.mark.asyncio
async def test_list_models_survives_api_failure(storage):
    """Test that a failing model endpoint still yields manual models."""
    record = await storage.add_provider("local", ProviderType.OLLAMA)
    await storage.add_manual_model(
        ManualModel(uuid="m", provider_id=record.id, model_id="m", name="M")
    )

    adapter = OllamaProvider(
        record, storage=storage, http_client=_client(lambda request: httpx.Response(500))
    )

    assert [m.id for m in await adapter.list_models()] == ["m"]


@pytest.mark.asyncio
async def test_describe_model_uses_local_records_only(storage):
    """Test that describing a model needs no network and applies configs."""
    record = await storage.add_provider(
        "oa", ProviderType.OPENAI_COMPATIBLE, default_protocol=Protocol.RESPONSE_API
    )
    await storage.save_model_config(
        ModelConfigRecord(provider_id=record.id, model_id="gpt-x", enable_stream=False)
    )
    adapter = OpenAIProvider(record, storage=storage, client=Mock())

    info = await adapter.describe_model("gpt-x")

    assert info.target_model_id == "gpt-x"
    assert info.enable_stream is False
    assert info.protocol == Protocol.RESPONSE_API
    assert info.supports_tools is True


# ----------------------------------------------------------------------
# OpenAI-compatible
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_openai_chat_completion_over_http():
    """Test a non-streamed completion through the SDK and a mock transport."""
    captured = {}

    def handler(request):
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "id": "chatcmpl-1",
                "object": "chat.completion",
                "created": 0,
                "model": "gpt-test",
                "choices": [
                    {
                        "index": 0,
                        "message": {"role": "assistant", "content": "Hi there"},
                        "finish_reason": "stop",
                    }
                ],
                "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7},
            },
        )

    client = AsyncOpenAI(
        api_key="k", base_url="http://openai.test/v1", http_client=_client(handler), max_retries=0
    )
    adapter = OpenAIProvider(_record(ProviderType.OPENAI_COMPATIBLE), client=client)

    reply = await adapter.chat_completion(
        ChatRequest(
            model="gpt-test",
            messages=[ChatMessage(role="user", content="Hello")],
            max_tokens=20,
            extra_params={"temperature": 0.3},
        )
    )

    assert reply.content == "Hi there"
    assert reply.finish_reason == FinishReason.STOP
    assert reply.usage.total_tokens == 7
    assert captured["url"] == "http://openai.test/v1/chat/completions"
    assert captured["body"]["max_tokens"] == 20
    assert captured["body"]["temperature"] == 0.3
    assert captured["body"]["messages"] == [{"role": "user", "content": "Hello"}]


@pytest.mark.asyncio
async def test_openai_stream_reassembles_tool_calls():
    """Test streamed chunks with reasoning, tool-call fragments and usage."""

    async def chunks():
        yield {"choices": [{"delta": {"reasoning_content": "hmm"}, "finish_reason": None}]}
        yield {
            "choices": [
                {
                    "delta": {
                        "tool_calls": [
                            {"index": 0, "id": "call_1", "function": {"name": "look", "arguments": '{"q"'}}
                        ]
                    },
                    "finish_reason": None,
                }
            ]
        }
        yield {
            "choices": [
                {
                    "delta": {"tool_calls": [{"index": 0, "function": {"arguments": ': "x"}'}}]},
                    "finish_reason": "tool_calls",
                }
            ]
        }
        yield {"choices": [], "usage": {"prompt_tokens": 3, "completion_tokens": 4}}

    client = Mock()
    client.chat.completions.create = AsyncMock(return_value=chunks())
    adapter = OpenAIProvider(_record(ProviderType.OPENAI_COMPATIBLE), client=client)

    stream = await adapter.chat_completion(
        ChatRequest(model="m", messages=[ChatMessage(role="user", content="go")], stream=True)
    )
    reply = await collect_stream(stream)

    assert reply.reasoning == "hmm"
    assert reply.tool_calls[0].id == "call_1"
    assert reply.tool_calls[0].function.arguments == '{"q": "x"}'
    assert reply.finish_reason == FinishReason.TOOL_CALLS
    assert reply.usage.total_tokens == 7
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["stream"] is True
    assert kwargs["stream_options"] == {"include_usage": True}


@pytest.mark.asyncio
async def test_openai_message_conversion_and_native_search():
    """Test wire messages for tool history, images and the native search tool."""
    client = Mock()
    client.chat.completions.create = AsyncMock(
        return_value={"choices": [{"message": {"content": "ok"}, "finish_reason": "stop"}]}
    )
    adapter = OpenAIProvider(_record(ProviderType.OPENROUTER), client=client)
    messages = TOOL_HISTORY + [
        ChatMessage(
            role="user",
            content=[ContentPart.of_text("see"), ContentPart.of_image("data:image/png;base64,AAAA")],
        )
    ]

    await adapter.chat_completion(
        ChatRequest(
            model="m",
            messages=messages,
            tools=[ToolSchema(name="web_search"), ToolSchema(name="weather", description="w")],
        )
    )

    kwargs = client.chat.completions.create.call_args.kwargs
    wire = kwargs["messages"]
    assert wire[2]["tool_calls"][0]["function"]["name"] == "weather"
    assert wire[3] == {"role": "tool", "content": "rain", "tool_call_id": "c1"}
    assert wire[5]["content"][1] == {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}}
    assert kwargs["tools"][0] == {"type": "web_search_preview"}
    assert kwargs["tools"][1]["function"]["name"] == "weather"


@pytest.mark.asyncio
async def test_openai_response_api_parsing():
    """Test the item-based protocol: payload and reply items."""
    client = Mock()
    client.responses.create = AsyncMock(
        return_value={
            "output": [
                {"type": "reasoning", "summary": [{"text": "thought about it"}], "content": []},
                {"type": "message", "content": [{"type": "output_text", "text": "Answer"}]},
                {"type": "image_generation_call", "result": "QUJD"},
            ],
            "usage": {"input_tokens": 2, "output_tokens": 3, "total_tokens": 5},
        }
    )
    adapter = OpenAIProvider(_record(ProviderType.OPENAI_COMPATIBLE), client=client)

    reply = await adapter.create_response(
        ResponseRequest(model="m", input=[], instructions="sys", max_tokens=10)
    )

    assert reply.content == "Answer"
    assert reply.reasoning_summary == "thought about it"
    assert reply.images == ["data:image/png;base64,QUJD"]
    assert reply.usage.prompt_tokens == 2
    assert reply.finish_reason == FinishReason.STOP
    kwargs = client.responses.create.call_args.kwargs
    assert kwargs["instructions"] == "sys"
    assert kwargs["max_output_tokens"] == 10


@pytest.mark.asyncio
async def test_openai_response_stream_failure_raises():
    """Test that a failed response stream surfaces as ProviderError."""

    async def events():
        yield {"type": "response.output_text.delta", "delta": "par"}
        yield {"type": "response.failed", "response": {"error": {"message": "overloaded"}}}

    client = Mock()
    client.responses.create = AsyncMock(return_value=events())
    adapter = OpenAIProvider(_record(ProviderType.OPENAI_COMPATIBLE), client=client)

    stream = await adapter.create_response(ResponseRequest(model="m", input=[], stream=True))
    with pytest.raises(ProviderError, match="overloaded"):
        await collect_stream(stream)


@pytest.mark.asyncio
async def test_non_openai_adapter_rejects_response_api():
    """Test that adapters without the item-based protocol refuse it."""
    adapter = AnthropicProvider(_record(ProviderType.ANTHROPIC))

    with pytest.raises(ProviderError):
        await adapter.create_response(ResponseRequest(model="m", input=[]))


# ----------------------------------------------------------------------
# Anthropic
# ----------------------------------------------------------------------


def test_anthropic_message_conversion():
    """Test system hoisting, tool_use blocks and merged tool results."""
    system, messages = _to_anthropic_messages(TOOL_HISTORY)

    assert system == "be brief"
    assert [m["role"] for m in messages] == ["user", "assistant", "user"]
    assert messages[1]["content"][0] == {
        "type": "tool_use",
        "id": "c1",
        "name": "weather",
        "input": {"city": "Oslo"},
    }
    assert [b["tool_use_id"] for b in messages[2]["content"]] == ["c1", "c2"]


@pytest.mark.asyncio
async def test_anthropic_non_streamed_reply():
    """Test parsing a Messages API reply and the request headers."""
    captured = {}

    def handler(request):
        captured["headers"] = request.headers
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "content": [
                    {"type": "thinking", "thinking": "consider"},
                    {"type": "text", "text": "Done"},
                    {"type": "tool_use", "id": "toolu_1", "name": "look", "input": {"q": 1}},
                ],
                "stop_reason": "tool_use",
                "usage": {"input_tokens": 4, "output_tokens": 6},
            },
        )

    adapter = AnthropicProvider(_record(ProviderType.ANTHROPIC), http_client=_client(handler))
    reply = await adapter.chat_completion(
        ChatRequest(model="claude", messages=[ChatMessage(role="user", content="hi")])
    )

    assert reply.content == "Done"
    assert reply.reasoning == "consider"
    assert reply.tool_calls[0].function.arguments == '{"q": 1}'
    assert reply.finish_reason == FinishReason.TOOL_CALLS
    assert reply.usage.total_tokens == 10
    assert captured["headers"]["x-api-key"] == "key"
    assert captured["body"]["max_tokens"] == 4096


@pytest.mark.asyncio
async def test_anthropic_stream():
    """Test streamed text and tool input fragments."""
    body = _sse(
        {"type": "message_start", "message": {"usage": {"input_tokens": 10}}},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hel"}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "lo"}},
        {
            "type": "content_block_start",
            "index": 1,
            "content_block": {"type": "tool_use", "id": "toolu_1", "name": "lookup"},
        },
        {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '{"q":'}},
        {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '"x"}'}},
        {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 5}},
    )
    adapter = AnthropicProvider(
        _record(ProviderType.ANTHROPIC), http_client=_client(lambda request: httpx.Response(200, content=body))
    )

    stream = await adapter.chat_completion(
        ChatRequest(model="claude", messages=[ChatMessage(role="user", content="hi")], stream=True)
    )
    reply = await collect_stream(stream)

    assert reply.content == "Hello"
    assert reply.tool_calls[0].id == "toolu_1"
    assert reply.tool_calls[0].function.arguments == '{"q":"x"}'
    assert reply.usage.prompt_tokens == 10
    assert reply.usage.completion_tokens == 5
    assert reply.finish_reason == FinishReason.TOOL_CALLS


@pytest.mark.asyncio
async def test_error_status_raises_provider_error_with_status():
    """Test that HTTP errors carry their status code for the retry controller."""
    adapter = AnthropicProvider(
        _record(ProviderType.ANTHROPIC),
        http_client=_client(lambda request: httpx.Response(429, text="rate limited")),
    )

    with pytest.raises(ProviderError) as exc_info:
        await adapter.chat_completion(
            ChatRequest(model="claude", messages=[ChatMessage(role="user", content="hi")], stream=True)
        )

    assert exc_info.value.status_code == 429
    assert "rate limited" in str(exc_info.value)


# ----------------------------------------------------------------------
# Google
# ----------------------------------------------------------------------


def test_gemini_contents_conversion():
    """Test roles, system instruction and function responses by name."""
    body = _to_gemini_contents(TOOL_HISTORY)

    assert body["systemInstruction"] == {"parts": [{"text": "be brief"}]}
    roles = [c["role"] for c in body["contents"]]
    assert roles == ["user", "model", "user"]
    responses = body["contents"][2]["parts"]
    assert [p["functionResponse"]["name"] for p in responses] == ["weather", "weather"]
    assert responses[1]["functionResponse"]["response"] == {"content": "sun"}


def test_gemini_tools_conversion():
    """Test function declarations come first and search maps to googleSearch."""
    tools = _to_gemini_tools([ToolSchema(name="web_search"), ToolSchema(name="calc")])

    assert tools[0]["functionDeclarations"][0]["name"] == "calc"
    assert tools[1] == {"googleSearch": {}}


@pytest.mark.asyncio
async def test_gemini_stream():
    """Test the SSE endpoint, thoughts, inline images and function calls."""
    captured = {}
    body = _sse(
        {"candidates": [{"content": {"parts": [{"text": "plan", "thought": True}]}}]},
        {"candidates": [{"content": {"parts": [{"text": "Here"}]}}]},
        {
            "candidates": [
                {
                    "content": {
                        "parts": [
                            {"inlineData": {"mimeType": "image/png", "data": "AAAA"}},
                            {"functionCall": {"name": "calc", "args": {"x": 1}}},
                        ]
                    },
                    "finishReason": "STOP",
                }
            ],
            "usageMetadata": {"promptTokenCount": 3, "candidatesTokenCount": 4, "totalTokenCount": 7},
        },
    )

    def handler(request):
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, content=body)

    adapter = GoogleProvider(_record(ProviderType.GOOGLE), http_client=_client(handler))
    stream = await adapter.chat_completion(
        ChatRequest(
            model="gemini-pro",
            messages=[ChatMessage(role="user", content="hi")],
            max_tokens=64,
            stream=True,
        )
    )
    reply = await collect_stream(stream)

    assert captured["url"].endswith("/models/gemini-pro:streamGenerateContent?alt=sse")
    assert captured["body"]["generationConfig"] == {"maxOutputTokens": 64}
    assert reply.reasoning == "plan"
    assert reply.content == "Here"
    assert reply.images == ["data:image/png;base64,AAAA"]
    assert reply.tool_calls[0].function.name == "calc"
    assert reply.finish_reason == FinishReason.TOOL_CALLS
    assert reply.usage.total_tokens == 7


@pytest.mark.asyncio
async def test_gemini_model_listing_filters_generate_content():
    """Test that embedding-only models are left out of the list."""

    def handler(request):
        return httpx.Response(
            200,
            json={
                "models": [
                    {"name": "models/gemini-pro", "displayName": "Gemini Pro", "supportedGenerationMethods": ["generateContent"]},
                    {"name": "models/embedding-001", "supportedGenerationMethods": ["embedContent"]},
                ]
            },
        )

    adapter = GoogleProvider(_record(ProviderType.GOOGLE), http_client=_client(handler))

    assert await adapter.fetch_api_models() == [{"id": "gemini-pro", "name": "Gemini Pro"}]


# ----------------------------------------------------------------------
# Ollama
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_ollama_stream_and_payload():
    """Test NDJSON streaming, options and tool-call arguments."""
    captured = {}
    lines = [
        {"message": {"role": "assistant", "content": "Hi"}, "done": False},
        {
            "message": {
                "role": "assistant",
                "content": "",
                "tool_calls": [{"function": {"name": "calc", "arguments": {"x": 2}}}],
            },
            "done": False,
        },
        {"message": {"role": "assistant", "content": ""}, "done": True, "prompt_eval_count": 8, "eval_count": 2},
    ]

    def handler(request):
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, content="\n".join(json.dumps(line) for line in lines).encode())

    adapter = OllamaProvider(_record(ProviderType.OLLAMA), http_client=_client(handler))
    stream = await adapter.chat_completion(
        ChatRequest(
            model="llama3",
            messages=[
                ChatMessage(
                    role="user",
                    content=[ContentPart.of_text("look"), ContentPart.of_image("data:image/png;base64,QUJD")],
                )
            ],
            max_tokens=32,
            stream=True,
        )
    )
    reply = await collect_stream(stream)

    assert captured["body"]["options"] == {"num_predict": 32}
    assert captured["body"]["messages"][0]["images"] == ["QUJD"]
    assert reply.content == "Hi"
    assert reply.tool_calls[0].function.arguments == '{"x": 2}'
    assert reply.finish_reason == FinishReason.TOOL_CALLS
    assert reply.usage.total_tokens == 10


@pytest.mark.asyncio
async def test_ollama_stream_error_chunk():
    """Test that an error line in the stream raises."""
    adapter = OllamaProvider(
        _record(ProviderType.OLLAMA),
        http_client=_client(lambda request: httpx.Response(200, content=b'{"error": "model not found"}\n')),
    )

    stream = await adapter.chat_completion(
        ChatRequest(model="nope", messages=[ChatMessage(role="user", content="hi")], stream=True)
    )
    with pytest.raises(ProviderError, match="model not found"):
        await collect_stream(stream)
