"""Tests for the tool gateway, local registry and built-in tools."""

import json
from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from branchchat.config import Config
from branchchat.mcp_manager import McpToolResult
from branchchat.model_manager import ResolvedModel
from branchchat.models import McpAppUiData, ModelInfo, ProviderRecord, ProviderType, ToolCall, ToolCallFunction
from branchchat.providers import ChatReply, ToolSchema
from branchchat.storage import DuckDBStorage
from branchchat.tools import LocalTool, LocalToolRegistry, ToolContext, ToolGateway, create_default_registry
from branchchat.tools.subagent import SUBAGENT_TOOL, run_subagent
from branchchat.tools.web_search import parse_results, search_web


@pytest.fixture
def storage():
    """Create a storage instance for testing."""
    return DuckDBStorage(":memory:")


def _resolved(provider_type=ProviderType.OPENAI_COMPATIBLE, adapter=None, supports_tools=True):
    provider = ProviderRecord(id=1, name="p", type=provider_type)
    info = ModelInfo(
        id="m",
        target_model_id="m-api",
        name="M",
        provider_id=1,
        provider_name="p",
        provider_type=provider_type,
        supports_tools=supports_tools,
    )
    return ResolvedModel(provider=provider, adapter=adapter or Mock(), info=info)


def _echo_registry():
    registry = LocalToolRegistry()

    @registry.tool(
        "echo",
        "Echo text back",
        {"type": "object", "properties": {"text": {"type": "string"}}},
    )
    async def echo(args, context):
        return f"echo: {args['text']}"

    return registry


def test_registry_rejects_namespaced_names():
    """Test that local tool names cannot collide with MCP names."""
    registry = LocalToolRegistry()

    async def handler(args, context):
        return ""

    with pytest.raises(ValueError):
        registry.register(LocalTool(name="srv__tool", description="", handler=handler))


@pytest.mark.asyncio
async def test_builtin_tools_are_opt_in(storage):
    """Test that built-in tools stay hidden until enabled."""
    gateway = ToolGateway(storage, config=Config())

    assert await gateway.get_tool_definitions() == []

    await gateway.set_builtin_tool_enabled("get_current_time", True)

    names = [t.name for t in await gateway.get_tool_definitions()]
    assert names == ["get_current_time"]


@pytest.mark.asyncio
async def test_custom_tools_are_on_unless_disabled(storage):
    """Test the enabled_tools flag for non-built-in tools."""
    gateway = ToolGateway(storage, registry=_echo_registry(), config=Config())

    assert [t.name for t in await gateway.get_tool_definitions()] == ["echo"]

    await gateway.set_tool_enabled("echo", False)

    assert await gateway.get_tool_definitions() == []
    assert await storage.get_setting("enabled_tools") == {"echo": False}


@pytest.mark.asyncio
async def test_native_web_search_depends_on_provider(storage):
    """Test that the native search tool is offered only where a provider has one."""
    gateway = ToolGateway(storage, registry=LocalToolRegistry(), config=Config())
    await gateway.set_builtin_tool_enabled("web_search", True)

    offered = await gateway.get_tool_definitions(_resolved(ProviderType.ANTHROPIC))
    assert [t.name for t in offered] == ["web_search"]
    assert offered[0].parameters["required"] == ["query"]

    assert await gateway.get_tool_definitions(_resolved(ProviderType.OLLAMA)) == []


@pytest.mark.asyncio
async def test_mcp_tools_are_listed_and_filtered(storage):
    """Test MCP tools appear namespaced and obey enable flags and config."""
    mcp = Mock()
    mcp.list_tools = AsyncMock(
        return_value=[ToolSchema(name="files__read"), ToolSchema(name="files__write")]
    )
    gateway = ToolGateway(storage, mcp_manager=mcp, registry=LocalToolRegistry(), config=Config())
    await gateway.set_tool_enabled("files__write", False)

    assert [t.name for t in await gateway.get_tool_definitions()] == ["files__read"]

    gateway.config = Config(enable_mcp_tools=False)
    assert await gateway.get_tool_definitions() == []


@pytest.mark.asyncio
async def test_execute_local_tool(storage):
    """Test dispatch to a local handler."""
    gateway = ToolGateway(storage, registry=_echo_registry(), config=Config())

    result = await gateway.execute_tool("echo", {"text": "hi"})

    assert result.content == "echo: hi"
    assert result.ui_metadata is None


@pytest.mark.asyncio
async def test_execute_mcp_tool_splits_on_first_separator(storage):
    """Test that server__tool names route to the MCP manager."""
    ui = McpAppUiData(resource_uri="ui://files/view", server_name="files")
    mcp = Mock()
    mcp.call_tool = AsyncMock(return_value=McpToolResult(content="data", ui_metadata=ui))
    gateway = ToolGateway(storage, mcp_manager=mcp, registry=LocalToolRegistry(), config=Config())

    result = await gateway.execute_tool("files__read__all", {"path": "/"})

    mcp.call_tool.assert_awaited_once_with("files", "read__all", {"path": "/"})
    assert result.content == "data"
    assert result.ui_metadata == ui


@pytest.mark.asyncio
async def test_unknown_tool_is_reported_not_raised(storage):
    """Test the reply for a tool nobody implements."""
    gateway = ToolGateway(storage, registry=LocalToolRegistry(), config=Config())

    result = await gateway.execute_tool("teleport", {})

    assert result.content == "Tool teleport is not implemented yet."


@pytest.mark.asyncio
async def test_get_current_time(storage):
    """Test the clock tool returns an ISO timestamp."""
    gateway = ToolGateway(storage, registry=create_default_registry(), config=Config())

    result = await gateway.execute_tool("get_current_time", {})

    assert "T" in result.content


# ----------------------------------------------------------------------
# Subagent
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_subagent_runs_tools_then_answers(storage):
    """Test a nested loop: one tool call, then a final answer."""
    adapter = Mock()
    adapter.chat_completion = AsyncMock(
        side_effect=[
            ChatReply(
                tool_calls=[
                    ToolCall(id="c1", function=ToolCallFunction(name="echo", arguments='{"text": "x"}'))
                ]
            ),
            ChatReply(content="final answer"),
        ]
    )
    registry = _echo_registry()
    registry.tool(SUBAGENT_TOOL, "nested", builtin=True)(run_subagent)
    gateway = ToolGateway(storage, registry=registry, config=Config())
    await gateway.set_builtin_tool_enabled(SUBAGENT_TOOL, True)
    context = ToolContext(thread_id=1, model=_resolved(adapter=adapter), gateway=gateway)

    answer = await run_subagent({"input": "do it", "systemPrompt": "be terse"}, context)

    assert answer == "final answer"
    first_request = adapter.chat_completion.await_args_list[0].args[0]
    assert first_request.model == "m-api"
    assert [m.role for m in first_request.messages] == ["system", "user"]
    assert [t.name for t in first_request.tools] == ["echo"]
    second_request = adapter.chat_completion.await_args_list[1].args[0]
    assert second_request.messages[-1].content == "echo: x"
    assert second_request.messages[-1].tool_call_id == "c1"


@pytest.mark.asyncio
async def test_subagent_requires_model_and_input():
    """Test argument and context validation."""
    assert await run_subagent({"input": "x"}, ToolContext()) == "Error: subagent requires an active model"
    assert await run_subagent({}, ToolContext(model=_resolved())) == "Error: input is required"


# ----------------------------------------------------------------------
# Web search
# ----------------------------------------------------------------------

RESULTS_HTML = """
<div class="result results_links">
  <h2 class="result__title">
    <a class="result__a" href="https://example.com/one">First <b>result</b></a>
  </h2>
  <a class="result__snippet" href="https://example.com/one">Snippet &amp; more</a>
</div>
<div class="result">
  <a class="result__a" href="https://example.com/two">No snippet</a>
</div>
<div class="result">
  <a class="result__a" href="https://example.com/three">Third</a>
  <div class="result__snippet">Another snippet</div>
</div>
"""


def test_parse_results():
    """Test extraction of title, url and snippet, skipping incomplete entries."""
    results = parse_results(RESULTS_HTML)

    assert results == [
        {"title": "First result", "url": "https://example.com/one", "snippet": "Snippet & more"},
        {"title": "Third", "url": "https://example.com/three", "snippet": "Another snippet"},
    ]


def test_parse_results_decodes_entities_once():
    """Test that escaped markup in results stays literal text."""
    html = (
        '<a class="result__a" href="https://example.com/tags">Using &amp;lt;div&amp;gt;</a>'
        '<a class="result__snippet">Write &amp;amp; not &amp;</a>'
    )

    assert parse_results(html) == [
        {"title": "Using &lt;div&gt;", "url": "https://example.com/tags", "snippet": "Write &amp; not &"}
    ]


@pytest.mark.asyncio
async def test_search_web_posts_query():
    """Test the search request and result parsing over a mock transport."""
    captured = {}

    def handler(request):
        captured["body"] = request.content.decode()
        captured["agent"] = request.headers["user-agent"]
        return httpx.Response(200, text=RESULTS_HTML)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        results = await search_web("duck tests", http_client=client)

    assert captured["body"] == "q=duck+tests"
    assert captured["agent"].startswith("Mozilla/5.0")
    assert len(results) == 2
    assert json.loads(json.dumps(results))[0]["url"] == "https://example.com/one"
