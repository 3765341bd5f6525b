"""Smoke tests for the command line interface."""

import asyncio
import json

import pytest
from typer.testing import CliRunner

from branchchat import cli
from branchchat.cli import app
from branchchat.model_manager import ModelManager
from branchchat.models import MessageRole, ProviderType
from branchchat.orchestration import ConversationOrchestrator
from branchchat.providers import BaseProvider, ChatDelta, ChatReply
from branchchat.storage import DuckDBStorage
from branchchat.tools import LocalToolRegistry, ToolGateway

runner = CliRunner()


@pytest.fixture(autouse=True)
def quiet_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("ENABLE_FILE_LOGGING", "false")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "chat.db")


def _create_thread(db_path, title):
    storage = DuckDBStorage(db_path)
    try:
        return asyncio.run(storage.create_thread(title))
    finally:
        storage.close()


def test_version():
    """Test the version command."""
    result = runner.invoke(app, ["version"])

    assert result.exit_code == 0
    assert "branchchat v" in result.output


def test_provider_and_mcp_registration(db_path):
    """Test adding and listing providers and MCP servers."""
    result = runner.invoke(
        app, ["add-provider", "Local", "--type", "ollama", "--base-url", "http://localhost:11434", "-d", db_path]
    )
    assert result.exit_code == 0
    assert "Added provider" in result.output

    result = runner.invoke(app, ["providers", "-d", db_path])
    assert result.exit_code == 0
    assert "Local" in result.output

    result = runner.invoke(app, ["add-mcp-server", "files", "http://localhost:9000/mcp", "-d", db_path])
    assert result.exit_code == 0
    assert "Added MCP server" in result.output

    result = runner.invoke(app, ["add-mcp-server", "bad__name", "http://localhost:9000/mcp", "-d", db_path])
    assert result.exit_code == 1


def test_rejects_unknown_provider_type(db_path):
    """Test that a bad --type exits with an error."""
    result = runner.invoke(app, ["add-provider", "Bad", "--type", "carrier-pigeon", "-d", db_path])

    assert result.exit_code == 1
    assert "Unknown provider type" in result.output


def test_add_model_needs_existing_provider(db_path):
    """Test that add-model checks the provider id."""
    result = runner.invoke(app, ["add-model", "42", "gpt-mini", "-d", db_path])

    assert result.exit_code == 1
    assert "Provider 42 not found" in result.output


def test_threads_and_delete(db_path):
    """Test listing and deleting threads."""
    result = runner.invoke(app, ["threads", "-d", db_path])
    assert "No threads found" in result.output

    thread = _create_thread(db_path, "Groceries")

    result = runner.invoke(app, ["threads", "-d", db_path])
    assert result.exit_code == 0
    assert "Groceries" in result.output

    result = runner.invoke(app, ["delete-thread", str(thread.id), "--force", "-d", db_path])
    assert result.exit_code == 0
    assert f"Deleted thread {thread.id}" in result.output


def test_export_then_import(db_path, tmp_path):
    """Test a backup written by export can be imported elsewhere."""
    runner.invoke(app, ["add-provider", "Main", "--api-key", "sk", "-d", db_path])
    _create_thread(db_path, "Vacation")
    backup_file = tmp_path / "backup.json"

    result = runner.invoke(app, ["export", str(backup_file), "-d", db_path])

    assert result.exit_code == 0
    data = json.loads(backup_file.read_text(encoding="utf-8"))
    assert data["providers"][0]["name"] == "Main"

    other_db = str(tmp_path / "other.db")
    result = runner.invoke(app, ["import", str(backup_file), "-d", other_db])

    assert result.exit_code == 0
    assert "Imported" in result.output
    result = runner.invoke(app, ["threads", "-d", other_db])
    assert "Vacation" in result.output


def test_import_reports_bad_file(db_path, tmp_path):
    """Test that a broken backup file exits with an error."""
    backup_file = tmp_path / "broken.json"
    backup_file.write_text("{not json", encoding="utf-8")

    result = runner.invoke(app, ["import", str(backup_file), "-d", db_path])

    assert result.exit_code == 1
    assert "Import failed" in result.output


class StreamingProvider(BaseProvider):
    """Adapter that streams a fixed reply in two pieces."""

    async def fetch_api_models(self):
        return []

    async def chat_completion(self, request):
        if not request.stream:
            return ChatReply(content="Hi there!")
        return self._stream()

    @staticmethod
    async def _stream():
        for piece in ("Hi ", "there!"):
            yield ChatDelta(content=piece)


def _streaming_orchestrator(config):
    storage = DuckDBStorage(config.db_path)
    return ConversationOrchestrator(
        storage=storage,
        model_manager=ModelManager(
            storage, config, provider_factory=lambda record, storage=None: StreamingProvider(record, storage)
        ),
        gateway=ToolGateway(storage, registry=LocalToolRegistry(), config=config),
        config=config,
    )


def _add_active_provider(db_path):
    storage = DuckDBStorage(db_path)
    try:
        asyncio.run(storage.add_provider("Local", ProviderType.OPENAI_COMPATIBLE, is_active=True))
    finally:
        storage.close()


def _list_threads_with_messages(db_path):
    storage = DuckDBStorage(db_path)

    async def collect():
        threads = await storage.list_threads()
        return [(t, await storage.get_thread_messages(t.id)) for t in threads]

    try:
        return asyncio.run(collect())
    finally:
        storage.close()


def test_chat_streams_the_first_reply(db_path, monkeypatch):
    """Test that the first message of a new session is streamed into a saved thread."""
    monkeypatch.setattr(cli, "create_orchestrator", _streaming_orchestrator)
    _add_active_provider(db_path)

    result = runner.invoke(app, ["chat", "--model", "test-model", "-d", db_path], input="hello\n/quit\n")

    assert result.exit_code == 0
    assert "Hi there!" in result.output
    # Non-streamed replies are printed under a model header
    assert "🤖" not in result.output
    threads = _list_threads_with_messages(db_path)
    assert len(threads) == 1
    _, messages = threads[0]
    assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert messages[1].content == "Hi there!"


def test_chat_without_provider_leaves_no_thread(db_path, monkeypatch):
    """Test that a session that never got a reply deletes the thread it created."""
    monkeypatch.setattr(cli, "create_orchestrator", _streaming_orchestrator)

    result = runner.invoke(app, ["chat", "-d", db_path], input="hello\n/quit\n")

    assert result.exit_code == 0
    assert "No active provider" in result.output
    assert _list_threads_with_messages(db_path) == []
