"""Command line interface for branchchat."""

import asyncio
import json
import logging
import signal
import sys
import uuid
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape as rich_escape
from rich.panel import Panel
from rich.table import Table

from .backup import BackupCategory, BackupError, export_backup, import_backup
from .config import Config
from .exceptions import ConfigurationError
from .models import (
    ManualModel,
    McpAuthType,
    McpTransportType,
    Message,
    MessageRole,
    ProviderType,
    ThreadSettings,
)
from .orchestration import (
    ConversationOrchestrator,
    EditMode,
    RegenerateMode,
    SendResult,
    create_orchestrator,
)
from .storage import DuckDBStorage

# Logging will be configured by the CLI callback (setup_cli_logging)
logger = logging.getLogger(__name__)

app = typer.Typer(
    help="branchchat - multi-provider chat with branching conversation history",
    rich_markup_mode="rich",
)
console = Console()


@app.callback()
def setup_cli_logging(
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Enable debug logging for all commands",
    ),
):
    """Setup logging for all CLI commands."""
    config = Config.from_env()
    config.setup_cli_logging()
    if debug:
        logging.getLogger().setLevel(logging.DEBUG)


def _load_config(db_path: Optional[str]) -> Config:
    config = Config.from_env()
    if db_path:
        config.db_path = db_path
    return config


DB_PATH_OPTION = typer.Option(None, "--db-path", "-d", help="Database path")


# ----------------------------------------------------------------------
# Rendering
# ----------------------------------------------------------------------


def _role_label(message: Message) -> str:
    if message.is_error:
        return "[red]⚠️  error[/red]"
    if message.role == MessageRole.USER:
        return "[bold green]👤 you[/bold green]"
    if message.role == MessageRole.TOOL:
        return "[yellow]🔧 tool[/yellow]"
    return f"[bold blue]🤖 {rich_escape(message.model or 'assistant')}[/bold blue]"


def _print_message(message: Message, branch: str = "") -> None:
    header = f"{_role_label(message)} [dim]#{message.id}{branch}[/dim]"
    if message.tool_calls:
        calls = ", ".join(
            f"{call.function.name}({call.function.arguments})" for call in message.tool_calls
        )
        console.print(f"{header} [dim]calls {rich_escape(calls)}[/dim]")
        return
    console.print(header)
    if message.role == MessageRole.TOOL:
        content = message.content
        if len(content) > 500:
            content = content[:500] + "..."
        console.print(f"[dim]{rich_escape(content)}[/dim]")
    else:
        console.print(Markdown(message.content or ""))


async def _print_path(orchestrator: ConversationOrchestrator, thread_id: int) -> None:
    path = await orchestrator.get_active_path(thread_id)
    if not path:
        console.print("[yellow]📭 No messages yet.[/yellow]")
        return
    for message in path:
        info = await orchestrator.get_branch_info(message.id)
        branch = f" ({info.current}/{info.total})" if info and info.total > 1 else ""
        _print_message(message, branch)


def _print_result(result: Optional[SendResult], streamed: bool) -> None:
    if result is None:
        console.print("[green]✅ Saved[/green]")
        return
    if result.aborted:
        console.print("\n[yellow]⏹  Stopped[/yellow]")
        return
    for message in result.tool_messages:
        _print_message(message)
    if result.message is None:
        return
    if result.is_error:
        console.print(Panel(rich_escape(result.message.content), title="Error", border_style="red"))
    elif streamed:
        console.print()
    else:
        _print_message(result.message)


# ----------------------------------------------------------------------
# Chat
# ----------------------------------------------------------------------


@app.command()
def chat(
    thread_id: Optional[int] = typer.Option(None, "--thread", "-t", help="Resume an existing thread"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model id to use"),
    provider_id: Optional[int] = typer.Option(None, "--provider", "-p", help="Provider id to use"),
    system_prompt: Optional[str] = typer.Option(None, "--system", "-s", help="System prompt for a new thread"),
    db_path: Optional[str] = DB_PATH_OPTION,
    stream: bool = typer.Option(
        True,
        "--stream/--no-stream",
        help="Enable streaming responses (default: True)",
    ),
):
    """Start an interactive chat session."""
    asyncio.run(_chat_session(thread_id, model, provider_id, system_prompt, db_path, stream))


async def _run_turn(orchestrator: ConversationOrchestrator, thread_id: int, coroutine, stream: bool):
    """Run one turn, printing streamed text and stopping it on Ctrl+C."""
    loop = asyncio.get_running_loop()
    unsubscribe = None
    streamed = []

    def on_delta(sink, delta):
        if delta is not None and delta.content:
            streamed.append(delta.content)
            console.print(delta.content, end="", markup=False, highlight=False)

    if stream:
        unsubscribe = orchestrator.sink(thread_id).subscribe(on_delta)
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.stop, thread_id)
    except NotImplementedError:
        pass
    try:
        result = await coroutine
    finally:
        if unsubscribe is not None:
            unsubscribe()
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass
    _print_result(result, streamed=bool(streamed))
    return result


def _print_chat_help() -> None:
    console.print("[bold cyan]📚 Available Commands:[/bold cyan]")
    console.print("   [yellow]/regen [id][/yellow]          - Regenerate the last reply (or message id)")
    console.print("   [yellow]/edit <id> <text>[/yellow]    - Edit a message and regenerate from it")
    console.print("   [yellow]/branch <id> <text>[/yellow]  - Send an edited copy of a message as a new branch")
    console.print("   [yellow]/switch <id>[/yellow]         - Switch to the branch containing message id")
    console.print("   [yellow]/tree[/yellow]                - Show the active path with branch positions")
    console.print("   [yellow]/quit[/yellow], [yellow]/exit[/yellow]         - Exit chat")
    console.print("   [dim]Press Ctrl+C while a reply is running to stop it[/dim]")


async def _handle_chat_command(
    command: str, orchestrator: ConversationOrchestrator, thread_id: int, send_options: dict, stream: bool
) -> bool:
    """Handle a slash command. Returns False when the session should end."""
    parts = command.split(" ", 2)
    cmd = parts[0].lower()

    if cmd in ("/quit", "/exit"):
        console.print("[blue]👋 Goodbye![/blue]")
        return False

    if cmd == "/help":
        _print_chat_help()
        return True

    try:
        if cmd == "/tree":
            await _print_path(orchestrator, thread_id)

        elif cmd == "/regen":
            if len(parts) > 1:
                message_id = int(parts[1])
            else:
                path = await orchestrator.get_active_path(thread_id)
                candidates = [m for m in path if m.role in (MessageRole.USER, MessageRole.ASSISTANT)]
                if not candidates:
                    console.print("[yellow]Nothing to regenerate.[/yellow]")
                    return True
                message_id = candidates[-1].id
            await _run_turn(
                orchestrator,
                thread_id,
                orchestrator.regenerate(message_id, RegenerateMode.REGENERATE, **send_options),
                stream,
            )

        elif cmd in ("/edit", "/branch"):
            if len(parts) < 3:
                console.print(f"[red]❌ Usage: {cmd} <id> <text>[/red]")
                return True
            mode = EditMode.REGENERATE if cmd == "/edit" else EditMode.BRANCH
            await _run_turn(
                orchestrator,
                thread_id,
                orchestrator.edit(int(parts[1]), parts[2], mode, **send_options),
                stream,
            )

        elif cmd == "/switch":
            if len(parts) < 2:
                console.print("[red]❌ Usage: /switch <id>[/red]")
                return True
            leaf = await orchestrator.switch_branch(int(parts[1]))
            if leaf is None:
                console.print("[red]❌ Message not found[/red]")
            else:
                await _print_path(orchestrator, thread_id)

        else:
            console.print(f"[red]❌ Unknown command: {cmd}. Type /help for a list.[/red]")
    except ValueError as e:
        console.print(f"[red]❌ {e}[/red]")
    return True


async def _chat_session(
    thread_id: Optional[int],
    model: Optional[str],
    provider_id: Optional[int],
    system_prompt: Optional[str],
    db_path: Optional[str],
    stream: bool,
):
    """Run the interactive chat session."""
    config = _load_config(db_path)
    orchestrator = create_orchestrator(config)
    send_options = {"model_id": model, "provider_id": provider_id, "stream": stream}
    created_here = thread_id is None

    try:
        if thread_id is not None:
            thread = await orchestrator.storage.get_thread(thread_id)
            if thread is None:
                console.print(f"[red]❌ Thread {thread_id} not found[/red]")
                return
            console.print(f"[green]📂 Resuming thread {thread.id}: {rich_escape(thread.title)}[/green]")
            await _print_path(orchestrator, thread_id)
        else:
            settings = None
            if system_prompt:
                settings = ThreadSettings(
                    thread_id=0, model_id=model, provider_id=provider_id, system_prompt=system_prompt
                )
            thread = await orchestrator.create_thread(settings=settings)
            thread_id = thread.id

        console.print("[dim]Type /help for commands.[/dim]")

        while True:
            try:
                text = await asyncio.to_thread(console.input, "[bold green]👤 You[/bold green]: ")
            except (EOFError, KeyboardInterrupt):
                console.print("\n[blue]👋 Goodbye![/blue]")
                break

            text = text.strip()
            if not text:
                continue
            if text.startswith("/"):
                if not await _handle_chat_command(text, orchestrator, thread_id, send_options, stream):
                    break
                continue

            try:
                await _run_turn(
                    orchestrator, thread_id, orchestrator.send(thread_id, text, **send_options), stream
                )
            except ConfigurationError as e:
                console.print(f"[red]❌ {e}[/red]")
    finally:
        # Leave no empty thread behind when the session never got a reply
        if created_here and thread_id is not None and not await orchestrator.get_active_path(thread_id):
            await orchestrator.delete_thread(thread_id)
        await orchestrator.aclose()
        orchestrator.storage.close()


# ----------------------------------------------------------------------
# Threads
# ----------------------------------------------------------------------


@app.command()
def threads(db_path: Optional[str] = DB_PATH_OPTION):
    """List all threads."""
    asyncio.run(_list_threads(db_path))


async def _list_threads(db_path: Optional[str]):
    storage = DuckDBStorage(_load_config(db_path).db_path)
    try:
        rows = await storage.list_threads()
        if not rows:
            console.print("[yellow]📭 No threads found.[/yellow]")
            return

        table = Table(title="📋 Threads", show_header=True)
        table.add_column("ID", style="cyan")
        table.add_column("Title", style="white")
        table.add_column("Created", style="blue")
        table.add_column("Last Updated", style="green")
        table.add_column("Tokens", style="yellow")
        table.add_column("Cost", style="magenta")

        for thread in rows:
            usage = await storage.get_thread_token_usage(thread.id)
            table.add_row(
                str(thread.id),
                thread.title,
                thread.created_at.strftime("%Y-%m-%d %H:%M") if thread.created_at else "Unknown",
                thread.updated_at.strftime("%Y-%m-%d %H:%M") if thread.updated_at else "Unknown",
                str(usage["total_tokens"]),
                f"${usage['total_cost_usd']:.4f}",
            )
        console.print(table)
    finally:
        storage.close()


@app.command()
def show(
    thread_id: int = typer.Argument(help="Thread id"),
    db_path: Optional[str] = DB_PATH_OPTION,
):
    """Show the active path of a thread."""
    asyncio.run(_show_thread(thread_id, db_path))


async def _show_thread(thread_id: int, db_path: Optional[str]):
    orchestrator = create_orchestrator(_load_config(db_path))
    try:
        thread = await orchestrator.storage.get_thread(thread_id)
        if thread is None:
            console.print(f"[red]❌ Thread {thread_id} not found[/red]")
            raise typer.Exit(1)
        console.print(Panel(f"[bold]{rich_escape(thread.title)}[/bold]", subtitle=f"thread {thread.id}"))
        await _print_path(orchestrator, thread_id)
    finally:
        await orchestrator.aclose()
        orchestrator.storage.close()


@app.command()
def delete_thread(
    thread_id: int = typer.Argument(help="Thread id"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
    db_path: Optional[str] = DB_PATH_OPTION,
):
    """Delete a thread with all its messages and files."""
    if not force and not typer.confirm(f"Delete thread {thread_id}?"):
        raise typer.Exit()
    asyncio.run(_delete_thread(thread_id, db_path))


async def _delete_thread(thread_id: int, db_path: Optional[str]):
    storage = DuckDBStorage(_load_config(db_path).db_path)
    try:
        if await storage.delete_thread(thread_id):
            console.print(f"[green]🗑️  Deleted thread {thread_id}[/green]")
        else:
            console.print(f"[red]❌ Thread {thread_id} not found[/red]")
    finally:
        storage.close()


# ----------------------------------------------------------------------
# Providers and models
# ----------------------------------------------------------------------


@app.command()
def add_provider(
    name: str = typer.Argument(help="Display name"),
    provider_type: str = typer.Option(
        ProviderType.OPENAI_COMPATIBLE.value,
        "--type",
        help=f"One of: {', '.join(t.value for t in ProviderType)}",
    ),
    base_url: Optional[str] = typer.Option(None, "--base-url", help="API base URL"),
    api_key: Optional[str] = typer.Option(None, "--api-key", help="API key"),
    response_api: bool = typer.Option(False, "--response-api", help="Provider supports the item-based protocol"),
    activate: bool = typer.Option(True, "--activate/--no-activate", help="Make this the active provider"),
    db_path: Optional[str] = DB_PATH_OPTION,
):
    """Register a provider."""
    try:
        kind = ProviderType(provider_type)
    except ValueError:
        console.print(f"[red]❌ Unknown provider type: {provider_type}[/red]")
        raise typer.Exit(1)
    asyncio.run(_add_provider(name, kind, base_url, api_key, response_api, activate, db_path))


async def _add_provider(name, kind, base_url, api_key, response_api, activate, db_path):
    storage = DuckDBStorage(_load_config(db_path).db_path)
    try:
        record = await storage.add_provider(
            name,
            kind,
            base_url=base_url,
            api_key=api_key,
            supports_response_api=response_api,
            is_active=activate,
        )
        console.print(f"[green]✅ Added provider {record.id}: {rich_escape(record.name)}[/green]")
    finally:
        storage.close()


@app.command()
def providers(db_path: Optional[str] = DB_PATH_OPTION):
    """List configured providers."""
    asyncio.run(_list_providers(db_path))


async def _list_providers(db_path: Optional[str]):
    storage = DuckDBStorage(_load_config(db_path).db_path)
    try:
        records = await storage.list_providers()
        if not records:
            console.print("[yellow]No providers configured. Use add-provider.[/yellow]")
            return
        table = Table(title="🔌 Providers", show_header=True)
        table.add_column("ID", style="cyan")
        table.add_column("Name", style="white")
        table.add_column("Type", style="blue")
        table.add_column("Base URL", style="dim")
        table.add_column("Active", style="green")
        for record in records:
            table.add_row(
                str(record.id),
                record.name,
                record.type.value,
                record.base_url or "(default)",
                "✓" if record.is_active else "",
            )
        console.print(table)
    finally:
        storage.close()


@app.command()
def models(
    provider_id: Optional[int] = typer.Option(None, "--provider", "-p", help="Provider id (default: active)"),
    db_path: Optional[str] = DB_PATH_OPTION,
):
    """List the models of a provider."""
    asyncio.run(_list_models(provider_id, db_path))


async def _list_models(provider_id: Optional[int], db_path: Optional[str]):
    orchestrator = create_orchestrator(_load_config(db_path))
    try:
        infos = await orchestrator.model_manager.list_models(provider_id)
        table = Table(title="🧠 Models", show_header=True)
        table.add_column("ID", style="cyan")
        table.add_column("Name", style="white")
        table.add_column("Protocol", style="blue")
        table.add_column("Tools", style="yellow")
        table.add_column("Images", style="yellow")
        table.add_column("Source", style="dim")
        for info in infos:
            table.add_row(
                info.id,
                info.name,
                info.protocol.value,
                "✓" if info.supports_tools else "",
                "✓" if info.supports_images else "",
                "manual" if info.is_manual else "api",
                style=None if info.is_enabled else "dim",
            )
        console.print(table)
    except ConfigurationError as e:
        console.print(f"[red]❌ {e}[/red]")
    finally:
        await orchestrator.aclose()
        orchestrator.storage.close()


@app.command()
def add_model(
    provider_id: int = typer.Argument(help="Provider id"),
    model_id: str = typer.Argument(help="Model id sent to the provider API"),
    name: Optional[str] = typer.Option(None, "--name", help="Display name"),
    model_uuid: Optional[str] = typer.Option(
        None, "--uuid", help="Key for this model; use an API model id to override that model"
    ),
    context_window: Optional[int] = typer.Option(None, "--context-window"),
    max_tokens: Optional[int] = typer.Option(None, "--max-tokens"),
    input_cost: Optional[float] = typer.Option(None, "--input-cost", help="USD per 1k input tokens"),
    output_cost: Optional[float] = typer.Option(None, "--output-cost", help="USD per 1k output tokens"),
    system_prompt: Optional[str] = typer.Option(None, "--system", help="Default system prompt"),
    db_path: Optional[str] = DB_PATH_OPTION,
):
    """Register a model manually."""
    model = ManualModel(
        uuid=model_uuid or str(uuid.uuid4()),
        provider_id=provider_id,
        model_id=model_id,
        name=name or model_id,
        context_window=context_window,
        max_tokens=max_tokens,
        input_cost_per_1k=input_cost,
        output_cost_per_1k=output_cost,
        default_system_prompt=system_prompt,
    )
    asyncio.run(_add_model(model, db_path))


async def _add_model(model: ManualModel, db_path: Optional[str]):
    storage = DuckDBStorage(_load_config(db_path).db_path)
    try:
        if await storage.get_provider(model.provider_id) is None:
            console.print(f"[red]❌ Provider {model.provider_id} not found[/red]")
            raise typer.Exit(1)
        saved = await storage.add_manual_model(model)
        console.print(f"[green]✅ Added model {rich_escape(saved.name)} ({saved.uuid})[/green]")
    finally:
        storage.close()


@app.command()
def add_mcp_server(
    name: str = typer.Argument(help="Server name (used as the tool name prefix)"),
    url: str = typer.Argument(help="Server URL"),
    transport: str = typer.Option(
        McpTransportType.STREAMABLE_HTTP.value,
        "--transport",
        help="streamable_http or sse",
    ),
    bearer_token: Optional[str] = typer.Option(None, "--bearer-token", help="Bearer token"),
    db_path: Optional[str] = DB_PATH_OPTION,
):
    """Register a remote MCP tool server."""
    try:
        kind = McpTransportType(transport)
    except ValueError:
        console.print(f"[red]❌ Unknown transport: {transport}[/red]")
        raise typer.Exit(1)
    asyncio.run(_add_mcp_server(name, url, kind, bearer_token, db_path))


async def _add_mcp_server(name, url, kind, bearer_token, db_path):
    storage = DuckDBStorage(_load_config(db_path).db_path)
    try:
        server = await storage.add_mcp_server(
            name,
            url,
            type=kind,
            auth_type=McpAuthType.BEARER if bearer_token else McpAuthType.NONE,
            bearer_token=bearer_token,
        )
        console.print(f"[green]✅ Added MCP server {server.id}: {rich_escape(server.name)}[/green]")
    except ValueError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise typer.Exit(1)
    finally:
        storage.close()


# ----------------------------------------------------------------------
# Backup
# ----------------------------------------------------------------------


@app.command()
def export(
    output_file: Path = typer.Argument(help="Backup file to write"),
    category: Optional[List[str]] = typer.Option(
        None,
        "--category",
        "-c",
        help=f"Category to include (repeatable): {', '.join(c.value for c in BackupCategory)}",
    ),
    db_path: Optional[str] = DB_PATH_OPTION,
):
    """Export threads and configuration to a JSON backup."""
    try:
        categories = [BackupCategory(c) for c in category] if category else None
    except ValueError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise typer.Exit(1)
    asyncio.run(_export(output_file, categories, db_path))


async def _export(output_file: Path, categories, db_path: Optional[str]):
    storage = DuckDBStorage(_load_config(db_path).db_path)
    try:
        data = await export_backup(storage, categories)
        output_file.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        console.print(f"[green]💾 Exported {', '.join(data['categories'])} to {output_file}[/green]")
    finally:
        storage.close()


@app.command(name="import")
def import_(
    input_file: Path = typer.Argument(help="Backup file to read"),
    replace: bool = typer.Option(False, "--replace", help="Replace existing data instead of merging"),
    db_path: Optional[str] = DB_PATH_OPTION,
):
    """Import a JSON backup."""
    asyncio.run(_import(input_file, replace, db_path))


async def _import(input_file: Path, replace: bool, db_path: Optional[str]):
    storage = DuckDBStorage(_load_config(db_path).db_path)
    try:
        data = json.loads(input_file.read_text(encoding="utf-8"))
        counts = await import_backup(storage, data, replace=replace)
        summary = ", ".join(f"{count} {kind}" for kind, count in counts.items())
        console.print(f"[green]📥 Imported {summary}[/green]")
    except (OSError, json.JSONDecodeError, BackupError) as e:
        console.print(f"[red]❌ Import failed: {e}[/red]")
        raise typer.Exit(1)
    finally:
        storage.close()


@app.command()
def version():
    """Show version information."""
    from . import __version__

    console.print(f"[bold green]branchchat v{__version__}[/bold green]")


def main():
    """Main CLI entry point."""
    app()


if __name__ == "__main__":
    sys.exit(main())
