"""DuckDB storage layer for threads, messages, files and configuration."""

import json
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

import duckdb

from .db_utils import _init_schema, get_db_connection
from .models import (
    UNSET,
    Attachment,
    LocalFile,
    ManualModel,
    McpAppUiData,
    McpAuthType,
    McpServerConfig,
    McpTransportType,
    Message,
    MessageRole,
    ModelConfigRecord,
    Protocol,
    ProviderRecord,
    ProviderType,
    Thread,
    ThreadSettings,
    TokenUsage,
    ToolCall,
)

logger = logging.getLogger(__name__)

MESSAGE_COLUMNS = """
    id, thread_id, parent_id, role, content, tool_calls, tool_call_id,
    reasoning, reasoning_summary, usage, cost, model, mcp_app_ui, created_at
"""

FILE_COLUMNS = """
    id, thread_id, message_id, file_name, mime_type, size, is_generated, data, created_at
"""


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


def _dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value)


class DuckDBStorage:
    """DuckDB storage implementation for conversation trees and client configuration."""

    def __init__(self, db_path: str):
        """Initialize storage with database path.

        Args:
            db_path: Path to the DuckDB database file, or ":memory:" for in-memory
        """
        self.db_path = db_path
        self._is_memory_db = db_path == ":memory:"
        self._persistent_conn = None

        if self._is_memory_db:
            self._persistent_conn = duckdb.connect(db_path)
            _init_schema(self._persistent_conn)
        else:
            with get_db_connection(self.db_path, init_schema=True):
                pass

    def _ensure_schema_exists(self, conn: duckdb.DuckDBPyConnection) -> None:
        """Check if schema exists and initialize if missing."""
        try:
            conn.execute("SELECT 1 FROM messages LIMIT 0")
        except duckdb.CatalogException:
            logger.warning(f"Schema missing in {self.db_path}, reinitializing...")
            _init_schema(conn)

    @contextmanager
    def _get_connection(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Get appropriate database connection with proper cleanup."""
        if self._is_memory_db:
            yield self._persistent_conn
        else:
            with get_db_connection(self.db_path, init_schema=False) as conn:
                self._ensure_schema_exists(conn)
                yield conn

    @contextmanager
    def transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Run the enclosed statements in a single transaction.

        Rolls back and re-raises on any exception.
        """
        with self._get_connection() as conn:
            conn.execute("BEGIN TRANSACTION")
            try:
                yield conn
            except Exception:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    def close(self):
        """Close persistent connection if exists."""
        if self._persistent_conn:
            self._persistent_conn.close()
            self._persistent_conn = None

    @staticmethod
    def _fetch_dicts(result) -> List[Dict[str, Any]]:
        columns = [d[0] for d in result.description]
        return [dict(zip(columns, row)) for row in result.fetchall()]

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    async def create_thread(self, title: str) -> Thread:
        now = datetime.now()
        with self._get_connection() as conn:
            result = conn.execute(
                """
                INSERT INTO threads (title, active_leaf_id, active_leaf_set, created_at, updated_at)
                VALUES (?, NULL, FALSE, ?, ?)
                RETURNING id, title, active_leaf_id, active_leaf_set, created_at, updated_at
                """,
                (title, now, now),
            )
            return Thread.model_validate(self._fetch_dicts(result)[0])

    async def get_thread(self, thread_id: int) -> Optional[Thread]:
        with self._get_connection() as conn:
            result = conn.execute(
                """
                SELECT id, title, active_leaf_id, active_leaf_set, created_at, updated_at
                FROM threads WHERE id = ?
                """,
                (thread_id,),
            )
            rows = self._fetch_dicts(result)
            return Thread.model_validate(rows[0]) if rows else None

    async def list_threads(self) -> List[Thread]:
        """List threads, most recently updated first."""
        with self._get_connection() as conn:
            result = conn.execute(
                """
                SELECT id, title, active_leaf_id, active_leaf_set, created_at, updated_at
                FROM threads ORDER BY updated_at DESC, id DESC
                """
            )
            return [Thread.model_validate(row) for row in self._fetch_dicts(result)]

    async def rename_thread(self, thread_id: int, title: str) -> bool:
        with self._get_connection() as conn:
            result = conn.execute(
                "UPDATE threads SET title = ?, updated_at = ? WHERE id = ? RETURNING id",
                (title, datetime.now(), thread_id),
            ).fetchone()
            return result is not None

    async def set_active_leaf(self, thread_id: int, leaf_id: Optional[int]) -> None:
        """Point the thread at ``leaf_id`` (``None`` selects the root)."""
        with self._get_connection() as conn:
            self._set_active_leaf(conn, thread_id, leaf_id)

    @staticmethod
    def _set_active_leaf(
        conn: duckdb.DuckDBPyConnection, thread_id: int, leaf_id: Optional[int]
    ) -> None:
        conn.execute(
            """
            UPDATE threads
            SET active_leaf_id = ?, active_leaf_set = TRUE, updated_at = ?
            WHERE id = ?
            """,
            (leaf_id, datetime.now(), thread_id),
        )

    async def delete_thread(self, thread_id: int) -> bool:
        """Delete a thread with its messages, files, settings and usage records."""
        with self.transaction() as conn:
            exists = conn.execute(
                "SELECT 1 FROM threads WHERE id = ?", (thread_id,)
            ).fetchone()
            if not exists:
                return False
            conn.execute("DELETE FROM files WHERE thread_id = ?", (thread_id,))
            conn.execute("DELETE FROM messages WHERE thread_id = ?", (thread_id,))
            conn.execute("DELETE FROM thread_settings WHERE thread_id = ?", (thread_id,))
            conn.execute("DELETE FROM token_usage WHERE thread_id = ?", (thread_id,))
            conn.execute("DELETE FROM threads WHERE id = ?", (thread_id,))
        logger.info(f"Deleted thread {thread_id}")
        return True

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def add_message(
        self,
        thread_id: int,
        role: MessageRole,
        content: str = "",
        parent_id: Optional[int] = None,
        tool_calls: Optional[List[ToolCall]] = None,
        tool_call_id: Optional[str] = None,
        reasoning: Optional[str] = None,
        reasoning_summary: Optional[str] = None,
        usage: Optional[TokenUsage] = None,
        cost: Optional[float] = None,
        model: Optional[str] = None,
        mcp_app_ui: Optional[McpAppUiData] = None,
        attachments: Sequence[Attachment] = (),
        generated_files: Sequence[Attachment] = (),
    ) -> Message:
        """Persist a message (and its files) and return it.

        The message is written together with its files in one transaction.
        The thread's active leaf is not changed here.
        """
        with self.transaction() as conn:
            message = self._insert_message(
                conn,
                thread_id=thread_id,
                role=role,
                content=content,
                parent_id=parent_id,
                tool_calls=tool_calls,
                tool_call_id=tool_call_id,
                reasoning=reasoning,
                reasoning_summary=reasoning_summary,
                usage=usage,
                cost=cost,
                model=model,
                mcp_app_ui=mcp_app_ui,
            )
            self._insert_files(conn, thread_id, message.id, attachments, is_generated=False)
            self._insert_files(conn, thread_id, message.id, generated_files, is_generated=True)
            conn.execute(
                "UPDATE threads SET updated_at = ? WHERE id = ?",
                (datetime.now(), thread_id),
            )
        return message

    def _insert_message(
        self,
        conn: duckdb.DuckDBPyConnection,
        thread_id: int,
        role: MessageRole,
        content: str = "",
        parent_id: Optional[int] = None,
        tool_calls: Optional[List[ToolCall]] = None,
        tool_call_id: Optional[str] = None,
        reasoning: Optional[str] = None,
        reasoning_summary: Optional[str] = None,
        usage: Optional[TokenUsage] = None,
        cost: Optional[float] = None,
        model: Optional[str] = None,
        mcp_app_ui: Optional[McpAppUiData] = None,
        created_at: Optional[datetime] = None,
    ) -> Message:
        result = conn.execute(
            f"""
            INSERT INTO messages (
                thread_id, parent_id, role, content, tool_calls, tool_call_id,
                reasoning, reasoning_summary, usage, cost, model, mcp_app_ui, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING {MESSAGE_COLUMNS}
            """,
            (
                thread_id,
                parent_id,
                role.value,
                content or "",
                _dump_json([tc.model_dump() for tc in tool_calls]) if tool_calls else None,
                tool_call_id,
                reasoning,
                reasoning_summary,
                _dump_json(usage.model_dump()) if usage else None,
                cost,
                model,
                _dump_json(mcp_app_ui.model_dump()) if mcp_app_ui else None,
                created_at or datetime.now(),
            ),
        )
        return Message.model_validate(self._fetch_dicts(result)[0])

    async def get_message(self, message_id: int) -> Optional[Message]:
        with self._get_connection() as conn:
            result = conn.execute(
                f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE id = ?", (message_id,)
            )
            rows = self._fetch_dicts(result)
            return Message.model_validate(rows[0]) if rows else None

    async def get_thread_messages(self, thread_id: int) -> List[Message]:
        """All messages of a thread in creation order."""
        with self._get_connection() as conn:
            result = conn.execute(
                f"""
                SELECT {MESSAGE_COLUMNS} FROM messages
                WHERE thread_id = ?
                ORDER BY created_at, id
                """,
                (thread_id,),
            )
            return [Message.model_validate(row) for row in self._fetch_dicts(result)]

    async def update_message(
        self,
        message_id: int,
        content: str,
        removed_file_ids: Iterable[int] = (),
        new_files: Sequence[Attachment] = (),
    ) -> Optional[Message]:
        """Replace a message's content and adjust its files in one transaction."""
        removed = list(removed_file_ids)
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT thread_id FROM messages WHERE id = ?", (message_id,)
            ).fetchone()
            if row is None:
                return None
            thread_id = row[0]
            conn.execute(
                "UPDATE messages SET content = ? WHERE id = ?", (content, message_id)
            )
            if removed:
                conn.execute(
                    f"DELETE FROM files WHERE message_id = ? AND id IN ({_placeholders(removed)})",
                    (message_id, *removed),
                )
            self._insert_files(conn, thread_id, message_id, new_files, is_generated=False)
        return await self.get_message(message_id)

    async def delete_messages(
        self,
        thread_id: int,
        message_ids: Sequence[int],
        new_active_leaf: Any = UNSET,
    ) -> None:
        """Delete messages and their files, optionally moving the active leaf.

        Everything happens in one transaction so a reader never sees the leaf
        pointing at a deleted message.
        """
        with self.transaction() as conn:
            self._delete_messages(conn, message_ids)
            if new_active_leaf is not UNSET:
                self._set_active_leaf(conn, thread_id, new_active_leaf)

    @staticmethod
    def _delete_messages(conn: duckdb.DuckDBPyConnection, message_ids: Sequence[int]) -> None:
        ids = list(message_ids)
        if not ids:
            return
        conn.execute(
            f"DELETE FROM files WHERE message_id IN ({_placeholders(ids)})", ids
        )
        conn.execute(f"DELETE FROM messages WHERE id IN ({_placeholders(ids)})", ids)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    @staticmethod
    def _insert_files(
        conn: duckdb.DuckDBPyConnection,
        thread_id: int,
        message_id: int,
        files: Sequence[Attachment],
        is_generated: bool,
    ) -> None:
        for attachment in files:
            conn.execute(
                """
                INSERT INTO files (thread_id, message_id, file_name, mime_type, size, is_generated, data, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    thread_id,
                    message_id,
                    attachment.file_name,
                    attachment.mime_type,
                    len(attachment.data),
                    is_generated,
                    attachment.data,
                    datetime.now(),
                ),
            )

    async def add_files(
        self,
        thread_id: int,
        message_id: int,
        files: Sequence[Attachment],
        is_generated: bool = False,
    ) -> List[LocalFile]:
        with self._get_connection() as conn:
            self._insert_files(conn, thread_id, message_id, files, is_generated)
        return await self.get_message_files(message_id)

    async def get_message_files(self, message_id: int) -> List[LocalFile]:
        with self._get_connection() as conn:
            result = conn.execute(
                f"SELECT {FILE_COLUMNS} FROM files WHERE message_id = ? ORDER BY id",
                (message_id,),
            )
            return [LocalFile.model_validate(row) for row in self._fetch_dicts(result)]

    async def get_files_for_messages(
        self, message_ids: Sequence[int]
    ) -> Dict[int, List[LocalFile]]:
        """Files grouped by message id, for building a request in one query."""
        ids = list(message_ids)
        grouped: Dict[int, List[LocalFile]] = {}
        if not ids:
            return grouped
        with self._get_connection() as conn:
            result = conn.execute(
                f"""
                SELECT {FILE_COLUMNS} FROM files
                WHERE message_id IN ({_placeholders(ids)})
                ORDER BY id
                """,
                ids,
            )
            for row in self._fetch_dicts(result):
                file = LocalFile.model_validate(row)
                grouped.setdefault(file.message_id, []).append(file)
        return grouped

    async def get_thread_files(self, thread_id: int) -> List[LocalFile]:
        with self._get_connection() as conn:
            result = conn.execute(
                f"SELECT {FILE_COLUMNS} FROM files WHERE thread_id = ? ORDER BY id",
                (thread_id,),
            )
            return [LocalFile.model_validate(row) for row in self._fetch_dicts(result)]

    # ------------------------------------------------------------------
    # Thread settings
    # ------------------------------------------------------------------

    async def get_thread_settings(self, thread_id: int) -> Optional[ThreadSettings]:
        with self._get_connection() as conn:
            result = conn.execute(
                """
                SELECT thread_id, provider_id, model_id, system_prompt,
                       context_window, max_tokens, extra_params
                FROM thread_settings WHERE thread_id = ?
                """,
                (thread_id,),
            )
            rows = self._fetch_dicts(result)
            return ThreadSettings.model_validate(rows[0]) if rows else None

    async def save_thread_settings(self, settings: ThreadSettings) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO thread_settings (
                    thread_id, provider_id, model_id, system_prompt,
                    context_window, max_tokens, extra_params
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    settings.thread_id,
                    settings.provider_id,
                    settings.model_id,
                    settings.system_prompt,
                    settings.context_window,
                    settings.max_tokens,
                    _dump_json(settings.extra_params),
                ),
            )

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    _PROVIDER_SELECT = """
        SELECT id, name, type, base_url, api_key, supports_response_api,
               is_active, default_protocol, sort_order
        FROM providers
    """

    async def add_provider(
        self,
        name: str,
        type: ProviderType,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        supports_response_api: bool = False,
        is_active: bool = False,
        default_protocol: Optional[Protocol] = None,
    ) -> ProviderRecord:
        """Register a provider. Activating it deactivates every other provider."""
        with self.transaction() as conn:
            if is_active:
                conn.execute("UPDATE providers SET is_active = FALSE WHERE is_active")
            order_row = conn.execute(
                "SELECT COALESCE(MAX(sort_order), -1) + 1 FROM providers"
            ).fetchone()
            result = conn.execute(
                """
                INSERT INTO providers (
                    name, type, base_url, api_key, supports_response_api,
                    is_active, default_protocol, sort_order
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                RETURNING id
                """,
                (
                    name,
                    type.value,
                    base_url,
                    api_key,
                    supports_response_api,
                    is_active,
                    default_protocol.value if default_protocol else None,
                    order_row[0],
                ),
            ).fetchone()
        return await self.get_provider(result[0])

    async def get_provider(self, provider_id: int) -> Optional[ProviderRecord]:
        with self._get_connection() as conn:
            result = conn.execute(f"{self._PROVIDER_SELECT} WHERE id = ?", (provider_id,))
            rows = self._fetch_dicts(result)
            return ProviderRecord.model_validate(rows[0]) if rows else None

    async def list_providers(self) -> List[ProviderRecord]:
        with self._get_connection() as conn:
            result = conn.execute(f"{self._PROVIDER_SELECT} ORDER BY sort_order, id")
            return [ProviderRecord.model_validate(row) for row in self._fetch_dicts(result)]

    async def get_active_provider(self) -> Optional[ProviderRecord]:
        with self._get_connection() as conn:
            result = conn.execute(
                f"{self._PROVIDER_SELECT} WHERE is_active ORDER BY sort_order, id LIMIT 1"
            )
            rows = self._fetch_dicts(result)
            return ProviderRecord.model_validate(rows[0]) if rows else None

    async def set_active_provider(self, provider_id: int) -> bool:
        with self.transaction() as conn:
            exists = conn.execute(
                "SELECT 1 FROM providers WHERE id = ?", (provider_id,)
            ).fetchone()
            if not exists:
                return False
            conn.execute("UPDATE providers SET is_active = (id = ?)", (provider_id,))
        return True

    async def delete_provider(self, provider_id: int) -> bool:
        """Delete a provider together with its model configs and manual models."""
        with self.transaction() as conn:
            result = conn.execute(
                "DELETE FROM providers WHERE id = ? RETURNING id", (provider_id,)
            ).fetchone()
            conn.execute("DELETE FROM model_configs WHERE provider_id = ?", (provider_id,))
            conn.execute("DELETE FROM manual_models WHERE provider_id = ?", (provider_id,))
        return result is not None

    # ------------------------------------------------------------------
    # Model configuration
    # ------------------------------------------------------------------

    async def save_model_config(self, record: ModelConfigRecord) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO model_configs (
                    provider_id, model_id, enable_stream, is_enabled, sort_order,
                    supports_tools, supports_images, protocol
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.provider_id,
                    record.model_id,
                    record.enable_stream,
                    record.is_enabled,
                    record.sort_order,
                    record.supports_tools,
                    record.supports_images,
                    record.protocol.value if record.protocol else None,
                ),
            )

    async def get_model_configs(self, provider_id: int) -> Dict[str, ModelConfigRecord]:
        """Stored model configs of a provider keyed by model id."""
        with self._get_connection() as conn:
            result = conn.execute(
                """
                SELECT provider_id, model_id, enable_stream, is_enabled, sort_order,
                       supports_tools, supports_images, protocol
                FROM model_configs WHERE provider_id = ?
                """,
                (provider_id,),
            )
            records = [ModelConfigRecord.model_validate(row) for row in self._fetch_dicts(result)]
        return {record.model_id: record for record in records}

    _MANUAL_MODEL_SELECT = """
        SELECT id, uuid, provider_id, model_id, name, context_window, max_tokens,
               input_cost_per_1k, output_cost_per_1k, description, is_enabled,
               enable_stream, supports_tools, supports_images, default_system_prompt,
               extra_params, protocol
        FROM manual_models
    """

    async def add_manual_model(self, model: ManualModel) -> ManualModel:
        with self._get_connection() as conn:
            result = conn.execute(
                """
                INSERT INTO manual_models (
                    uuid, provider_id, model_id, name, context_window, max_tokens,
                    input_cost_per_1k, output_cost_per_1k, description, is_enabled,
                    enable_stream, supports_tools, supports_images, default_system_prompt,
                    extra_params, protocol
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                RETURNING id
                """,
                (
                    model.uuid,
                    model.provider_id,
                    model.model_id,
                    model.name,
                    model.context_window,
                    model.max_tokens,
                    model.input_cost_per_1k,
                    model.output_cost_per_1k,
                    model.description,
                    model.is_enabled,
                    model.enable_stream,
                    model.supports_tools,
                    model.supports_images,
                    model.default_system_prompt,
                    _dump_json(model.extra_params),
                    model.protocol.value if model.protocol else None,
                ),
            ).fetchone()
        return model.model_copy(update={"id": result[0]})

    async def get_manual_models(self, provider_id: int) -> List[ManualModel]:
        with self._get_connection() as conn:
            result = conn.execute(
                f"{self._MANUAL_MODEL_SELECT} WHERE provider_id = ? ORDER BY id",
                (provider_id,),
            )
            return [ManualModel.model_validate(row) for row in self._fetch_dicts(result)]

    async def delete_manual_model(self, uuid: str) -> bool:
        with self._get_connection() as conn:
            result = conn.execute(
                "DELETE FROM manual_models WHERE uuid = ? RETURNING id", (uuid,)
            ).fetchone()
            return result is not None

    # ------------------------------------------------------------------
    # MCP servers
    # ------------------------------------------------------------------

    _MCP_SELECT = """
        SELECT id, name, type, url, auth_type, bearer_token, is_active
        FROM mcp_servers
    """

    async def add_mcp_server(
        self,
        name: str,
        url: str,
        type: McpTransportType = McpTransportType.STREAMABLE_HTTP,
        auth_type: McpAuthType = McpAuthType.NONE,
        bearer_token: Optional[str] = None,
        is_active: bool = True,
    ) -> McpServerConfig:
        if "__" in name:
            raise ValueError("Server name must not contain '__'")
        with self._get_connection() as conn:
            result = conn.execute(
                """
                INSERT INTO mcp_servers (name, type, url, auth_type, bearer_token, is_active)
                VALUES (?, ?, ?, ?, ?, ?)
                RETURNING id
                """,
                (name, type.value, url, auth_type.value, bearer_token, is_active),
            ).fetchone()
        return await self.get_mcp_server(result[0])

    async def get_mcp_server(self, server_id: int) -> Optional[McpServerConfig]:
        with self._get_connection() as conn:
            result = conn.execute(f"{self._MCP_SELECT} WHERE id = ?", (server_id,))
            rows = self._fetch_dicts(result)
            return McpServerConfig.model_validate(rows[0]) if rows else None

    async def get_mcp_server_by_name(self, name: str) -> Optional[McpServerConfig]:
        with self._get_connection() as conn:
            result = conn.execute(f"{self._MCP_SELECT} WHERE name = ?", (name,))
            rows = self._fetch_dicts(result)
            return McpServerConfig.model_validate(rows[0]) if rows else None

    async def list_mcp_servers(self, active_only: bool = False) -> List[McpServerConfig]:
        query = self._MCP_SELECT
        if active_only:
            query += " WHERE is_active"
        with self._get_connection() as conn:
            result = conn.execute(f"{query} ORDER BY id")
            return [McpServerConfig.model_validate(row) for row in self._fetch_dicts(result)]

    async def set_mcp_server_active(self, server_id: int, is_active: bool) -> bool:
        with self._get_connection() as conn:
            result = conn.execute(
                "UPDATE mcp_servers SET is_active = ? WHERE id = ? RETURNING id",
                (is_active, server_id),
            ).fetchone()
            return result is not None

    async def delete_mcp_server(self, server_id: int) -> bool:
        with self._get_connection() as conn:
            result = conn.execute(
                "DELETE FROM mcp_servers WHERE id = ? RETURNING id", (server_id,)
            ).fetchone()
            return result is not None

    # ------------------------------------------------------------------
    # App settings
    # ------------------------------------------------------------------

    async def get_setting(self, key: str, default: Any = None) -> Any:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT value FROM app_settings WHERE key = ?", (key,)
            ).fetchone()
        if row is None or row[0] is None:
            return default
        return json.loads(row[0])

    async def set_setting(self, key: str, value: Any) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO app_settings (key, value) VALUES (?, ?)",
                (key, json.dumps(value)),
            )

    # ------------------------------------------------------------------
    # Token usage
    # ------------------------------------------------------------------

    async def save_token_usage(
        self,
        thread_id: int,
        message_id: Optional[int] = None,
        input_tokens: Optional[int] = None,
        output_tokens: Optional[int] = None,
        cost_usd: Optional[float] = None,
        duration_ms: Optional[int] = None,
        model: Optional[str] = None,
    ) -> int:
        """Save token usage for one provider reply.

        Returns:
            The ID of the created usage record
        """
        total_tokens = (input_tokens or 0) + (output_tokens or 0)

        with self._get_connection() as conn:
            result = conn.execute(
                """
                INSERT INTO token_usage (
                    thread_id, message_id, input_tokens, output_tokens,
                    total_tokens, cost_usd, duration_ms, model
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                RETURNING id
                """,
                (
                    thread_id,
                    message_id,
                    input_tokens,
                    output_tokens,
                    total_tokens,
                    cost_usd,
                    duration_ms,
                    model,
                ),
            ).fetchone()
            return result[0] if result else 0

    async def get_thread_token_usage(self, thread_id: int) -> Dict[str, Any]:
        """Get aggregated token usage for a thread."""
        with self._get_connection() as conn:
            totals = conn.execute(
                """
                SELECT
                    COUNT(*) as turn_count,
                    COALESCE(SUM(input_tokens), 0) as total_input_tokens,
                    COALESCE(SUM(output_tokens), 0) as total_output_tokens,
                    COALESCE(SUM(total_tokens), 0) as total_tokens,
                    COALESCE(SUM(cost_usd), 0) as total_cost_usd,
                    COALESCE(SUM(duration_ms), 0) as total_duration_ms
                FROM token_usage
                WHERE thread_id = ?
                """,
                (thread_id,),
            ).fetchone()

        return {
            "turn_count": totals[0],
            "total_input_tokens": totals[1],
            "total_output_tokens": totals[2],
            "total_tokens": totals[3],
            "total_cost_usd": float(totals[4]),
            "total_duration_ms": totals[5],
        }
