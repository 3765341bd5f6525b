"""DuckDB connection handling and schema management."""

import logging
import random
import time
from contextlib import contextmanager
from typing import Iterator

import duckdb


logger = logging.getLogger(__name__)

LOCK_RETRY_ATTEMPTS = 300
LOCK_RETRY_BASE_DELAY = 0.1
LOCK_RETRY_MAX_DELAY = 10.0


def _lock_backoff(attempt: int, base_delay: float, max_delay: float) -> float:
    jitter = random.uniform(0, 0.1)
    return min(base_delay * 2 ** (attempt - 1) + jitter, max_delay)


def _connect(
    db_path: str, max_attempts: int, base_delay: float, max_delay: float
) -> duckdb.DuckDBPyConnection:
    """Open ``db_path``, waiting out another process holding the file lock."""
    for attempt in range(1, max_attempts + 1):
        try:
            return duckdb.connect(db_path)
        except duckdb.IOException as e:
            if attempt == max_attempts:
                logger.error(f"Giving up on {db_path} after {attempt} attempts: {e}")
                raise
            delay = _lock_backoff(attempt, base_delay, max_delay)
            logger.warning(f"{db_path} is locked, attempt {attempt}/{max_attempts}, waiting {delay:.2f}s")
            time.sleep(delay)
    raise ValueError("max_attempts must be at least 1")


@contextmanager
def get_db_connection(
    db_path: str,
    max_attempts: int = LOCK_RETRY_ATTEMPTS,
    base_delay: float = LOCK_RETRY_BASE_DELAY,
    max_delay: float = LOCK_RETRY_MAX_DELAY,
    init_schema: bool = False,
) -> Iterator[duckdb.DuckDBPyConnection]:
    """Yield a connection to a DuckDB file and close it afterwards.

    Set ``init_schema`` to create missing tables and apply migrations
    before the connection is handed out.
    """
    connection = _connect(db_path, max_attempts, base_delay, max_delay)
    try:
        if init_schema:
            _init_schema(connection)
        yield connection
    finally:
        connection.close()


def _column_exists(conn: duckdb.DuckDBPyConnection, table: str, column: str) -> bool:
    result = conn.execute(
        """
        SELECT 1 FROM information_schema.columns
        WHERE table_name = ? AND column_name = ?
        """,
        (table, column),
    ).fetchone()
    return result is not None


def _run_migrations(conn: duckdb.DuckDBPyConnection) -> None:
    """Bring databases created by older versions up to the current schema."""
    logger.debug("Checking schema migrations")

    # Migration 1: reasoning summaries from the item-based protocol
    if not _column_exists(conn, "messages", "reasoning_summary"):
        logger.debug("Adding reasoning_summary column to messages table...")
        conn.execute("ALTER TABLE messages ADD COLUMN reasoning_summary TEXT")

    # Migration 2: interactive tool UI descriptors
    if not _column_exists(conn, "messages", "mcp_app_ui"):
        logger.debug("Adding mcp_app_ui column to messages table...")
        conn.execute("ALTER TABLE messages ADD COLUMN mcp_app_ui JSON")

    logger.debug("Schema migrations done")


def _init_schema(conn: duckdb.DuckDBPyConnection) -> None:
    """Create all tables and sequences that do not exist yet."""
    conn.execute("""
        CREATE SEQUENCE IF NOT EXISTS threads_seq;
        CREATE TABLE IF NOT EXISTS threads (
            id INTEGER PRIMARY KEY DEFAULT nextval('threads_seq'),
            title TEXT NOT NULL,
            active_leaf_id INTEGER,
            active_leaf_set BOOLEAN DEFAULT FALSE,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    # Parent edges are not foreign keys: subtree deletes remove rows in
    # arbitrary order inside one transaction
    conn.execute("""
        CREATE SEQUENCE IF NOT EXISTS messages_seq;
        CREATE TABLE IF NOT EXISTS messages (
            id INTEGER PRIMARY KEY DEFAULT nextval('messages_seq'),
            thread_id INTEGER NOT NULL,
            parent_id INTEGER,
            role TEXT NOT NULL,
            content TEXT NOT NULL DEFAULT '',
            tool_calls JSON,
            tool_call_id TEXT,
            reasoning TEXT,
            usage JSON,
            cost DOUBLE,
            model TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(thread_id)"
    )

    conn.execute("""
        CREATE SEQUENCE IF NOT EXISTS files_seq;
        CREATE TABLE IF NOT EXISTS files (
            id INTEGER PRIMARY KEY DEFAULT nextval('files_seq'),
            thread_id INTEGER NOT NULL,
            message_id INTEGER NOT NULL,
            file_name TEXT NOT NULL,
            mime_type TEXT NOT NULL,
            size INTEGER NOT NULL,
            is_generated BOOLEAN DEFAULT FALSE,
            data BLOB,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)
    conn.execute("CREATE INDEX IF NOT EXISTS idx_files_message ON files(message_id)")

    conn.execute("""
        CREATE TABLE IF NOT EXISTS thread_settings (
            thread_id INTEGER PRIMARY KEY,
            provider_id INTEGER,
            model_id TEXT,
            system_prompt TEXT,
            context_window INTEGER,
            max_tokens INTEGER,
            extra_params JSON
        )
    """)

    conn.execute("""
        CREATE SEQUENCE IF NOT EXISTS providers_seq;
        CREATE TABLE IF NOT EXISTS providers (
            id INTEGER PRIMARY KEY DEFAULT nextval('providers_seq'),
            name TEXT NOT NULL,
            type TEXT NOT NULL,
            base_url TEXT,
            api_key TEXT,
            supports_response_api BOOLEAN DEFAULT FALSE,
            is_active BOOLEAN DEFAULT FALSE,
            default_protocol TEXT,
            sort_order INTEGER DEFAULT 0
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS model_configs (
            provider_id INTEGER NOT NULL,
            model_id TEXT NOT NULL,
            enable_stream BOOLEAN,
            is_enabled BOOLEAN,
            sort_order INTEGER,
            supports_tools BOOLEAN,
            supports_images BOOLEAN,
            protocol TEXT,
            PRIMARY KEY (provider_id, model_id)
        )
    """)

    conn.execute("""
        CREATE SEQUENCE IF NOT EXISTS manual_models_seq;
        CREATE TABLE IF NOT EXISTS manual_models (
            id INTEGER PRIMARY KEY DEFAULT nextval('manual_models_seq'),
            uuid TEXT NOT NULL UNIQUE,
            provider_id INTEGER NOT NULL,
            model_id TEXT NOT NULL,
            name TEXT NOT NULL,
            context_window INTEGER,
            max_tokens INTEGER,
            input_cost_per_1k DOUBLE,
            output_cost_per_1k DOUBLE,
            description TEXT,
            is_enabled BOOLEAN DEFAULT TRUE,
            enable_stream BOOLEAN,
            supports_tools BOOLEAN,
            supports_images BOOLEAN,
            default_system_prompt TEXT,
            extra_params JSON,
            protocol TEXT
        )
    """)

    conn.execute("""
        CREATE SEQUENCE IF NOT EXISTS mcp_servers_seq;
        CREATE TABLE IF NOT EXISTS mcp_servers (
            id INTEGER PRIMARY KEY DEFAULT nextval('mcp_servers_seq'),
            name TEXT NOT NULL UNIQUE,
            type TEXT NOT NULL DEFAULT 'streamable_http',
            url TEXT NOT NULL,
            auth_type TEXT NOT NULL DEFAULT 'none',
            bearer_token TEXT,
            is_active BOOLEAN DEFAULT TRUE
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS app_settings (
            key TEXT PRIMARY KEY,
            value JSON
        )
    """)

    # Create token usage table for tracking API costs
    conn.execute("""
        CREATE SEQUENCE IF NOT EXISTS token_usage_seq;
        CREATE TABLE IF NOT EXISTS token_usage (
            id INTEGER PRIMARY KEY DEFAULT nextval('token_usage_seq'),
            thread_id INTEGER NOT NULL,
            message_id INTEGER,
            timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            input_tokens INTEGER,
            output_tokens INTEGER,
            total_tokens INTEGER,
            cost_usd DOUBLE,
            duration_ms INTEGER,
            model TEXT
        )
    """)
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_token_usage_thread ON token_usage(thread_id)"
    )

    _run_migrations(conn)

    logger.debug("Schema ready")
