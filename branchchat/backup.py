"""Export and import of threads and client configuration as JSON.

History ids are never reused on import: threads, messages and files get
fresh ids and parent links, active leaves and settings are remapped. Named
configuration (providers, MCP servers) and manual models (by uuid) are
upserted, so importing the same backup twice does not duplicate them.
"""

import base64
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import duckdb

from .models import (
    ManualModel,
    McpServerConfig,
    Message,
    ModelConfigRecord,
    ProviderRecord,
    ThreadSettings,
)
from .storage import DuckDBStorage, _dump_json, _placeholders
from .tools.gateway import ENABLED_BUILTIN_TOOLS_KEY, ENABLED_TOOLS_KEY

logger = logging.getLogger(__name__)

BACKUP_VERSION = 1
_TOOL_FLAG_KEYS = (ENABLED_TOOLS_KEY, ENABLED_BUILTIN_TOOLS_KEY)


class BackupCategory(Enum):
    HISTORY = "history"
    PROVIDERS = "providers"
    MODELS = "models"
    MCP = "mcp"


class BackupError(ValueError):
    """The backup document is malformed or from an unsupported version."""


def _parse_time(value: Optional[str]) -> datetime:
    return datetime.fromisoformat(value) if value else datetime.now()


# ----------------------------------------------------------------------
# Export
# ----------------------------------------------------------------------


async def _export_history(storage: DuckDBStorage) -> List[Dict[str, Any]]:
    provider_names = {p.id: p.name for p in await storage.list_providers()}
    threads = []
    for thread in await storage.list_threads():
        settings = await storage.get_thread_settings(thread.id)
        messages = await storage.get_thread_messages(thread.id)
        files = await storage.get_thread_files(thread.id)
        entry = thread.model_dump(mode="json")
        entry["settings"] = settings.model_dump(mode="json") if settings else None
        entry["provider_names"] = {}
        if settings and settings.provider_id in provider_names:
            entry["provider_names"][str(settings.provider_id)] = provider_names[settings.provider_id]
        entry["messages"] = [m.model_dump(mode="json") for m in messages]
        entry["files"] = [
            {
                "message_id": f.message_id,
                "file_name": f.file_name,
                "mime_type": f.mime_type,
                "is_generated": f.is_generated,
                "data": base64.b64encode(f.data).decode("ascii"),
                "created_at": f.created_at.isoformat() if f.created_at else None,
            }
            for f in files
        ]
        threads.append(entry)
    return threads


async def _export_models(storage: DuckDBStorage) -> Dict[str, Any]:
    manual_models = []
    configs = []
    for provider in await storage.list_providers():
        for model in await storage.get_manual_models(provider.id):
            entry = model.model_dump(mode="json", exclude={"id"})
            entry["provider_name"] = provider.name
            manual_models.append(entry)
        for record in (await storage.get_model_configs(provider.id)).values():
            entry = record.model_dump(mode="json")
            entry["provider_name"] = provider.name
            configs.append(entry)
    return {"manual_models": manual_models, "model_configs": configs}


async def export_backup(
    storage: DuckDBStorage, categories: Optional[Iterable[BackupCategory]] = None
) -> Dict[str, Any]:
    """Build a JSON-serializable backup of the selected categories (default: all)."""
    selected = list(categories) if categories is not None else list(BackupCategory)
    data: Dict[str, Any] = {
        "version": BACKUP_VERSION,
        "exported_at": datetime.now().isoformat(),
        "categories": [c.value for c in selected],
    }

    if BackupCategory.HISTORY in selected:
        data["history"] = await _export_history(storage)
    if BackupCategory.PROVIDERS in selected:
        data["providers"] = [
            p.model_dump(mode="json", exclude={"id"}) for p in await storage.list_providers()
        ]
    if BackupCategory.MODELS in selected:
        data["models"] = await _export_models(storage)
    if BackupCategory.MCP in selected:
        data["mcp"] = {
            "servers": [
                s.model_dump(mode="json", exclude={"id"}) for s in await storage.list_mcp_servers()
            ],
            "settings": {key: await storage.get_setting(key) for key in _TOOL_FLAG_KEYS},
        }

    logger.info(f"Exported backup with categories: {', '.join(data['categories'])}")
    return data


# ----------------------------------------------------------------------
# Import
# ----------------------------------------------------------------------


def _provider_ids_by_name(conn: duckdb.DuckDBPyConnection) -> Dict[str, int]:
    rows = conn.execute("SELECT name, id FROM providers ORDER BY id").fetchall()
    ids: Dict[str, int] = {}
    for name, provider_id in rows:
        ids.setdefault(name, provider_id)
    return ids


def _import_history(
    storage: DuckDBStorage,
    conn: duckdb.DuckDBPyConnection,
    threads: List[Dict[str, Any]],
    replace: bool,
    provider_names: Dict[int, str],
) -> Dict[str, int]:
    if replace:
        for table in ("files", "messages", "thread_settings", "token_usage", "threads"):
            conn.execute(f"DELETE FROM {table}")

    provider_ids = _provider_ids_by_name(conn)
    counts = {"threads": 0, "messages": 0, "files": 0}

    for entry in threads:
        row = conn.execute(
            """
            INSERT INTO threads (title, active_leaf_id, active_leaf_set, created_at, updated_at)
            VALUES (?, NULL, FALSE, ?, ?)
            RETURNING id
            """,
            (
                entry.get("title") or "Imported Chat",
                _parse_time(entry.get("created_at")),
                _parse_time(entry.get("updated_at")),
            ),
        ).fetchone()
        thread_id = row[0]
        counts["threads"] += 1

        # Parents always have smaller ids than their children
        id_map: Dict[int, int] = {}
        for raw in sorted(entry.get("messages", []), key=lambda m: m["id"]):
            message = Message.model_validate({**raw, "thread_id": thread_id})
            parent_id = None
            if message.parent_id is not None:
                parent_id = id_map.get(message.parent_id)
                if parent_id is None:
                    logger.warning(
                        f"Message {message.id} references missing parent {message.parent_id}, importing as root"
                    )
            inserted = storage._insert_message(
                conn,
                thread_id=thread_id,
                role=message.role,
                content=message.content,
                parent_id=parent_id,
                tool_calls=message.tool_calls,
                tool_call_id=message.tool_call_id,
                reasoning=message.reasoning,
                reasoning_summary=message.reasoning_summary,
                usage=message.usage,
                cost=message.cost,
                model=message.model,
                mcp_app_ui=message.mcp_app_ui,
                created_at=message.created_at,
            )
            id_map[message.id] = inserted.id
            counts["messages"] += 1

        for raw in entry.get("files", []):
            message_id = id_map.get(raw.get("message_id"))
            if message_id is None:
                continue
            data = base64.b64decode(raw.get("data") or "")
            conn.execute(
                """
                INSERT INTO files (thread_id, message_id, file_name, mime_type, size, is_generated, data, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    thread_id,
                    message_id,
                    raw["file_name"],
                    raw["mime_type"],
                    len(data),
                    bool(raw.get("is_generated")),
                    data,
                    _parse_time(raw.get("created_at")),
                ),
            )
            counts["files"] += 1

        if entry.get("active_leaf_set"):
            leaf = entry.get("active_leaf_id")
            if leaf is None or leaf in id_map:
                conn.execute(
                    "UPDATE threads SET active_leaf_id = ?, active_leaf_set = TRUE WHERE id = ?",
                    (id_map.get(leaf), thread_id),
                )

        if entry.get("settings"):
            settings = ThreadSettings.model_validate({**entry["settings"], "thread_id": thread_id})
            if settings.provider_id is not None:
                name = provider_names.get(settings.provider_id)
                settings.provider_id = provider_ids.get(name) if name else None
            conn.execute(
                """
                INSERT INTO thread_settings (
                    thread_id, provider_id, model_id, system_prompt,
                    context_window, max_tokens, extra_params
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    thread_id,
                    settings.provider_id,
                    settings.model_id,
                    settings.system_prompt,
                    settings.context_window,
                    settings.max_tokens,
                    _dump_json(settings.extra_params),
                ),
            )

    return counts


def _import_providers(
    conn: duckdb.DuckDBPyConnection, providers: List[Dict[str, Any]], replace: bool
) -> int:
    existing = _provider_ids_by_name(conn)
    imported = []
    for raw in providers:
        record = ProviderRecord.model_validate({**raw, "id": 0})
        values = (
            record.type.value,
            record.base_url,
            record.api_key,
            record.supports_response_api,
            record.is_active,
            record.default_protocol.value if record.default_protocol else None,
            record.sort_order,
        )
        if record.name in existing:
            provider_id = existing[record.name]
            conn.execute(
                """
                UPDATE providers SET type = ?, base_url = ?, api_key = ?, supports_response_api = ?,
                    is_active = ?, default_protocol = ?, sort_order = ?
                WHERE id = ?
                """,
                (*values, provider_id),
            )
        else:
            provider_id = conn.execute(
                """
                INSERT INTO providers (
                    type, base_url, api_key, supports_response_api,
                    is_active, default_protocol, sort_order, name
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                RETURNING id
                """,
                (*values, record.name),
            ).fetchone()[0]
            existing[record.name] = provider_id
        imported.append(provider_id)

    if replace:
        stale = [pid for pid in _provider_ids_by_name(conn).values() if pid not in imported]
        if stale:
            marks = _placeholders(stale)
            conn.execute(f"DELETE FROM model_configs WHERE provider_id IN ({marks})", stale)
            conn.execute(f"DELETE FROM manual_models WHERE provider_id IN ({marks})", stale)
            conn.execute(f"DELETE FROM providers WHERE id IN ({marks})", stale)

    # Only one provider may be active
    active = conn.execute(
        "SELECT id FROM providers WHERE is_active ORDER BY sort_order, id"
    ).fetchall()
    if len(active) > 1:
        conn.execute("UPDATE providers SET is_active = (id = ?)", (active[0][0],))
    return len(imported)


def _import_models(
    conn: duckdb.DuckDBPyConnection, models: Dict[str, Any], replace: bool
) -> int:
    provider_ids = _provider_ids_by_name(conn)
    count = 0
    kept_uuids = []

    for raw in models.get("manual_models", []):
        provider_id = provider_ids.get(raw.get("provider_name"))
        if provider_id is None:
            logger.warning(f"Skipping model {raw.get('uuid')}: provider {raw.get('provider_name')} not found")
            continue
        model = ManualModel.model_validate({**raw, "provider_id": provider_id})
        values = (
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
        )
        exists = conn.execute(
            "SELECT 1 FROM manual_models WHERE uuid = ?", (model.uuid,)
        ).fetchone()
        if exists:
            conn.execute(
                """
                UPDATE manual_models SET provider_id = ?, model_id = ?, name = ?, context_window = ?,
                    max_tokens = ?, input_cost_per_1k = ?, output_cost_per_1k = ?, description = ?,
                    is_enabled = ?, enable_stream = ?, supports_tools = ?, supports_images = ?,
                    default_system_prompt = ?, extra_params = ?, protocol = ?
                WHERE uuid = ?
                """,
                (*values, model.uuid),
            )
        else:
            conn.execute(
                """
                INSERT INTO manual_models (
                    provider_id, model_id, name, context_window, max_tokens,
                    input_cost_per_1k, output_cost_per_1k, description, is_enabled,
                    enable_stream, supports_tools, supports_images, default_system_prompt,
                    extra_params, protocol, uuid
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (*values, model.uuid),
            )
        kept_uuids.append(model.uuid)
        count += 1

    if replace:
        if kept_uuids:
            conn.execute(
                f"DELETE FROM manual_models WHERE uuid NOT IN ({_placeholders(kept_uuids)})",
                kept_uuids,
            )
        else:
            conn.execute("DELETE FROM manual_models")

    for raw in models.get("model_configs", []):
        provider_id = provider_ids.get(raw.get("provider_name"))
        if provider_id is None:
            continue
        record = ModelConfigRecord.model_validate({**raw, "provider_id": provider_id})
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
    return count


def _import_mcp(conn: duckdb.DuckDBPyConnection, mcp: Dict[str, Any], replace: bool) -> int:
    names = []
    for raw in mcp.get("servers", []):
        server = McpServerConfig.model_validate({**raw, "id": 0})
        values = (
            server.type.value,
            server.url,
            server.auth_type.value,
            server.bearer_token,
            server.is_active,
        )
        exists = conn.execute(
            "SELECT 1 FROM mcp_servers WHERE name = ?", (server.name,)
        ).fetchone()
        if exists:
            conn.execute(
                """
                UPDATE mcp_servers SET type = ?, url = ?, auth_type = ?, bearer_token = ?, is_active = ?
                WHERE name = ?
                """,
                (*values, server.name),
            )
        else:
            conn.execute(
                """
                INSERT INTO mcp_servers (type, url, auth_type, bearer_token, is_active, name)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (*values, server.name),
            )
        names.append(server.name)

    if replace:
        if names:
            conn.execute(f"DELETE FROM mcp_servers WHERE name NOT IN ({_placeholders(names)})", names)
        else:
            conn.execute("DELETE FROM mcp_servers")

    for key, value in (mcp.get("settings") or {}).items():
        if key in _TOOL_FLAG_KEYS and value is not None:
            conn.execute(
                "INSERT OR REPLACE INTO app_settings (key, value) VALUES (?, ?)",
                (key, _dump_json(value)),
            )
    return len(names)


async def import_backup(
    storage: DuckDBStorage, data: Dict[str, Any], replace: bool = False
) -> Dict[str, int]:
    """Import a backup produced by :func:`export_backup`.

    All categories present in ``data`` are applied in one transaction; a
    failure leaves the database untouched.

    Args:
        storage: Target storage.
        data: Parsed backup document.
        replace: Drop existing data of each imported category instead of merging.

    Returns:
        Number of imported records per kind.

    Raises:
        BackupError: the document is not a supported backup.
    """
    if not isinstance(data, dict) or data.get("version") != BACKUP_VERSION:
        raise BackupError(f"Unsupported backup version: {data.get('version') if isinstance(data, dict) else None}")

    # Provider ids in the backup only mean something through their names
    provider_names = {}
    for thread in data.get("history") or []:
        for key, value in (thread.get("provider_names") or {}).items():
            provider_names[int(key)] = value

    counts: Dict[str, int] = {}
    try:
        with storage.transaction() as conn:
            if "providers" in data:
                counts["providers"] = _import_providers(conn, data["providers"], replace)
            if "models" in data:
                counts["models"] = _import_models(conn, data["models"], replace)
            if "mcp" in data:
                counts["mcp_servers"] = _import_mcp(conn, data["mcp"], replace)
            if "history" in data:
                counts.update(_import_history(storage, conn, data["history"], replace, provider_names))
    except (KeyError, TypeError, ValueError) as e:
        raise BackupError(f"Invalid backup: {e}") from e

    logger.info(f"Imported backup: {counts}")
    return counts
