"""SQLite persistence layer: history, scope settings, presets and stats."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import asdict, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from chatrelay.interfaces import HistoryStore, PersonaResolver, PresetStore, ScopeResolver, StatsSink
from chatrelay.models import (
    ApiCallRecord,
    Message,
    PersonaResult,
    Preset,
    ScopeFeatures,
    ScopeSettings,
    Sender,
)

SCHEMA_VERSION = 1

# Most specific scope first.
_PERSONA_ORDER = ("group_user", "group", "user")
_SCOPE_TYPES = ("global", "user", "group", "group_user")


def scope_key(scope_type: str, group_id: str | None = None, user_id: str | None = None) -> str:
    """Storage key of a scope row."""

    if scope_type == "global":
        return "global"
    if scope_type == "user":
        return f"{user_id}"
    if scope_type == "group":
        return f"{group_id}"
    if scope_type == "group_user":
        return f"{group_id}:{user_id}"
    raise ValueError(f"Unknown scope type: {scope_type}")


class Database(HistoryStore, ScopeResolver, PersonaResolver, PresetStore, StatsSink):
    """Small SQLite wrapper with explicit schema management."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create or migrate schema."""

        with self._connect() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                self._create_schema(conn)
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            elif row["version"] != SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {row['version']} (expected {SCHEMA_VERSION})"
                )

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content_json TEXT NOT NULL,
                sender_json TEXT,
                source_type TEXT NOT NULL,
                group_id TEXT,
                timestamp REAL NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, id);

            CREATE TABLE IF NOT EXISTS scope_settings (
                scope_type TEXT NOT NULL,
                scope_id TEXT NOT NULL,
                preset_id TEXT,
                model_id TEXT,
                system_prompt TEXT,
                features_json TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (scope_type, scope_id)
            );

            CREATE TABLE IF NOT EXISTS presets (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                system_prompt TEXT NOT NULL,
                model TEXT,
                enable_tools INTEGER NOT NULL,
                disable_system_prompt INTEGER NOT NULL,
                temperature REAL,
                max_tokens INTEGER,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS api_calls (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                channel_id TEXT NOT NULL,
                channel_name TEXT NOT NULL,
                model TEXT NOT NULL,
                key_index INTEGER NOT NULL,
                duration REAL NOT NULL,
                succeeded INTEGER NOT NULL,
                error TEXT,
                source TEXT NOT NULL,
                user_id TEXT NOT NULL,
                group_id TEXT,
                retry_count INTEGER NOT NULL,
                channel_switched INTEGER NOT NULL,
                fallback_used INTEGER NOT NULL,
                previous_channel_id TEXT,
                stream INTEGER NOT NULL,
                switch_chain_json TEXT,
                usage_json TEXT NOT NULL,
                response_text TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS tool_calls (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tool_name TEXT NOT NULL,
                succeeded INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS tool_executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT NOT NULL,
                tool_name TEXT NOT NULL,
                input_json TEXT NOT NULL,
                output_json TEXT NOT NULL,
                succeeded INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );
            """
        )

    # History

    def append_message(self, conversation_id: str, message: Message) -> None:
        sender_json = json.dumps(asdict(message.sender)) if message.sender else None
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO messages(
                    conversation_id, role, content_json, sender_json, source_type, group_id, timestamp, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation_id,
                    message.role,
                    json.dumps(message.content),
                    sender_json,
                    message.source_type,
                    message.group_id,
                    message.timestamp,
                    _utc_now_iso(),
                ),
            )

    def get_context_history(self, conversation_id: str, limit: int) -> list[Message]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT role, content_json, sender_json, source_type, group_id, timestamp
                FROM messages
                WHERE conversation_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (conversation_id, limit),
            ).fetchall()
        return [_row_to_message(row) for row in reversed(rows)]

    def delete_conversation(self, conversation_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))

    # Scope settings

    def save_scope_settings(
        self,
        scope_type: str,
        *,
        group_id: str | None = None,
        user_id: str | None = None,
        preset_id: str | None = None,
        model_id: str | None = None,
        system_prompt: str | None = None,
        features: ScopeFeatures | None = None,
    ) -> None:
        if scope_type not in _SCOPE_TYPES:
            raise ValueError(f"Unknown scope type: {scope_type}")
        features_json = json.dumps(asdict(features) if features else {})
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO scope_settings(scope_type, scope_id, preset_id, model_id, system_prompt, features_json, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(scope_type, scope_id) DO UPDATE SET
                    preset_id=excluded.preset_id,
                    model_id=excluded.model_id,
                    system_prompt=excluded.system_prompt,
                    features_json=excluded.features_json,
                    updated_at=excluded.updated_at
                """,
                (
                    scope_type,
                    scope_key(scope_type, group_id, user_id),
                    preset_id,
                    model_id,
                    system_prompt,
                    features_json,
                    _utc_now_iso(),
                ),
            )

    def _scope_rows(self, group_id: str | None, user_id: str) -> dict[str, sqlite3.Row]:
        wanted = [("user", scope_key("user", user_id=user_id)), ("global", "global")]
        if group_id:
            wanted += [
                ("group_user", scope_key("group_user", group_id, user_id)),
                ("group", scope_key("group", group_id)),
            ]
        found: dict[str, sqlite3.Row] = {}
        with self._connect() as conn:
            for scope_type, scope_id in wanted:
                row = conn.execute(
                    "SELECT * FROM scope_settings WHERE scope_type = ? AND scope_id = ?",
                    (scope_type, scope_id),
                ).fetchone()
                if row is not None:
                    found[scope_type] = row
        return found

    def get_effective_settings(
        self, group_id: str | None, user_id: str, *, is_private: bool
    ) -> ScopeSettings:
        rows = self._scope_rows(None if is_private else group_id, user_id)
        order = [*_PERSONA_ORDER, "global"]
        settings = ScopeSettings()
        for scope_type in order:
            row = rows.get(scope_type)
            if row is None:
                continue
            if settings.preset_id is None and row["preset_id"]:
                settings.preset_id = row["preset_id"]
                settings.preset_source = scope_type
            if settings.model_id is None and row["model_id"]:
                settings.model_id = row["model_id"]
                settings.model_source = scope_type
            stored = json.loads(row["features_json"] or "{}")
            for f in fields(ScopeFeatures):
                if getattr(settings.features, f.name) is None and stored.get(f.name) not in (None, ""):
                    setattr(settings.features, f.name, stored[f.name])
        return settings

    def get_independent_prompt(
        self, group_id: str | None, user_id: str, default_prompt: str
    ) -> PersonaResult:
        rows = self._scope_rows(group_id, user_id)
        for scope_type in _PERSONA_ORDER:
            row = rows.get(scope_type)
            # An empty string is a deliberate blank persona.
            if row is not None and row["system_prompt"] is not None:
                return PersonaResult(prompt=row["system_prompt"], is_independent=True, source=scope_type)
        return PersonaResult(prompt=default_prompt, is_independent=False, source="default")

    def has_user_prompt(self, group_id: str | None, user_id: str) -> bool:
        rows = self._scope_rows(group_id, user_id)
        return any(
            rows.get(scope_type) is not None and rows[scope_type]["system_prompt"] is not None
            for scope_type in ("group_user", "user")
        )

    # Presets

    def save_preset(self, preset: Preset) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO presets(id, name, system_prompt, model, enable_tools, disable_system_prompt,
                                    temperature, max_tokens, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name=excluded.name,
                    system_prompt=excluded.system_prompt,
                    model=excluded.model,
                    enable_tools=excluded.enable_tools,
                    disable_system_prompt=excluded.disable_system_prompt,
                    temperature=excluded.temperature,
                    max_tokens=excluded.max_tokens,
                    updated_at=excluded.updated_at
                """,
                (
                    preset.id,
                    preset.name or preset.id,
                    preset.system_prompt,
                    preset.model,
                    int(preset.enable_tools),
                    int(preset.disable_system_prompt),
                    preset.temperature,
                    preset.max_tokens,
                    _utc_now_iso(),
                ),
            )

    def get_preset(self, preset_id: str) -> Preset | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM presets WHERE id = ?", (preset_id,)).fetchone()
        if row is None:
            return None
        return Preset(
            id=row["id"],
            name=row["name"],
            system_prompt=row["system_prompt"],
            model=row["model"],
            enable_tools=bool(row["enable_tools"]),
            disable_system_prompt=bool(row["disable_system_prompt"]),
            temperature=row["temperature"],
            max_tokens=row["max_tokens"],
        )

    # Stats

    def record_api_call(self, record: ApiCallRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO api_calls(
                    channel_id, channel_name, model, key_index, duration, succeeded, error, source, user_id,
                    group_id, retry_count, channel_switched, fallback_used, previous_channel_id, stream, switch_chain_json,
                    usage_json, response_text, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.channel_id,
                    record.channel_name,
                    record.model,
                    record.key_index,
                    record.duration,
                    int(record.success),
                    record.error,
                    record.source,
                    record.user_id,
                    record.group_id,
                    record.retry_count,
                    int(record.channel_switched),
                    int(record.fallback_used),
                    record.previous_channel_id,
                    int(record.stream),
                    json.dumps(record.switch_chain) if record.switch_chain else None,
                    json.dumps(record.usage),
                    record.response_text[:2000],
                    _utc_now_iso(),
                ),
            )

    def record_tool_call(self, name: str, success: bool) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO tool_calls(tool_name, succeeded, created_at) VALUES (?, ?, ?)",
                (name, int(success), _utc_now_iso()),
            )

    def list_api_calls(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM api_calls ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(row) for row in rows]

    def tool_call_counts(self) -> dict[str, dict[str, int]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT tool_name, succeeded, COUNT(*) AS n FROM tool_calls GROUP BY tool_name, succeeded"
            ).fetchall()
        counts: dict[str, dict[str, int]] = {}
        for row in rows:
            bucket = counts.setdefault(row["tool_name"], {"success": 0, "failure": 0})
            bucket["success" if row["succeeded"] else "failure"] += row["n"]
        return counts

    def log_tool_execution(
        self,
        conversation_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
        tool_output: Any,
        succeeded: bool,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tool_executions(conversation_id, tool_name, input_json, output_json, succeeded, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation_id,
                    tool_name,
                    json.dumps(tool_input),
                    json.dumps(tool_output, default=str),
                    int(succeeded),
                    _utc_now_iso(),
                ),
            )


def _row_to_message(row: sqlite3.Row) -> Message:
    sender = Sender(**json.loads(row["sender_json"])) if row["sender_json"] else None
    return Message(
        role=row["role"],
        content=json.loads(row["content_json"]),
        sender=sender,
        timestamp=row["timestamp"],
        source_type=row["source_type"],
        group_id=row["group_id"],
    )


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
