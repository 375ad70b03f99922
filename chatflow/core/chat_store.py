"""
SQLite storage for chats, chat messages and chat engines.

Creates data/chats.db (relative to project root) unless CHAT_DB_PATH is absolute.
Tables: chat_engines, chats, chat_messages. One connection per call so the store
can be shared across FastAPI worker threads.
"""

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from chatflow.core.config import CHAT_DB_PATH, DEFAULT_ENGINE, DEFAULT_ENGINE_NAME

logger = logging.getLogger(__name__)

# Project root
_ROOT = Path(__file__).resolve().parent.parent.parent

_SCHEMA = """
CREATE TABLE IF NOT EXISTS chat_engines (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    engine TEXT NOT NULL,
    engine_options TEXT NOT NULL DEFAULT '{}',
    is_default INTEGER NOT NULL DEFAULT 0 CHECK (is_default IN (0, 1)),
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chats (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url_key TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL,
    engine TEXT NOT NULL,
    engine_id INTEGER NOT NULL,
    engine_name TEXT NOT NULL,
    engine_options TEXT NOT NULL DEFAULT '{}',
    created_by TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chat_messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    chat_id INTEGER NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
    role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
    content TEXT NOT NULL,
    ordinal INTEGER NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('PENDING', 'SUCCEED', 'FAILED')),
    options TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    UNIQUE(chat_id, ordinal)
);

CREATE INDEX IF NOT EXISTS idx_chats_created_by ON chats(created_by, created_at);
"""


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ChatStore:
    """Read/write operations the chat service needs from storage."""

    def __init__(self, db_path: str | Path | None = None) -> None:
        path = Path(db_path if db_path is not None else CHAT_DB_PATH)
        if not path.is_absolute():
            path = _ROOT / path
        self._db_path = path
        self.init_db()

    def _get_conn(self) -> sqlite3.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self._db_path), isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist and seed the default chat engine."""
        conn = self._get_conn()
        try:
            conn.executescript(_SCHEMA)
            row = conn.execute("SELECT COUNT(*) FROM chat_engines").fetchone()
            if row[0] == 0:
                conn.execute(
                    "INSERT INTO chat_engines (name, engine, engine_options, is_default, created_at) "
                    "VALUES (?, ?, ?, 1, ?)",
                    (DEFAULT_ENGINE_NAME, DEFAULT_ENGINE, "{}", _utc_now()),
                )
                logger.info("[chat_store] seeded default chat engine name=%s", DEFAULT_ENGINE_NAME)
        finally:
            conn.close()

    # --- Chat engines ---

    def add_chat_engine(
        self,
        name: str,
        engine: str = DEFAULT_ENGINE,
        engine_options: dict[str, Any] | None = None,
        is_default: bool = False,
    ) -> dict[str, Any]:
        """Register a named chat engine. A new default replaces the previous one."""
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            if is_default:
                conn.execute("UPDATE chat_engines SET is_default = 0")
            cur = conn.execute(
                "INSERT INTO chat_engines (name, engine, engine_options, is_default, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (name, engine, json.dumps(engine_options or {}), int(is_default), _utc_now()),
            )
            conn.execute("COMMIT")
            row = conn.execute("SELECT * FROM chat_engines WHERE id = ?", (cur.lastrowid,)).fetchone()
            return dict(row)
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def get_chat_engine(self, id_or_name: int | str | None = None) -> dict[str, Any] | None:
        """Resolve a chat engine by numeric id or name; None selects the default engine."""
        conn = self._get_conn()
        try:
            if id_or_name is None or (isinstance(id_or_name, str) and not id_or_name.strip()):
                row = conn.execute(
                    "SELECT * FROM chat_engines WHERE is_default = 1 ORDER BY id LIMIT 1"
                ).fetchone()
            elif isinstance(id_or_name, int) or str(id_or_name).strip().isdigit():
                row = conn.execute(
                    "SELECT * FROM chat_engines WHERE id = ?", (int(id_or_name),)
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT * FROM chat_engines WHERE name = ?", (str(id_or_name).strip(),)
                ).fetchone()
            return dict(row) if row is not None else None
        finally:
            conn.close()

    # --- Chats ---

    def create_chat(
        self,
        *,
        engine: dict[str, Any],
        created_by: str,
        title: str,
    ) -> dict[str, Any]:
        """Insert a chat bound to the given engine. Engine fields are never updated afterwards."""
        url_key = uuid.uuid4().hex
        conn = self._get_conn()
        try:
            cur = conn.execute(
                """
                INSERT INTO chats (url_key, title, engine, engine_id, engine_name, engine_options, created_by, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    url_key,
                    title,
                    engine["engine"],
                    engine["id"],
                    engine["name"],
                    engine.get("engine_options") or "{}",
                    created_by,
                    _utc_now(),
                ),
            )
            row = conn.execute("SELECT * FROM chats WHERE id = ?", (cur.lastrowid,)).fetchone()
        finally:
            conn.close()
        logger.info("[chat_store:create_chat] url_key=%s engine=%s created_by=%s", url_key, engine["name"], created_by)
        return dict(row)

    def get_chat_by_url_key(self, url_key: str) -> dict[str, Any] | None:
        if not url_key:
            return None
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM chats WHERE url_key = ?", (url_key,)).fetchone()
            return dict(row) if row is not None else None
        finally:
            conn.close()

    def list_chats(
        self,
        user_id: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> dict[str, Any]:
        """Return one page of chats, newest first, optionally filtered by owner."""
        page = max(1, page)
        page_size = max(1, page_size)
        where, params = ("WHERE created_by = ?", (user_id,)) if user_id else ("", ())
        conn = self._get_conn()
        try:
            total = conn.execute(f"SELECT COUNT(*) FROM chats {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM chats {where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                (*params, page_size, (page - 1) * page_size),
            ).fetchall()
        finally:
            conn.close()
        return {
            "items": [dict(r) for r in rows],
            "total": total,
            "page": page,
            "page_size": page_size,
        }

    # --- Messages ---

    def insert_messages(self, chat_id: int, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """
        Append messages to a chat in the given order.

        Ordinals continue from the chat's current maximum (0 for an empty chat), so
        they stay strictly increasing and gapless. Returns the inserted rows.
        """
        if not messages:
            return []
        now = _utc_now()
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT COALESCE(MAX(ordinal), -1) FROM chat_messages WHERE chat_id = ?",
                (chat_id,),
            ).fetchone()
            next_ordinal = int(row[0]) + 1
            ids: list[int] = []
            for offset, m in enumerate(messages):
                options = m.get("options") or {}
                cur = conn.execute(
                    """
                    INSERT INTO chat_messages (chat_id, role, content, ordinal, status, options, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        chat_id,
                        m["role"],
                        m.get("content") or "",
                        next_ordinal + offset,
                        m.get("status") or "SUCCEED",
                        options if isinstance(options, str) else json.dumps(options),
                        now,
                    ),
                )
                ids.append(cur.lastrowid)
            conn.execute("COMMIT")
            placeholders = ",".join("?" for _ in ids)
            rows = conn.execute(
                f"SELECT * FROM chat_messages WHERE id IN ({placeholders}) ORDER BY ordinal",
                ids,
            ).fetchall()
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()
        logger.info("[chat_store:insert_messages] chat_id=%s count=%d first_ordinal=%d", chat_id, len(ids), next_ordinal)
        return [dict(r) for r in rows]

    def get_messages(self, chat_id: int) -> list[dict[str, Any]]:
        """Return the chat's messages ordered by ordinal."""
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT * FROM chat_messages WHERE chat_id = ? ORDER BY ordinal ASC",
                (chat_id,),
            ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    def get_message(self, chat_id: int, message_id: int) -> dict[str, Any] | None:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM chat_messages WHERE chat_id = ? AND id = ?",
                (chat_id, message_id),
            ).fetchone()
            return dict(row) if row is not None else None
        finally:
            conn.close()

    def truncate_messages_from(self, chat_id: int, message_id: int) -> int:
        """Delete the target message and every later message of the chat. Returns rows deleted."""
        conn = self._get_conn()
        try:
            cur = conn.execute(
                """
                DELETE FROM chat_messages
                WHERE chat_id = ?
                  AND ordinal >= (SELECT ordinal FROM chat_messages WHERE chat_id = ? AND id = ?)
                """,
                (chat_id, chat_id, message_id),
            )
            deleted = cur.rowcount
        finally:
            conn.close()
        logger.info("[chat_store:truncate_messages_from] chat_id=%s message_id=%s deleted=%d", chat_id, message_id, deleted)
        return deleted
