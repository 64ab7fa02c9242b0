from __future__ import annotations

import sqlite3
import threading
from pathlib import Path


SCHEMA_VERSION = 1


class SQLiteBackend:
    """Owns a shared SQLite connection and applies chat migrations."""

    def __init__(self, db_path: str) -> None:
        self._lock = threading.Lock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._configure(in_memory=db_path == ":memory:")
        self._apply_migrations()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def close(self) -> None:
        self._conn.close()

    def _configure(self, *, in_memory: bool) -> None:
        cursor = self._conn.cursor()
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    def _apply_migrations(self) -> None:
        user_version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if user_version == 0:
            self._create_v1_schema()
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        elif user_version != SCHEMA_VERSION:
            raise ValueError(f"Unsupported schema version: {user_version}")

    def _create_v1_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS events (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                organizer_address TEXT NOT NULL,
                contract_address TEXT,
                chain_id INTEGER NOT NULL,
                date TEXT,
                image_url TEXT,
                status TEXT NOT NULL DEFAULT 'published'
            )
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_events_organizer ON events(organizer_address)"
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                wallet_address TEXT PRIMARY KEY,
                username TEXT,
                name TEXT,
                avatar_url TEXT
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS user_tickets (
                event_contract_address TEXT NOT NULL,
                token_id TEXT NOT NULL,
                event_id TEXT,
                owner_address TEXT NOT NULL,
                PRIMARY KEY (event_contract_address, token_id)
            )
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_user_tickets_owner ON user_tickets(owner_address)"
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS chat_messages (
                id TEXT PRIMARY KEY,
                event_id TEXT NOT NULL,
                user_address TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at_ms INTEGER NOT NULL,
                edited_at_ms INTEGER,
                deleted_at_ms INTEGER,
                reply_to TEXT REFERENCES chat_messages(id) ON DELETE SET NULL,
                UNIQUE (event_id, created_at_ms)
            )
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_chat_messages_event_created "
            "ON chat_messages(event_id, created_at_ms DESC)"
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS chat_message_deletions (
                message_id TEXT NOT NULL REFERENCES chat_messages(id) ON DELETE CASCADE,
                user_address TEXT NOT NULL,
                PRIMARY KEY (message_id, user_address)
            )
            """
        )
