from __future__ import annotations

import os
from pathlib import Path

import aiosqlite

from ..utils import _sqlite_connection


class SqliteSchemaMixin:
    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _allow_destructive_reset_on_mismatch() -> bool:
        raw = os.getenv("SQLITE_RESET_ON_SCHEMA_MISMATCH", "")
        return raw.strip().lower() in {"1", "true", "yes", "y", "on"}

    async def init(self) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
            version = int(row[0]) if row else 0

            if version > self.SCHEMA_VERSION:
                if not self._allow_destructive_reset_on_mismatch():
                    raise RuntimeError(
                        "SQLite schema version mismatch detected (database is newer than this build). "
                        f"Found user_version={version}, supported={self.SCHEMA_VERSION}. "
                        "Set SQLITE_RESET_ON_SCHEMA_MISMATCH=1 to allow destructive reset."
                    )
                await self._reset_schema(db)
            else:
                await self._create_schema(db)
            if version != self.SCHEMA_VERSION:
                await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
            await db.commit()

    async def close(self) -> None:
        return None

    async def ping(self) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute("SELECT 1")

    async def _reset_schema(self, db: aiosqlite.Connection) -> None:
        for table in ("session_messages", "sessions", "character_avatars", "character_memory_stream"):
            await db.execute(f"DROP TABLE IF EXISTS {table}")
        await self._create_schema(db)

    async def _create_schema(self, db: aiosqlite.Connection) -> None:
        await db.executescript(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                session_id TEXT PRIMARY KEY,
                character_id TEXT NOT NULL,
                language_code TEXT NOT NULL,
                character_state TEXT NOT NULL,
                persona_id TEXT NULL,
                persona_runtime TEXT NULL,
                version INTEGER NOT NULL DEFAULT 1,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS session_messages (
                message_id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                thought TEXT NULL,
                attributes TEXT NULL,
                created_at INTEGER NOT NULL,
                FOREIGN KEY (session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_session_messages_page
            ON session_messages(session_id, created_at DESC, message_id DESC);

            CREATE TABLE IF NOT EXISTS character_avatars (
                id TEXT PRIMARY KEY,
                character_id TEXT NULL,
                status_label TEXT NOT NULL,
                image_url TEXT NOT NULL,
                metadata TEXT NULL,
                created_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_character_avatars_lookup
            ON character_avatars(character_id, status_label, created_at DESC);

            CREATE TABLE IF NOT EXISTS character_memory_stream (
                id TEXT PRIMARY KEY,
                character_id TEXT NOT NULL,
                session_id TEXT NULL,
                type TEXT NOT NULL,
                content TEXT NOT NULL,
                importance INTEGER NOT NULL,
                created_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_memory_stream_character
            ON character_memory_stream(character_id, created_at DESC);
            """
        )
