from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

try:
    import asyncpg
except Exception:  # pragma: no cover - optional dependency at runtime
    asyncpg = None  # type: ignore[assignment]

from ..common import coerce_json_object, now_ms
from ..errors import MemoryBackendUnavailable, VersionConflictError
from ..models import CharacterState, ChatMessage, MemoryEntry, Session, StoredAvatar
from .utils import avatar_from_row, memory_entry_from_row, message_attributes_json, message_from_row


logger = logging.getLogger("headless_npc.storage")

_AVATAR_COLUMNS = "id, character_id, status_label, image_url, metadata::text AS metadata, created_at"


def _vector_literal(values: list[float]) -> str:
    return "[" + ",".join(repr(float(value)) for value in values) + "]"


class PostgresSessionStore:
    """Postgres-backed store; long-term memory search runs on pgvector."""

    SCHEMA_VERSION = 1
    backend_name = "postgres"
    supports_vectors = True

    def __init__(self, dsn: str, *, embedding_dim: int = 3072, pool_size: int = 6) -> None:
        self.dsn = dsn.strip()
        if not self.dsn:
            raise ValueError("DATABASE_URL cannot be empty")
        self.embedding_dim = max(1, int(embedding_dim))
        self.pool_size = max(1, int(pool_size))
        self._pool: "asyncpg.Pool | None" = None
        self._init_lock = asyncio.Lock()
        self._initialized = False
        self._vector_ready = False

    async def _ensure_pool(self) -> "asyncpg.Pool":
        if asyncpg is None:
            raise RuntimeError("Postgres session backend requires asyncpg. Install with: pip install asyncpg")
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=1,
                max_size=self.pool_size,
                command_timeout=30.0,
            )
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        self._initialized = False

    async def ping(self) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute("SELECT 1")

    async def init(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                async with conn.transaction():
                    version = await self._get_schema_version(conn)
                    if version > self.SCHEMA_VERSION:
                        raise RuntimeError(
                            f"Postgres schema version {version} is newer than supported {self.SCHEMA_VERSION}. "
                            "Upgrade the service before starting."
                        )
                    await self._create_schema(conn)
                    if version != self.SCHEMA_VERSION:
                        await self._set_schema_version(conn, self.SCHEMA_VERSION)
                self._vector_ready = await self._create_vector_schema(conn)
            self._initialized = True

    async def _get_schema_version(self, conn: "asyncpg.Connection") -> int:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS npc_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )
        row = await conn.fetchrow("SELECT value FROM npc_meta WHERE key = 'schema_version'")
        if row is None:
            return 0
        try:
            return int(str(row["value"]))
        except ValueError:
            return 0

    async def _set_schema_version(self, conn: "asyncpg.Connection", version: int) -> None:
        await conn.execute(
            """
            INSERT INTO npc_meta (key, value, updated_at)
            VALUES ('schema_version', $1, NOW())
            ON CONFLICT(key) DO UPDATE SET
                value = EXCLUDED.value,
                updated_at = NOW()
            """,
            str(int(version)),
        )

    async def _create_schema(self, conn: "asyncpg.Connection") -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                session_id TEXT PRIMARY KEY,
                character_id TEXT NOT NULL,
                language_code TEXT NOT NULL,
                character_state JSONB NOT NULL,
                persona_id TEXT NULL,
                persona_runtime JSONB NULL,
                version INTEGER NOT NULL DEFAULT 1,
                created_at BIGINT NOT NULL,
                updated_at BIGINT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS session_messages (
                message_id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                thought TEXT NULL,
                attributes JSONB NULL,
                created_at BIGINT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_session_messages_page
            ON session_messages(session_id, created_at DESC, message_id DESC);

            CREATE TABLE IF NOT EXISTS character_memory_stream (
                id TEXT PRIMARY KEY,
                character_id TEXT NOT NULL,
                session_id TEXT NULL,
                type TEXT NOT NULL,
                content TEXT NOT NULL,
                importance INTEGER NOT NULL,
                created_at BIGINT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_memory_stream_character
            ON character_memory_stream(character_id, created_at DESC);

            CREATE TABLE IF NOT EXISTS character_avatars (
                id TEXT PRIMARY KEY,
                character_id TEXT NULL,
                status_label TEXT NOT NULL,
                image_url TEXT NOT NULL,
                metadata JSONB NULL,
                created_at BIGINT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_character_avatars_lookup
            ON character_avatars(character_id, status_label, created_at DESC);
            """
        )

    async def _create_vector_schema(self, conn: "asyncpg.Connection") -> bool:
        try:
            async with conn.transaction():
                await conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
                await conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS character_memory_embeddings (
                        id TEXT PRIMARY KEY,
                        embedding vector({self.embedding_dim})
                    )
                    """
                )
        except asyncpg.PostgresError as exc:
            logger.warning("[storage.postgres] pgvector unavailable, memory search disabled: %s", exc)
            return False
        try:
            async with conn.transaction():
                await conn.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_memory_embeddings_hnsw
                    ON character_memory_embeddings USING hnsw (embedding vector_l2_ops)
                    """
                )
        except asyncpg.PostgresError as exc:
            # Dimensions above the HNSW limit fall back to sequential scans.
            logger.info("[storage.postgres] skipped HNSW index: %s", exc)
        return True

    async def get(self, session_id: str) -> Session | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT session_id, character_id, language_code, character_state::text AS character_state,
                       persona_id, persona_runtime::text AS persona_runtime, version, created_at, updated_at
                FROM sessions
                WHERE session_id = $1
                """,
                session_id,
            )
            if row is None:
                return None
            message_rows = await conn.fetch(
                """
                SELECT message_id, role, content, thought, attributes::text AS attributes, created_at
                FROM session_messages
                WHERE session_id = $1
                ORDER BY created_at ASC, message_id ASC
                """,
                session_id,
            )
        session = Session(
            session_id=str(row["session_id"]),
            character_id=str(row["character_id"]),
            language_code=str(row["language_code"]),
            character_state=CharacterState.from_dict(coerce_json_object(row["character_state"])),
            messages=[message_from_row(item) for item in message_rows],
            persona_id=row["persona_id"],
            persona_runtime=coerce_json_object(row["persona_runtime"]) if row["persona_runtime"] else None,
            version=int(row["version"]),
            created_at=int(row["created_at"]),
            updated_at=int(row["updated_at"]),
        )
        session.mark_stored()
        return session

    async def save(self, session: Session, *, expected_version: int | None = None) -> None:
        state_json = json.dumps(session.character_state.to_dict(), ensure_ascii=False)
        runtime_json = (
            json.dumps(session.persona_runtime, ensure_ascii=False) if session.persona_runtime is not None else None
        )
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                if expected_version is None:
                    status = await conn.execute(
                        """
                        INSERT INTO sessions (
                            session_id, character_id, language_code, character_state,
                            persona_id, persona_runtime, version, created_at, updated_at
                        )
                        VALUES ($1, $2, $3, $4::jsonb, $5, $6::jsonb, $7, $8, $9)
                        ON CONFLICT(session_id) DO NOTHING
                        """,
                        session.session_id,
                        session.character_id,
                        session.language_code,
                        state_json,
                        session.persona_id,
                        runtime_json,
                        session.version,
                        session.created_at,
                        session.updated_at,
                    )
                    if status.endswith(" 0"):
                        actual = await conn.fetchval("SELECT version FROM sessions WHERE session_id = $1", session.session_id)
                        raise VersionConflictError(session.session_id, 0, actual)
                else:
                    actual = await conn.fetchval(
                        "SELECT version FROM sessions WHERE session_id = $1 FOR UPDATE",
                        session.session_id,
                    )
                    if actual is None or int(actual) != expected_version:
                        raise VersionConflictError(session.session_id, expected_version, actual)
                    await conn.execute(
                        """
                        UPDATE sessions
                        SET language_code = $2, character_state = $3::jsonb, persona_id = $4,
                            persona_runtime = $5::jsonb, version = $6, updated_at = $7
                        WHERE session_id = $1
                        """,
                        session.session_id,
                        session.language_code,
                        state_json,
                        session.persona_id,
                        runtime_json,
                        session.version,
                        session.updated_at,
                    )
                # Messages are append-only; only the image fields of a stored message change.
                unsaved = session.unsaved_messages()
                if unsaved:
                    await conn.executemany(
                        """
                        INSERT INTO session_messages (message_id, session_id, role, content, thought, attributes, created_at)
                        VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7)
                        ON CONFLICT(message_id) DO NOTHING
                        """,
                        [
                            (
                                message.message_id,
                                session.session_id,
                                message.role,
                                message.content,
                                message.thought,
                                message_attributes_json(message),
                                int(message.created_at or 0),
                            )
                            for message in unsaved
                        ],
                    )
                changed = session.changed_messages()
                if changed:
                    await conn.executemany(
                        "UPDATE session_messages SET attributes = $1::jsonb WHERE message_id = $2 AND session_id = $3",
                        [
                            (message_attributes_json(message), message.message_id, session.session_id)
                            for message in changed
                        ],
                    )
        session.mark_stored()

    async def delete(self, session_id: str) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute("DELETE FROM sessions WHERE session_id = $1", session_id)

    async def touch(self, session_id: str) -> int | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            version = await conn.fetchval(
                "UPDATE sessions SET updated_at = $2 WHERE session_id = $1 RETURNING version",
                session_id,
                now_ms(),
            )
        return int(version) if version is not None else None

    async def list_messages_page(
        self,
        session_id: str,
        limit: int,
        before: tuple[int, str] | None = None,
    ) -> list[ChatMessage]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            if before is None:
                rows = await conn.fetch(
                    """
                    SELECT message_id, role, content, thought, attributes::text AS attributes, created_at
                    FROM session_messages
                    WHERE session_id = $1
                    ORDER BY created_at DESC, message_id DESC
                    LIMIT $2
                    """,
                    session_id,
                    max(0, int(limit)),
                )
            else:
                rows = await conn.fetch(
                    """
                    SELECT message_id, role, content, thought, attributes::text AS attributes, created_at
                    FROM session_messages
                    WHERE session_id = $1
                      AND (created_at, message_id) < ($2, $3)
                    ORDER BY created_at DESC, message_id DESC
                    LIMIT $4
                    """,
                    session_id,
                    int(before[0]),
                    before[1],
                    max(0, int(limit)),
                )
        return [message_from_row(row) for row in rows]

    async def create_avatar(self, avatar: StoredAvatar) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO character_avatars (id, character_id, status_label, image_url, metadata, created_at)
                VALUES ($1, $2, $3, $4, $5::jsonb, $6)
                """,
                avatar.id,
                avatar.character_id,
                avatar.status_label,
                avatar.image_url,
                json.dumps(avatar.metadata, ensure_ascii=False) if avatar.metadata is not None else None,
                avatar.created_at,
            )

    async def get_avatar(self, avatar_id: str) -> StoredAvatar | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_AVATAR_COLUMNS} "
                "FROM character_avatars WHERE id = $1 LIMIT 1",
                avatar_id,
            )
        return avatar_from_row(row) if row else None

    async def list_avatars(self, character_id: str | None = None, include_global: bool = True) -> list[StoredAvatar]:
        clauses: list[str] = []
        params: list[Any] = []
        if character_id:
            params.append(character_id)
            clauses.append(f"character_id = ${len(params)}")
            if include_global:
                clauses.append("character_id IS NULL")
        elif not include_global:
            clauses.append("character_id IS NOT NULL")
        where = f"WHERE {' OR '.join(clauses)}" if clauses else ""
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_AVATAR_COLUMNS}
                FROM character_avatars
                {where}
                ORDER BY created_at DESC
                """,
                *params,
            )
        return [avatar_from_row(row) for row in rows]

    async def find_latest_avatar(self, character_id: str, status_label: str | None = None) -> StoredAvatar | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_AVATAR_COLUMNS}
                FROM character_avatars
                WHERE character_id = $1
                  AND ($2::text IS NULL OR status_label = $2::text)
                ORDER BY created_at DESC
                LIMIT 1
                """,
                character_id,
                status_label,
            )
        return avatar_from_row(row) if row else None

    async def create_memory_entry(self, entry: MemoryEntry) -> bool:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(
                """
                INSERT INTO character_memory_stream (id, character_id, session_id, type, content, importance, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT(id) DO NOTHING
                """,
                entry.id,
                entry.character_id,
                entry.session_id,
                entry.type,
                entry.content,
                int(entry.importance),
                int(entry.created_at),
            )
        return not status.endswith(" 0")

    async def list_memory_entries(
        self,
        character_id: str | None = None,
        session_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[int, list[MemoryEntry]]:
        clauses: list[str] = []
        params: list[Any] = []
        if character_id:
            params.append(character_id)
            clauses.append(f"character_id = ${len(params)}")
        if session_id:
            params.append(session_id)
            clauses.append(f"session_id = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            total = await conn.fetchval(f"SELECT COUNT(*) FROM character_memory_stream {where}", *params)
            rows = await conn.fetch(
                f"""
                SELECT id, character_id, session_id, type, content, importance, created_at
                FROM character_memory_stream
                {where}
                ORDER BY created_at DESC
                LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
                """,
                *params,
                max(1, int(limit)),
                max(0, int(offset)),
            )
        return int(total or 0), [memory_entry_from_row(row) for row in rows]

    def _require_vectors(self) -> None:
        if not self._vector_ready:
            raise MemoryBackendUnavailable("pgvector extension is not available on this database")

    @staticmethod
    def _backend_errors() -> tuple[type[BaseException], ...]:
        # Lost connections and command timeouts count as an unavailable backend too.
        errors: tuple[type[BaseException], ...] = (OSError, asyncio.TimeoutError)
        if asyncpg is not None:
            errors += (asyncpg.PostgresError, asyncpg.InterfaceError)
        return errors

    async def upsert_memory_embedding(self, entry_id: str, embedding: list[float]) -> None:
        self._require_vectors()
        try:
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO character_memory_embeddings (id, embedding)
                    VALUES ($1, $2::vector)
                    ON CONFLICT(id) DO UPDATE SET embedding = EXCLUDED.embedding
                    """,
                    entry_id,
                    _vector_literal(embedding),
                )
        except self._backend_errors() as exc:
            raise MemoryBackendUnavailable(f"Failed to store embedding: {exc}") from exc

    async def search_memory(self, character_id: str, embedding: list[float], limit: int) -> list[MemoryEntry]:
        self._require_vectors()
        try:
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT s.id, s.character_id, s.session_id, s.type, s.content, s.importance, s.created_at,
                           (e.embedding <-> $2::vector) AS distance
                    FROM character_memory_stream s
                    JOIN character_memory_embeddings e ON s.id = e.id
                    WHERE s.character_id = $1
                    ORDER BY e.embedding <-> $2::vector ASC
                    LIMIT $3
                    """,
                    character_id,
                    _vector_literal(embedding),
                    max(1, int(limit)),
                )
        except self._backend_errors() as exc:
            raise MemoryBackendUnavailable(f"Vector search failed: {exc}") from exc
        return [memory_entry_from_row(row, float(row["distance"])) for row in rows]
