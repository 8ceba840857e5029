from __future__ import annotations

from ...errors import MemoryBackendUnavailable
from ...models import MemoryEntry
from ..utils import _sqlite_connection, memory_entry_from_row


class SqliteMemoryStreamMixin:
    async def create_memory_entry(self, entry: MemoryEntry) -> bool:
        async with _sqlite_connection(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO character_memory_stream (id, character_id, session_id, type, content, importance, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO NOTHING
                """,
                (
                    entry.id,
                    entry.character_id,
                    entry.session_id,
                    entry.type,
                    entry.content,
                    int(entry.importance),
                    int(entry.created_at),
                ),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def list_memory_entries(
        self,
        character_id: str | None = None,
        session_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[int, list[MemoryEntry]]:
        clauses: list[str] = []
        params: list[object] = []
        if character_id:
            clauses.append("character_id = ?")
            params.append(character_id)
        if session_id:
            clauses.append("session_id = ?")
            params.append(session_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(f"SELECT COUNT(*) FROM character_memory_stream {where}", tuple(params)) as cursor:
                total_row = await cursor.fetchone()
            async with db.execute(
                f"""
                SELECT id, character_id, session_id, type, content, importance, created_at
                FROM character_memory_stream
                {where}
                ORDER BY created_at DESC
                LIMIT ? OFFSET ?
                """,
                (*params, max(1, int(limit)), max(0, int(offset))),
            ) as cursor:
                rows = await cursor.fetchall()
        return (int(total_row[0]) if total_row else 0), [memory_entry_from_row(row) for row in rows]

    async def upsert_memory_embedding(self, entry_id: str, embedding: list[float]) -> None:
        raise MemoryBackendUnavailable("Vector embeddings require Postgres + pgvector (SESSION_BACKEND=postgres)")

    async def search_memory(self, character_id: str, embedding: list[float], limit: int) -> list[MemoryEntry]:
        raise MemoryBackendUnavailable("Vector search requires Postgres + pgvector (SESSION_BACKEND=postgres)")
