from __future__ import annotations

import json

import aiosqlite

from ...common import coerce_json_object, now_ms
from ...errors import VersionConflictError
from ...models import CharacterState, ChatMessage, Session
from ..utils import _sqlite_connection, message_attributes_json, message_from_row


class SqliteSessionsMixin:
    async def get(self, session_id: str) -> Session | None:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT session_id, character_id, language_code, character_state,
                       persona_id, persona_runtime, version, created_at, updated_at
                FROM sessions
                WHERE session_id = ?
                """,
                (session_id,),
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                return None
            async with db.execute(
                """
                SELECT message_id, role, content, thought, attributes, created_at
                FROM session_messages
                WHERE session_id = ?
                ORDER BY created_at ASC, message_id ASC
                """,
                (session_id,),
            ) as cursor:
                message_rows = await cursor.fetchall()

        runtime = coerce_json_object(row["persona_runtime"]) if row["persona_runtime"] else None
        session = Session(
            session_id=str(row["session_id"]),
            character_id=str(row["character_id"]),
            language_code=str(row["language_code"]),
            character_state=CharacterState.from_dict(coerce_json_object(row["character_state"])),
            messages=[message_from_row(item) for item in message_rows],
            persona_id=row["persona_id"],
            persona_runtime=runtime,
            version=int(row["version"]),
            created_at=int(row["created_at"]),
            updated_at=int(row["updated_at"]),
        )
        session.mark_stored()
        return session

    async def save(self, session: Session, *, expected_version: int | None = None) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                await self._write_session(db, session, expected_version)
            except BaseException:
                await db.rollback()
                raise
            await db.commit()
        session.mark_stored()

    async def _write_session(
        self,
        db: aiosqlite.Connection,
        session: Session,
        expected_version: int | None,
    ) -> None:
        state_json = json.dumps(session.character_state.to_dict(), ensure_ascii=False)
        runtime_json = (
            json.dumps(session.persona_runtime, ensure_ascii=False) if session.persona_runtime is not None else None
        )
        if expected_version is None:
            cursor = await db.execute(
                """
                INSERT INTO sessions (
                    session_id, character_id, language_code, character_state,
                    persona_id, persona_runtime, version, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(session_id) DO NOTHING
                """,
                (
                    session.session_id,
                    session.character_id,
                    session.language_code,
                    state_json,
                    session.persona_id,
                    runtime_json,
                    session.version,
                    session.created_at,
                    session.updated_at,
                ),
            )
            if cursor.rowcount == 0:
                raise VersionConflictError(session.session_id, 0, await self._stored_version(db, session.session_id))
        else:
            cursor = await db.execute(
                """
                UPDATE sessions
                SET language_code = ?, character_state = ?, persona_id = ?, persona_runtime = ?,
                    version = ?, updated_at = ?
                WHERE session_id = ? AND version = ?
                """,
                (
                    session.language_code,
                    state_json,
                    session.persona_id,
                    runtime_json,
                    session.version,
                    session.updated_at,
                    session.session_id,
                    expected_version,
                ),
            )
            if cursor.rowcount == 0:
                raise VersionConflictError(
                    session.session_id,
                    expected_version,
                    await self._stored_version(db, session.session_id),
                )

        # Messages are append-only; only the image fields of a stored message change.
        await db.executemany(
            """
            INSERT INTO session_messages (message_id, session_id, role, content, thought, attributes, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
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
                for message in session.unsaved_messages()
            ],
        )
        changed = session.changed_messages()
        if changed:
            await db.executemany(
                "UPDATE session_messages SET attributes = ? WHERE message_id = ? AND session_id = ?",
                [(message_attributes_json(message), message.message_id, session.session_id) for message in changed],
            )

    @staticmethod
    async def _stored_version(db: aiosqlite.Connection, session_id: str) -> int | None:
        async with db.execute("SELECT version FROM sessions WHERE session_id = ?", (session_id,)) as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row else None

    async def delete(self, session_id: str) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
            await db.commit()

    async def touch(self, session_id: str) -> int | None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute("UPDATE sessions SET updated_at = ? WHERE session_id = ?", (now_ms(), session_id))
            await db.commit()
            return await self._stored_version(db, session_id)

    async def list_messages_page(
        self,
        session_id: str,
        limit: int,
        before: tuple[int, str] | None = None,
    ) -> list[ChatMessage]:
        if before is None:
            query = """
                SELECT message_id, role, content, thought, attributes, created_at
                FROM session_messages
                WHERE session_id = ?
                ORDER BY created_at DESC, message_id DESC
                LIMIT ?
            """
            params: tuple = (session_id, max(0, int(limit)))
        else:
            query = """
                SELECT message_id, role, content, thought, attributes, created_at
                FROM session_messages
                WHERE session_id = ?
                  AND (created_at < ? OR (created_at = ? AND message_id < ?))
                ORDER BY created_at DESC, message_id DESC
                LIMIT ?
            """
            params = (session_id, before[0], before[0], before[1], max(0, int(limit)))
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        return [message_from_row(row) for row in rows]
