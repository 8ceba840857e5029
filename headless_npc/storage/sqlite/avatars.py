from __future__ import annotations

import json

from ...models import StoredAvatar
from ..utils import _sqlite_connection, avatar_from_row


_AVATAR_COLUMNS = "id, character_id, status_label, image_url, metadata, created_at"


class SqliteAvatarsMixin:
    async def create_avatar(self, avatar: StoredAvatar) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO character_avatars (id, character_id, status_label, image_url, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    avatar.id,
                    avatar.character_id,
                    avatar.status_label,
                    avatar.image_url,
                    json.dumps(avatar.metadata, ensure_ascii=False) if avatar.metadata is not None else None,
                    avatar.created_at,
                ),
            )
            await db.commit()

    async def get_avatar(self, avatar_id: str) -> StoredAvatar | None:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                f"SELECT {_AVATAR_COLUMNS} FROM character_avatars WHERE id = ? LIMIT 1",
                (avatar_id,),
            ) as cursor:
                row = await cursor.fetchone()
        return avatar_from_row(row) if row else None

    async def list_avatars(self, character_id: str | None = None, include_global: bool = True) -> list[StoredAvatar]:
        clauses: list[str] = []
        params: list[object] = []
        if character_id:
            clauses.append("character_id = ?")
            params.append(character_id)
            if include_global:
                clauses.append("character_id IS NULL")
        elif not include_global:
            clauses.append("character_id IS NOT NULL")
        where = f"WHERE {' OR '.join(clauses)}" if clauses else ""
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                f"SELECT {_AVATAR_COLUMNS} FROM character_avatars {where} ORDER BY created_at DESC",
                tuple(params),
            ) as cursor:
                rows = await cursor.fetchall()
        return [avatar_from_row(row) for row in rows]

    async def find_latest_avatar(self, character_id: str, status_label: str | None = None) -> StoredAvatar | None:
        if status_label is None:
            query = f"""
                SELECT {_AVATAR_COLUMNS}
                FROM character_avatars
                WHERE character_id = ?
                ORDER BY created_at DESC
                LIMIT 1
            """
            params: tuple = (character_id,)
        else:
            query = f"""
                SELECT {_AVATAR_COLUMNS}
                FROM character_avatars
                WHERE character_id = ? AND status_label = ?
                ORDER BY created_at DESC
                LIMIT 1
            """
            params = (character_id, status_label)
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(query, params) as cursor:
                row = await cursor.fetchone()
        return avatar_from_row(row) if row else None
