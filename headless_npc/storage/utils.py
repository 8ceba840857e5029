from __future__ import annotations

import json
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Mapping

import aiosqlite

from ..common import coerce_json_object
from ..errors import InvalidCursorError
from ..models import ChatMessage, MemoryEntry, StoredAvatar


def _sqlite_busy_timeout_ms() -> int:
    raw = os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000").strip()
    try:
        timeout = int(raw)
    except ValueError:
        timeout = 5000
    return max(0, min(timeout, 60000))


@asynccontextmanager
async def _sqlite_connection(db_path: str | Path) -> AsyncIterator[aiosqlite.Connection]:
    async with aiosqlite.connect(db_path) as db:
        await db.execute("PRAGMA foreign_keys=ON")
        timeout_ms = _sqlite_busy_timeout_ms()
        if timeout_ms > 0:
            await db.execute(f"PRAGMA busy_timeout={timeout_ms}")
        db.row_factory = aiosqlite.Row
        yield db


def encode_cursor(message: ChatMessage) -> str:
    return f"{int(message.created_at or 0)}:{message.message_id}"


def decode_cursor(cursor: str | None) -> tuple[int, str] | None:
    if cursor is None or cursor == "":
        return None
    created_raw, sep, message_id = str(cursor).partition(":")
    if not sep or not message_id:
        raise InvalidCursorError(f"Invalid cursor: {cursor!r}")
    try:
        created_at = int(created_raw)
    except ValueError as exc:
        raise InvalidCursorError(f"Invalid cursor: {cursor!r}") from exc
    if created_at < 0:
        raise InvalidCursorError(f"Invalid cursor: {cursor!r}")
    return created_at, message_id


def sort_key(message: ChatMessage) -> tuple[int, str]:
    return int(message.created_at or 0), str(message.message_id or "")


def message_attributes_json(message: ChatMessage) -> str:
    return json.dumps(message.attributes(), ensure_ascii=False)


def message_from_row(row: Mapping[str, Any]) -> ChatMessage:
    payload: dict[str, Any] = {
        "role": row["role"],
        "content": row["content"],
        "thought": row["thought"],
        "messageId": row["message_id"],
        "createdAt": int(row["created_at"]),
    }
    attributes = coerce_json_object(row["attributes"])
    for key, value in attributes.items():
        if value is not None:
            payload.setdefault(key, value)
    return ChatMessage.from_dict(payload)


def avatar_from_row(row: Mapping[str, Any]) -> StoredAvatar:
    metadata = row["metadata"]
    return StoredAvatar(
        id=str(row["id"]),
        character_id=row["character_id"],
        status_label=str(row["status_label"]),
        image_url=str(row["image_url"]),
        metadata=coerce_json_object(metadata) if metadata is not None else None,
        created_at=int(row["created_at"]),
    )


def memory_entry_from_row(row: Mapping[str, Any], distance: float | None = None) -> MemoryEntry:
    return MemoryEntry(
        id=str(row["id"]),
        character_id=str(row["character_id"]),
        session_id=row["session_id"],
        type=str(row["type"]),
        content=str(row["content"]),
        importance=int(row["importance"]),
        created_at=int(row["created_at"]),
        distance=distance,
    )
