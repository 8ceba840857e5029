from __future__ import annotations

import math
import time
from dataclasses import dataclass, replace
from typing import Any, Callable

from ..errors import VersionConflictError
from ..models import ChatMessage, MemoryEntry, Session, StoredAvatar
from .utils import sort_key


@dataclass(slots=True)
class _Entry:
    data: dict[str, Any]
    expires_at: float


def _l2_distance(left: list[float], right: list[float]) -> float:
    if len(left) != len(right):
        raise ValueError(f"embedding dimension mismatch ({len(left)} != {len(right)})")
    return math.sqrt(sum((a - b) ** 2 for a, b in zip(left, right)))


class InMemorySessionStore:
    """Process-local store with a sliding TTL, used for development and tests."""

    backend_name = "memory"
    supports_vectors = True

    def __init__(self, ttl_seconds: int = 7200, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = max(1, int(ttl_seconds))
        self._clock = clock
        self._sessions: dict[str, _Entry] = {}
        self._avatars: dict[str, StoredAvatar] = {}
        self._memory: dict[str, MemoryEntry] = {}
        self._embeddings: dict[str, list[float]] = {}

    async def init(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def ping(self) -> None:
        return None

    def _live_entry(self, session_id: str) -> _Entry | None:
        entry = self._sessions.get(session_id)
        if entry is None:
            return None
        if self._clock() > entry.expires_at:
            self._sessions.pop(session_id, None)
            return None
        return entry

    async def get(self, session_id: str) -> Session | None:
        entry = self._live_entry(session_id)
        return Session.from_dict(entry.data) if entry else None

    async def save(self, session: Session, *, expected_version: int | None = None) -> None:
        current = self._live_entry(session.session_id)
        if expected_version is not None:
            actual = int(current.data.get("version") or 0) if current else None
            if actual != expected_version:
                raise VersionConflictError(session.session_id, expected_version, actual)
        self._sessions[session.session_id] = _Entry(
            data=session.to_dict(),
            expires_at=self._clock() + self.ttl_seconds,
        )

    async def delete(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    async def touch(self, session_id: str) -> int | None:
        entry = self._live_entry(session_id)
        if entry is None:
            return None
        entry.expires_at = self._clock() + self.ttl_seconds
        return int(entry.data.get("version") or 0)

    async def list_messages_page(
        self,
        session_id: str,
        limit: int,
        before: tuple[int, str] | None = None,
    ) -> list[ChatMessage]:
        entry = self._live_entry(session_id)
        if entry is None:
            return []
        messages = [ChatMessage.from_dict(item) for item in entry.data.get("messages") or []]
        if before is not None:
            messages = [message for message in messages if sort_key(message) < before]
        messages.sort(key=sort_key, reverse=True)
        return messages[: max(0, int(limit))]

    async def create_avatar(self, avatar: StoredAvatar) -> None:
        self._avatars[avatar.id] = replace(avatar)

    async def get_avatar(self, avatar_id: str) -> StoredAvatar | None:
        avatar = self._avatars.get(avatar_id)
        return replace(avatar) if avatar else None

    async def list_avatars(self, character_id: str | None = None, include_global: bool = True) -> list[StoredAvatar]:
        items = []
        for avatar in self._avatars.values():
            if character_id:
                if avatar.character_id != character_id and not (include_global and avatar.character_id is None):
                    continue
            elif not include_global and avatar.character_id is None:
                continue
            items.append(replace(avatar))
        items.sort(key=lambda item: item.created_at, reverse=True)
        return items

    async def find_latest_avatar(self, character_id: str, status_label: str | None = None) -> StoredAvatar | None:
        candidates = [
            avatar
            for avatar in self._avatars.values()
            if avatar.character_id == character_id and (status_label is None or avatar.status_label == status_label)
        ]
        if not candidates:
            return None
        return replace(max(candidates, key=lambda item: item.created_at))

    async def create_memory_entry(self, entry: MemoryEntry) -> bool:
        if entry.id in self._memory:
            return False
        self._memory[entry.id] = replace(entry, distance=None)
        return True

    async def list_memory_entries(
        self,
        character_id: str | None = None,
        session_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[int, list[MemoryEntry]]:
        rows = [
            entry
            for entry in self._memory.values()
            if (character_id is None or entry.character_id == character_id)
            and (session_id is None or entry.session_id == session_id)
        ]
        rows.sort(key=lambda item: item.created_at, reverse=True)
        return len(rows), [replace(item) for item in rows[offset : offset + limit]]

    async def upsert_memory_embedding(self, entry_id: str, embedding: list[float]) -> None:
        self._embeddings[entry_id] = [float(value) for value in embedding]

    async def search_memory(self, character_id: str, embedding: list[float], limit: int) -> list[MemoryEntry]:
        scored: list[MemoryEntry] = []
        for entry_id, vector in self._embeddings.items():
            entry = self._memory.get(entry_id)
            if entry is None or entry.character_id != character_id:
                continue
            scored.append(replace(entry, distance=_l2_distance(vector, embedding)))
        scored.sort(key=lambda item: (item.distance, item.id))
        return scored[: max(0, int(limit))]
