from __future__ import annotations

from typing import Protocol, runtime_checkable

from ..models import ChatMessage, MemoryEntry, Session, StoredAvatar


@runtime_checkable
class SessionStore(Protocol):
    """Durable home of sessions, avatars and the long-term memory stream.

    `save()` with `expected_version=None` inserts a new session. Otherwise the
    write only succeeds when the stored version still equals
    `expected_version`; a stale base raises `VersionConflictError`.
    """

    backend_name: str
    supports_vectors: bool

    async def init(self) -> None: ...

    async def close(self) -> None: ...

    async def ping(self) -> None: ...

    async def get(self, session_id: str) -> Session | None: ...

    async def save(self, session: Session, *, expected_version: int | None = None) -> None: ...

    async def delete(self, session_id: str) -> None: ...

    async def touch(self, session_id: str) -> int | None:
        """Refresh the session's idle timer and return its stored version, or None when it is gone."""
        ...

    async def list_messages_page(
        self,
        session_id: str,
        limit: int,
        before: tuple[int, str] | None = None,
    ) -> list[ChatMessage]:
        """Newest-first messages strictly older than `before`, at most `limit`."""
        ...

    async def create_avatar(self, avatar: StoredAvatar) -> None: ...

    async def get_avatar(self, avatar_id: str) -> StoredAvatar | None: ...

    async def list_avatars(self, character_id: str | None = None, include_global: bool = True) -> list[StoredAvatar]: ...

    async def find_latest_avatar(self, character_id: str, status_label: str | None = None) -> StoredAvatar | None: ...

    async def create_memory_entry(self, entry: MemoryEntry) -> bool: ...

    async def list_memory_entries(
        self,
        character_id: str | None = None,
        session_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[int, list[MemoryEntry]]: ...

    async def upsert_memory_embedding(self, entry_id: str, embedding: list[float]) -> None: ...

    async def search_memory(self, character_id: str, embedding: list[float], limit: int) -> list[MemoryEntry]: ...
