from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from ..errors import MemoryBackendUnavailable, UpstreamError
from ..models import MEMORY_TYPES, MemoryEntry

if TYPE_CHECKING:
    from ..storage.base import SessionStore
    from .llm_client import LLMClient


logger = logging.getLogger("headless_npc.memory")


class MemoryService:
    """Long-term memory stream: write-once entries plus nearest-neighbour recall."""

    def __init__(
        self,
        store: "SessionStore",
        llm: "LLMClient",
        *,
        top_k: int = 5,
        score_threshold: float = 0.25,
        enabled: bool = True,
    ) -> None:
        self.store = store
        self.llm = llm
        self.top_k = max(1, int(top_k))
        self.score_threshold = float(score_threshold)
        self.enabled = bool(enabled)

    def _require_vectors(self) -> None:
        if not getattr(self.store, "supports_vectors", False):
            raise MemoryBackendUnavailable(
                f"Vector search is not supported by the '{self.store.backend_name}' session backend"
            )

    async def _embed(self, text: str) -> list[float]:
        try:
            return await self.llm.embed(text)
        except asyncio.CancelledError:
            raise
        except UpstreamError as exc:
            raise MemoryBackendUnavailable(f"Embedding request failed: {exc}") from exc

    async def search(self, character_id: str, query_text: str) -> list[MemoryEntry]:
        if not self.enabled or not (query_text or "").strip():
            return []
        self._require_vectors()
        embedding = await self._embed(query_text)
        rows = await self.store.search_memory(character_id, embedding, self.top_k)
        hits = [row for row in rows if row.distance is not None and row.distance <= self.score_threshold]
        hits.sort(key=lambda item: item.distance)
        logger.debug(
            "[memory.search] character=%s candidates=%s hits=%s threshold=%.2f",
            character_id,
            len(rows),
            len(hits),
            self.score_threshold,
        )
        return hits[: self.top_k]

    async def create(self, entry: MemoryEntry) -> bool:
        if entry.type not in MEMORY_TYPES:
            raise ValueError(f"Unsupported memory type: {entry.type}")
        entry.importance = max(1, min(10, int(entry.importance)))
        return await self.store.create_memory_entry(entry)

    async def upsert_embedding(self, entry_id: str, text: str) -> None:
        self._require_vectors()
        embedding = await self._embed(text)
        await self.store.upsert_memory_embedding(entry_id, embedding)

    async def list_entries(
        self,
        character_id: str | None = None,
        session_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[int, list[MemoryEntry]]:
        return await self.store.list_memory_entries(
            character_id=character_id,
            session_id=session_id,
            limit=max(1, min(200, int(limit))),
            offset=max(0, int(offset)),
        )
