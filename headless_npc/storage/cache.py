from __future__ import annotations

import json
import time
from collections import OrderedDict
from typing import Callable

from ..models import Session


class SessionCache:
    """Advisory read-through cache keyed by session id.

    Entries are stored as JSON text so callers never share mutable state with
    the cache. The oldest entry is evicted once `max_entries` is reached.
    """

    def __init__(
        self,
        ttl_seconds: int = 7200,
        max_entries: int = 512,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = max(1, int(ttl_seconds))
        self.max_entries = max(1, int(max_entries))
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, str]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, session_id: str) -> Session | None:
        cached = self._entries.get(session_id)
        if cached is None:
            return None
        expires_at, payload = cached
        if self._clock() > expires_at:
            self._entries.pop(session_id, None)
            return None
        return Session.from_dict(json.loads(payload))

    async def set(self, session: Session) -> None:
        payload = json.dumps(session.to_dict(), ensure_ascii=False)
        self._entries.pop(session.session_id, None)
        self._entries[session.session_id] = (self._clock() + self.ttl_seconds, payload)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    async def delete(self, session_id: str) -> None:
        self._entries.pop(session_id, None)

    async def touch(self, session_id: str) -> None:
        cached = self._entries.get(session_id)
        if cached is None:
            return
        self._entries[session_id] = (self._clock() + self.ttl_seconds, cached[1])
        self._entries.move_to_end(session_id)

    def clear(self) -> None:
        self._entries.clear()
