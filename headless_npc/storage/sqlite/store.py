from __future__ import annotations

from .avatars import SqliteAvatarsMixin
from .memory import SqliteMemoryStreamMixin
from .schema import SqliteSchemaMixin
from .sessions import SqliteSessionsMixin


class SqliteSessionStore(
    SqliteSchemaMixin,
    SqliteSessionsMixin,
    SqliteAvatarsMixin,
    SqliteMemoryStreamMixin,
):
    """Single-file SQLite store: sessions, message history, avatars and the memory stream."""

    backend_name = "sqlite"
    supports_vectors = False
