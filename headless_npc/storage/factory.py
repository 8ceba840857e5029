from __future__ import annotations

from ..config import Settings
from .base import SessionStore
from .cache import SessionCache
from .in_memory import InMemorySessionStore


def build_session_store(settings: Settings) -> SessionStore:
    backend = settings.session_backend
    if backend == "memory":
        return InMemorySessionStore(settings.session_ttl_seconds)
    if backend == "sqlite":
        from .sqlite import SqliteSessionStore

        return SqliteSessionStore(settings.sqlite_path)
    if backend == "postgres":
        if not settings.database_url:
            raise ValueError("DATABASE_URL is required when SESSION_BACKEND=postgres")

        from .postgres_store import PostgresSessionStore

        return PostgresSessionStore(settings.database_url, embedding_dim=settings.embedding_dim)
    raise ValueError("SESSION_BACKEND must be 'memory', 'sqlite' or 'postgres'")


def build_session_cache(settings: Settings) -> SessionCache | None:
    if not settings.session_cache_enabled:
        return None
    return SessionCache(settings.session_cache_ttl_seconds, settings.session_cache_max_entries)
