from .store import SqliteSessionStore

__all__ = ["SqliteSessionStore"]
