from .base import SessionStore
from .cache import SessionCache
from .factory import build_session_cache, build_session_store
from .in_memory import InMemorySessionStore

__all__ = [
    "InMemorySessionStore",
    "SessionCache",
    "SessionStore",
    "build_session_cache",
    "build_session_store",
]
