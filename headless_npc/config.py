from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


load_dotenv()

_PACKAGE_DIR = Path(__file__).resolve().parent


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


def _env_path(name: str, default: Path) -> Path:
    raw = _env_lookup(name)
    if raw is None or not raw.strip():
        return default
    return Path(raw.strip()).expanduser()


@dataclass(slots=True)
class Settings:
    llm_api_base: str
    llm_api_key: str
    text_model_name: str
    image_model_name: str
    embedding_model_name: str
    embedding_dim: int
    llm_timeout_seconds: int
    llm_temperature: float
    mock_llm_responses: bool

    session_backend: str
    sqlite_path: Path
    database_url: str
    session_ttl_seconds: int
    session_cache_enabled: bool
    session_cache_ttl_seconds: int
    session_cache_max_entries: int

    history_window: int
    trust_min: float
    rag_enabled: bool
    rag_top_k: int
    rag_score_threshold: float
    memory_importance_scale: float
    trigger_snippet_chars: int
    max_active_triggers: int

    characters_dir: Path
    templates_dir: Path

    gateway_key: str
    host: str
    port: int
    log_level: str

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            llm_api_base=_env_str("LLM_API_BASE", "https://api.openai.com/v1").rstrip("/"),
            llm_api_key=_env_str("LLM_API_KEY", ""),
            text_model_name=_env_str("TEXT_MODEL_NAME", "gpt-4o-mini"),
            image_model_name=_env_str("IMG_MODEL_NAME", "gpt-image-1", aliases=("IMAGE_MODEL_NAME",)),
            embedding_model_name=_env_str("EMBEDDING_MODEL_NAME", "text-embedding-3-large"),
            embedding_dim=_env_int("EMBEDDING_DIM", 3072),
            llm_timeout_seconds=_env_int("LLM_TIMEOUT_SECONDS", 90),
            llm_temperature=_env_float("LLM_TEMPERATURE", 0.8),
            mock_llm_responses=_env_bool("MOCK_LLM_RESPONSES", False),
            session_backend=_env_str("SESSION_BACKEND", "memory", aliases=("SESSION_STORE",)).lower(),
            sqlite_path=_env_path("SQLITE_PATH", Path("./data/sessions.db")),
            database_url=_env_str("DATABASE_URL", "", aliases=("DB_URL",)),
            session_ttl_seconds=_env_int("SESSION_TTL_SECONDS", 2 * 60 * 60),
            session_cache_enabled=_env_bool("SESSION_CACHE_ENABLED", True),
            session_cache_ttl_seconds=_env_int("SESSION_CACHE_TTL_SECONDS", 2 * 60 * 60),
            session_cache_max_entries=_env_int("SESSION_CACHE_MAX_ENTRIES", 512),
            history_window=_env_int("HISTORY_WINDOW", 10),
            trust_min=_env_float("TRUST_MIN", 0.0),
            rag_enabled=_env_bool("RAG_ENABLED", True),
            rag_top_k=_env_int("RAG_TOP_K", 5),
            rag_score_threshold=_env_float("RAG_SCORE_THRESHOLD", 0.25),
            memory_importance_scale=_env_float("MEMORY_IMPORTANCE_SCALE", 5.0),
            trigger_snippet_chars=_env_int("TRIGGER_SNIPPET_CHARS", 48),
            max_active_triggers=_env_int("MAX_ACTIVE_TRIGGERS", 5),
            characters_dir=_env_path("CHARACTERS_DIR", _PACKAGE_DIR / "characters" / "data"),
            templates_dir=_env_path("TEMPLATES_DIR", _PACKAGE_DIR / "prompts" / "templates"),
            gateway_key=_env_str("NPC_GATEWAY_KEY", "", aliases=("LLM_API_AUTH_TOKEN",)),
            host=_env_str("HOST", "0.0.0.0"),
            port=_env_int("PORT", 4000),
            log_level=_env_str("LOG_LEVEL", "INFO").upper(),
        )

    def validate(self) -> None:
        if self.session_backend not in {"memory", "sqlite", "postgres"}:
            raise ValueError("SESSION_BACKEND must be 'memory', 'sqlite' or 'postgres'")
        if self.session_backend == "postgres" and not self.database_url:
            raise ValueError("DATABASE_URL is required when SESSION_BACKEND=postgres")
        if not self.mock_llm_responses and not self.llm_api_key:
            raise ValueError("LLM_API_KEY is required in .env (or set MOCK_LLM_RESPONSES=true)")
        if self.history_window < 1:
            raise ValueError("HISTORY_WINDOW must be >= 1")
        if self.trust_min not in {0.0, -100.0}:
            raise ValueError("TRUST_MIN must be 0 or -100")
        if self.embedding_dim < 1:
            raise ValueError("EMBEDDING_DIM must be >= 1")
        if self.max_active_triggers < 1:
            raise ValueError("MAX_ACTIVE_TRIGGERS must be >= 1")
        if self.session_ttl_seconds < 1:
            raise ValueError("SESSION_TTL_SECONDS must be >= 1")
