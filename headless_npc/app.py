from __future__ import annotations

import logging
from dataclasses import dataclass

from .characters import CharacterService
from .config import Settings
from .prompts.engine import PromptEngine
from .services.avatar_service import AvatarService
from .services.chat_service import ChatService
from .services.image_service import ImageService
from .services.llm_client import LLMClient
from .services.memory_service import MemoryService
from .services.session_service import SessionService
from .storage.base import SessionStore
from .storage.cache import SessionCache
from .storage.factory import build_session_cache, build_session_store

logger = logging.getLogger("headless_npc")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


@dataclass(slots=True)
class AppContainer:
    settings: Settings
    store: SessionStore
    cache: SessionCache | None
    llm: LLMClient
    characters: CharacterService
    prompts: PromptEngine
    avatars: AvatarService
    memory: MemoryService
    sessions: SessionService
    chat: ChatService
    images: ImageService

    async def close(self) -> None:
        await self.chat.drain()
        await self.llm.close()
        await self.store.close()


def build_llm_client(settings: Settings) -> LLMClient:
    return LLMClient(
        base_url=settings.llm_api_base,
        api_key=settings.llm_api_key,
        text_model=settings.text_model_name,
        image_model=settings.image_model_name,
        embedding_model=settings.embedding_model_name,
        embedding_dim=settings.embedding_dim,
        timeout_seconds=settings.llm_timeout_seconds,
        temperature=settings.llm_temperature,
        mock_responses=settings.mock_llm_responses,
    )


async def build_container(
    settings: Settings,
    *,
    store: SessionStore | None = None,
    llm: LLMClient | None = None,
) -> AppContainer:
    """Bring up every async resource first, then wire the services."""
    store = store or build_session_store(settings)
    llm = llm or build_llm_client(settings)
    await store.init()
    await llm.start()
    try:
        characters = CharacterService(settings.characters_dir)
    except Exception:
        await llm.close()
        await store.close()
        raise
    prompts = PromptEngine(settings.templates_dir)
    cache = build_session_cache(settings)
    avatars = AvatarService(store)
    memory = MemoryService(
        store,
        llm,
        top_k=settings.rag_top_k,
        score_threshold=settings.rag_score_threshold,
        enabled=settings.rag_enabled,
    )
    sessions = SessionService(store, characters, avatars, cache)
    chat = ChatService(
        prompts=prompts,
        sessions=sessions,
        characters=characters,
        llm=llm,
        memory=memory,
        avatars=avatars,
        history_window=settings.history_window,
        trust_min=settings.trust_min,
        importance_scale=settings.memory_importance_scale,
        trigger_snippet_chars=settings.trigger_snippet_chars,
        max_active_triggers=settings.max_active_triggers,
    )
    images = ImageService(llm=llm, sessions=sessions, avatars=avatars, characters=characters)
    logger.info(
        "[app.start] backend=%s cache=%s mock_llm=%s rag=%s",
        store.backend_name,
        "on" if cache else "off",
        settings.mock_llm_responses,
        settings.rag_enabled,
    )
    return AppContainer(
        settings=settings,
        store=store,
        cache=cache,
        llm=llm,
        characters=characters,
        prompts=prompts,
        avatars=avatars,
        memory=memory,
        sessions=sessions,
        chat=chat,
        images=images,
    )


def main() -> None:
    import uvicorn

    from .api import create_app

    settings = Settings.from_env()
    configure_logging(settings.log_level)
    settings.validate()
    if not settings.gateway_key:
        logger.warning("NPC_GATEWAY_KEY is empty: API routes are open to any caller.")
    try:
        uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_config=None)
    except KeyboardInterrupt:
        logger.info("Shutdown requested, exiting.")
