from __future__ import annotations

import asyncio
import logging
import weakref
from typing import TYPE_CHECKING, Any, Callable

from ..common import new_id, now_ms
from ..errors import (
    MissingCharacterIdError,
    RoleMismatchError,
    SessionNotFoundError,
    VersionConflictError,
)
from ..models import CharacterState, ChatMessage, MessagePage, Session
from ..persona.runtime import merge_persona_runtime
from ..persona.state import mode_label
from ..prompts.language import normalize_language_code
from ..storage.utils import decode_cursor, encode_cursor

if TYPE_CHECKING:
    from ..characters import CharacterProfile, CharacterService
    from ..storage.base import SessionStore
    from ..storage.cache import SessionCache
    from .avatar_service import AvatarService


logger = logging.getLogger("headless_npc.sessions")

DEFAULT_LANGUAGE = "en"
MAX_PAGE_SIZE = 200


class SessionService:
    """Session lifecycle: creation, language rebuilds, turn appends and history pages.

    Every mutation reads the current row from the store (never the cache),
    bumps `version` and writes back with a compare-and-swap on the version it
    read. Mutations on one session id are additionally serialised by an
    in-process lock. The cache is written after the store and only on a
    best-effort basis.
    """

    def __init__(
        self,
        store: "SessionStore",
        characters: "CharacterService",
        avatars: "AvatarService | None" = None,
        cache: "SessionCache | None" = None,
    ) -> None:
        self.store = store
        self.characters = characters
        self.avatars = avatars
        self.cache = cache
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    async def _cache_get(self, session_id: str) -> Session | None:
        if self.cache is None:
            return None
        try:
            return await self.cache.get(session_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[sessions.cache] get failed for %s: %s", session_id, exc)
            return None

    async def _cache_call(self, action: str, *args: Any) -> None:
        if self.cache is None:
            return
        try:
            await getattr(self.cache, action)(*args)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[sessions.cache] %s failed: %s", action, exc)

    async def _cache_set(self, session: Session) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.set(session)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # A stale entry would hand an old version to the next writer.
            logger.warning("[sessions.cache] set failed for %s, evicting: %s", session.session_id, exc)
            await self._cache_call("delete", session.session_id)

    async def _load_current(self, session_id: str) -> Session | None:
        """Read for a writer: a cached copy is used only while its version matches the store."""
        cached = await self._cache_get(session_id)
        stored_version = await self.store.touch(session_id)
        if stored_version is None:
            if cached is not None:
                await self._cache_call("delete", session_id)
            return None
        if cached is not None:
            if cached.version == stored_version:
                await self._cache_call("touch", session_id)
                cached.mark_stored()
                return cached
            logger.info(
                "[sessions.cache] stale entry for %s (cached=%s stored=%s)",
                session_id,
                cached.version,
                stored_version,
            )
            await self._cache_call("delete", session_id)
        current = await self.store.get(session_id)
        if current is not None:
            await self._cache_set(current)
        return current

    async def get_or_create(
        self,
        session_id: str | None = None,
        character_id: str | None = None,
        language_code: str | None = None,
    ) -> Session:
        """Return the live session, rebuilding it when a different language is requested.

        `language_code=None` keeps whatever language an existing session has.
        """
        requested_language = normalize_language_code(language_code) if language_code else None

        if session_id:
            existing = await self._load_current(session_id)
            if existing is not None:
                if requested_language and existing.language_code != requested_language:
                    logger.info(
                        "[sessions.rebuild] session=%s language %s -> %s",
                        session_id,
                        existing.language_code,
                        requested_language,
                    )
                    await self.store.delete(existing.session_id)
                    await self._cache_call("delete", existing.session_id)
                    character_id = character_id or existing.character_id
                else:
                    return await self._hydrate_avatar(existing)

        if not character_id:
            raise MissingCharacterIdError("characterId is required when creating a new session")

        profile = self.characters.get_or_raise(character_id)
        language = requested_language or DEFAULT_LANGUAGE
        session = self._build_initial_session(profile, language)
        await self.store.save(session, expected_version=None)
        await self._cache_set(session)
        logger.info("[sessions.create] session=%s character=%s lang=%s", session.session_id, profile.id, language)
        return await self._hydrate_avatar(session)

    @staticmethod
    def _build_initial_session(profile: "CharacterProfile", language_code: str) -> Session:
        created_at = now_ms()
        state = profile.default_state.copy()
        state.name = profile.name
        greeting = ChatMessage(
            role="assistant",
            content=profile.default_greeting,
            thought="Opening line",
            stress_change=0.0,
            trust_change=0.0,
            current_stress=profile.default_state.stress,
        ).ensure_identity(created_at)
        return Session(
            session_id=new_id(),
            character_id=profile.id,
            language_code=language_code,
            character_state=state,
            messages=[greeting],
            persona_id=profile.persona_id,
            persona_runtime=profile.default_persona_runtime(),
            version=1,
            created_at=created_at,
            updated_at=created_at,
        )

    async def get(self, session_id: str) -> Session | None:
        session = await self._cache_get(session_id) or await self.store.get(session_id)
        if session is None:
            return None
        return await self._hydrate_avatar(session)

    async def require(self, session_id: str) -> Session:
        session = await self.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session

    async def _mutate(
        self,
        session_id: str,
        mutate: Callable[[Session], bool | None],
        *,
        expected_version: int | None = None,
    ) -> Session:
        async with self._lock_for(session_id):
            current = await self.store.get(session_id)
            if current is None:
                await self._cache_call("delete", session_id)
                raise SessionNotFoundError(f"Session {session_id} not found")
            if expected_version is not None and current.version != expected_version:
                await self._cache_call("delete", session_id)
                raise VersionConflictError(session_id, expected_version, current.version)

            base_version = current.version
            if mutate(current) is False:
                return await self._hydrate_avatar(current)
            current.version = base_version + 1
            current.updated_at = max(now_ms(), current.updated_at)
            try:
                await self.store.save(current, expected_version=base_version)
            except VersionConflictError:
                await self._cache_call("delete", session_id)
                raise
            await self._cache_set(current)
        return await self._hydrate_avatar(current)

    async def append_turn(
        self,
        session_id: str,
        user_message: ChatMessage,
        assistant_message: ChatMessage,
        character_state: CharacterState,
        persona_patch: dict[str, Any] | None = None,
        expected_version: int | None = None,
    ) -> Session:
        if user_message.role != "user":
            raise RoleMismatchError('user_message must have role="user"')
        if assistant_message.role != "assistant":
            raise RoleMismatchError('assistant_message must have role="assistant"')

        def apply(session: Session) -> None:
            last_created = max((message.created_at or 0 for message in session.messages), default=0)
            base = max(now_ms(), last_created + 1)
            user_message.ensure_identity(base)
            assistant_message.ensure_identity(max(base + 1, int(user_message.created_at or 0) + 1))
            session.messages.extend([user_message, assistant_message])
            session.character_state = character_state.stored()
            if persona_patch:
                session.persona_runtime = merge_persona_runtime(session.persona_runtime, persona_patch)

        return await self._mutate(session_id, apply, expected_version=expected_version)

    async def update_avatar(
        self,
        session_id: str,
        avatar_id: str | None,
        image_url: str,
        status_label: str | None = None,
    ) -> Session:
        def apply(session: Session) -> None:
            session.character_state.set_avatar(avatar_id, image_url, status_label)

        return await self._mutate(session_id, apply)

    async def attach_image_to_last_assistant_message(
        self,
        session_id: str,
        image_url: str,
        image_prompt: str | None = None,
    ) -> Session:
        def apply(session: Session) -> bool:
            target = session.last_assistant_message()
            if target is None:
                return False
            target.image_url = image_url
            if image_prompt:
                target.image_prompt = image_prompt
            if target.message_id:
                session.changed_message_ids.add(target.message_id)
            return True

        return await self._mutate(session_id, apply)

    async def apply_persona_patch(self, session_id: str, patch: dict[str, Any]) -> Session:
        def apply(session: Session) -> bool:
            if not patch:
                return False
            session.persona_runtime = merge_persona_runtime(session.persona_runtime, patch)
            return True

        return await self._mutate(session_id, apply)

    async def list_messages(self, session_id: str, limit: int = 50, cursor: str | None = None) -> MessagePage:
        page_size = max(1, min(MAX_PAGE_SIZE, int(limit)))
        before = decode_cursor(cursor)
        rows = await self.store.list_messages_page(session_id, page_size + 1, before)
        if not rows and before is None and await self.get(session_id) is None:
            raise SessionNotFoundError(f"Session {session_id} not found")

        page = rows[:page_size]
        next_cursor = encode_cursor(page[-1]) if len(rows) > page_size else None
        page.reverse()
        return MessagePage(items=page, next_cursor=next_cursor)

    async def delete(self, session_id: str) -> None:
        async with self._lock_for(session_id):
            await self.store.delete(session_id)
            await self._cache_call("delete", session_id)

    async def _hydrate_avatar(self, session: Session) -> Session:
        state = session.character_state
        if self.avatars is None or state.has_avatar:
            return session
        try:
            avatar = await self.avatars.find_latest_by_label(session.character_id, mode_label(state.mode))
            # A cleared slot waits for an avatar of the current mode.
            if avatar is None and not state.avatar_cleared:
                avatar = await self.avatars.find_latest(session.character_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[sessions.avatar] hydration failed for %s: %s", session.session_id, exc)
            return session
        if avatar is not None:
            state.avatar_id = avatar.id
            state.avatar_url = avatar.image_url
            state.avatar_label = avatar.status_label
            state.avatar_hydrated = True
        return session
