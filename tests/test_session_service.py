from __future__ import annotations

import asyncio
import random
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from headless_npc.characters import CharacterService  # noqa: E402
from headless_npc.errors import (  # noqa: E402
    CharacterNotFoundError,
    InvalidCursorError,
    MissingCharacterIdError,
    RoleMismatchError,
    SessionNotFoundError,
    VersionConflictError,
)
from headless_npc.models import CharacterState, ChatMessage, Session  # noqa: E402
from headless_npc.services.avatar_service import AvatarService  # noqa: E402
from headless_npc.services.session_service import SessionService  # noqa: E402
from headless_npc.storage.cache import SessionCache  # noqa: E402
from headless_npc.storage.in_memory import InMemorySessionStore  # noqa: E402
from headless_npc.storage.utils import sort_key  # noqa: E402


CHARACTERS = CharacterService(PROJECT_ROOT / "headless_npc" / "characters" / "data")


class _BrokenCache:
    async def get(self, session_id: str) -> Session | None:
        raise RuntimeError("cache offline")

    async def set(self, session: Session) -> None:
        raise RuntimeError("cache offline")

    async def delete(self, session_id: str) -> None:
        raise RuntimeError("cache offline")

    async def touch(self, session_id: str) -> None:
        raise RuntimeError("cache offline")


def _service(store: InMemorySessionStore | None = None, cache: SessionCache | None = None) -> SessionService:
    store = store or InMemorySessionStore()
    return SessionService(store, CHARACTERS, AvatarService(store), cache)


def _turn(text: str = "hi", reply: str = "hello") -> tuple[ChatMessage, ChatMessage]:
    return ChatMessage(role="user", content=text), ChatMessage(role="assistant", content=reply, thought="...")


def test_new_session_is_seeded_with_greeting_and_default_state() -> None:
    service = _service()
    session = asyncio.run(service.get_or_create(character_id="mob", language_code="en-US"))

    assert session.version == 1
    assert session.language_code == "en"
    assert session.character_state.mode == "NORMAL"
    assert session.character_state.name == "Shigeo Kageyama"
    assert session.persona_id == "mob-kageyama"
    assert len(session.messages) == 1
    greeting = session.messages[0]
    assert greeting.role == "assistant"
    assert greeting.thought == "Opening line"
    assert greeting.stress_change == 0.0
    assert greeting.message_id and greeting.created_at


def test_character_id_is_required_for_new_sessions() -> None:
    service = _service()

    with pytest.raises(MissingCharacterIdError):
        asyncio.run(service.get_or_create(session_id="missing"))
    with pytest.raises(CharacterNotFoundError):
        asyncio.run(service.get_or_create(character_id="nobody"))


def test_language_switch_rebuilds_session_and_drops_old_one() -> None:
    store = InMemorySessionStore()
    cache = SessionCache()
    service = _service(store, cache)

    async def scenario() -> None:
        original = await service.get_or_create(character_id="mob", language_code="en")
        user, assistant = _turn()
        await service.append_turn(original.session_id, user, assistant, original.character_state)

        same = await service.get_or_create(session_id=original.session_id)
        assert same.session_id == original.session_id
        assert same.language_code == "en"

        rebuilt = await service.get_or_create(session_id=original.session_id, language_code="zh-CN")
        assert rebuilt.session_id != original.session_id
        assert rebuilt.character_id == "mob"
        assert rebuilt.language_code == "zh"
        assert [message.thought for message in rebuilt.messages] == ["Opening line"]
        assert await store.get(original.session_id) is None
        assert await cache.get(original.session_id) is None

    asyncio.run(scenario())


def test_append_turn_checks_roles() -> None:
    service = _service()

    async def scenario() -> None:
        session = await service.get_or_create(character_id="mob")
        user, assistant = _turn()
        with pytest.raises(RoleMismatchError):
            await service.append_turn(session.session_id, assistant, user, session.character_state)

    asyncio.run(scenario())


def test_append_turn_bumps_version_and_rejects_stale_writers() -> None:
    service = _service()

    async def scenario() -> None:
        session = await service.get_or_create(character_id="mob")
        user, assistant = _turn()
        state = CharacterState(stress=5, trust=52, mode="NORMAL", name="Shigeo Kageyama")
        saved = await service.append_turn(
            session.session_id,
            user,
            assistant,
            state,
            persona_patch={"stress_meter": {"current_level": 5}},
            expected_version=session.version,
        )
        assert saved.version == 2
        assert [message.role for message in saved.messages] == ["assistant", "user", "assistant"]
        assert saved.messages[1].created_at < saved.messages[2].created_at
        assert saved.character_state.stress == 5
        assert saved.persona_runtime["stress_meter"] == {"current_level": 5, "active_triggers": []}

        user, assistant = _turn("again")
        with pytest.raises(VersionConflictError):
            await service.append_turn(session.session_id, user, assistant, state, expected_version=session.version)
        assert (await service.require(session.session_id)).version == 2

    asyncio.run(scenario())


def test_concurrent_appends_are_serialised() -> None:
    service = _service()

    async def scenario() -> None:
        session = await service.get_or_create(character_id="mob")
        turns = [_turn(f"message {index}") for index in range(4)]
        await asyncio.gather(
            *(service.append_turn(session.session_id, user, assistant, session.character_state) for user, assistant in turns)
        )
        final = await service.require(session.session_id)
        assert final.version == 5
        assert len(final.messages) == 9

    asyncio.run(scenario())


def test_attach_image_targets_last_assistant_and_is_noop_without_one() -> None:
    store = InMemorySessionStore()
    service = _service(store)

    async def scenario() -> None:
        session = await service.get_or_create(character_id="mob")
        updated = await service.attach_image_to_last_assistant_message(session.session_id, "https://img/1.png", "calm")
        assert updated.version == 2
        assert updated.messages[-1].image_url == "https://img/1.png"
        assert updated.messages[-1].image_prompt == "calm"

        bare = Session(
            session_id="bare",
            character_id="mob",
            language_code="en",
            character_state=CharacterState(),
            messages=[ChatMessage(role="user", content="hi").ensure_identity(1)],
            version=3,
        )
        await store.save(bare)
        untouched = await service.attach_image_to_last_assistant_message("bare", "https://img/2.png")
        assert untouched.version == 3
        assert untouched.messages[0].image_url is None

    asyncio.run(scenario())


def _colliding_session(count: int) -> Session:
    rng = random.Random(11)
    messages = []
    for index in range(count):
        created_at = rng.choice([1000, 1000, 1000, 999, 1001])
        message = ChatMessage(role="user" if index % 2 else "assistant", content=f"m{index}")
        message.message_id = f"{rng.randrange(16**6):06x}-{index:02d}"
        message.created_at = created_at
        messages.append(message)
    rng.shuffle(messages)
    return Session(
        session_id="paged",
        character_id="mob",
        language_code="en",
        character_state=CharacterState(),
        messages=messages,
    )


def test_pagination_reconstructs_history_without_gaps_or_duplicates() -> None:
    store = InMemorySessionStore()
    service = _service(store)
    session = _colliding_session(23)
    expected = [message.message_id for message in sorted(session.messages, key=sort_key)]

    async def scenario() -> list[list[str]]:
        await store.save(session)
        pages: list[list[str]] = []
        cursor = None
        while True:
            page = await service.list_messages("paged", limit=5, cursor=cursor)
            pages.append([item.message_id for item in page.items])
            if page.next_cursor is None:
                return pages
            cursor = page.next_cursor

    pages = asyncio.run(scenario())
    combined = [message_id for page in reversed(pages) for message_id in page]

    assert combined == expected
    assert all(len(page) == 5 for page in pages[:-1])
    assert len(pages) == 5


def test_turns_appended_between_pages_do_not_shift_older_pages() -> None:
    store = InMemorySessionStore()
    service = _service(store)
    session = _colliding_session(23)
    session.version = 1
    expected = [message.message_id for message in sorted(session.messages, key=sort_key)]

    async def scenario() -> tuple[list[list[str]], int]:
        await store.save(session)
        pages: list[list[str]] = []
        cursor = None
        while True:
            page = await service.list_messages("paged", limit=4, cursor=cursor)
            pages.append([item.message_id for item in page.items])
            await service.append_turn("paged", *_turn(f"late{len(pages)}"), CharacterState())
            if page.next_cursor is None:
                break
            cursor = page.next_cursor
        final = await service.get("paged")
        assert final is not None
        return pages, len(final.messages)

    pages, final_count = asyncio.run(scenario())
    combined = [message_id for page in reversed(pages) for message_id in page]

    assert combined == expected
    assert len(set(combined)) == 23
    assert final_count == 23 + 2 * len(pages)


def test_pagination_rejects_bad_cursor_and_unknown_session() -> None:
    service = _service()

    with pytest.raises(InvalidCursorError):
        asyncio.run(service.list_messages("paged", cursor="not-a-cursor"))
    with pytest.raises(SessionNotFoundError):
        asyncio.run(service.list_messages("nope"))


def test_page_size_is_clamped() -> None:
    service = _service()

    async def scenario() -> None:
        session = await service.get_or_create(character_id="mob")
        page = await service.list_messages(session.session_id, limit=0)
        assert len(page.items) == 1
        assert page.next_cursor is None

    asyncio.run(scenario())


def test_memory_store_expires_idle_sessions_lazily() -> None:
    now = [0.0]
    store = InMemorySessionStore(ttl_seconds=10, clock=lambda: now[0])
    service = _service(store)

    async def scenario() -> None:
        session = await service.get_or_create(character_id="mob")
        now[0] = 8
        await service.get_or_create(session_id=session.session_id)
        now[0] = 16
        assert await service.get(session.session_id) is not None
        now[0] = 27
        assert await service.get(session.session_id) is None

    asyncio.run(scenario())


def test_cache_failures_do_not_break_the_session_flow(caplog: pytest.LogCaptureFixture) -> None:
    service = SessionService(InMemorySessionStore(), CHARACTERS, None, _BrokenCache())

    async def scenario() -> None:
        session = await service.get_or_create(character_id="mob")
        user, assistant = _turn()
        saved = await service.append_turn(session.session_id, user, assistant, session.character_state)
        assert saved.version == 2
        await service.delete(session.session_id)
        assert await service.get(session.session_id) is None

    with caplog.at_level("WARNING", logger="headless_npc.sessions"):
        asyncio.run(scenario())
    assert "cache offline" in caplog.text


def test_avatar_hydration_prefers_mode_label_then_any_avatar() -> None:
    store = InMemorySessionStore()
    service = _service(store)
    avatars = AvatarService(store)

    async def scenario() -> None:
        await avatars.create_avatar(character_id="mob", status_label="broken", image_url="https://img/broken.png")
        first = await service.get_or_create(character_id="mob")
        assert first.character_state.avatar_url == "https://img/broken.png"

        normal = await avatars.create_avatar(character_id="mob", status_label="normal", image_url="https://img/normal.png")
        hydrated = await service.get(first.session_id)
        assert hydrated is not None
        assert hydrated.character_state.avatar_id == normal.id
        assert hydrated.character_state.avatar_label == "normal"

        stored = await store.get(first.session_id)
        assert stored is not None and stored.character_state.avatar_url is None

    asyncio.run(scenario())


def test_persona_patch_merges_one_level_and_empty_patch_is_noop() -> None:
    service = _service()

    async def scenario() -> None:
        session = await service.get_or_create(character_id="mob")
        patched = await service.apply_persona_patch(
            session.session_id,
            {"scene_context": {"current_tactic": "Stay calm"}, "stress_meter": {"current_level": 30}},
        )
        assert patched.version == 2
        assert patched.persona_runtime["scene_context"]["current_goal"] == "Help the visitor without losing control"
        assert patched.persona_runtime["scene_context"]["current_tactic"] == "Stay calm"
        assert patched.persona_runtime["stress_meter"] == {"current_level": 30, "active_triggers": []}

        unchanged = await service.apply_persona_patch(session.session_id, {})
        assert unchanged.version == 2

    asyncio.run(scenario())


def test_cached_copy_is_refreshed_when_another_writer_moved_the_version() -> None:
    store = InMemorySessionStore()
    first = _service(store, SessionCache())
    second = _service(store, SessionCache())

    async def scenario() -> None:
        session = await first.get_or_create(character_id="mob")
        assert (await second.get_or_create(session_id=session.session_id)).version == 1

        user, assistant = _turn()
        await first.append_turn(session.session_id, user, assistant, session.character_state)

        seen = await second.get_or_create(session_id=session.session_id)
        assert seen.version == 2
        user, assistant = _turn("from the other worker")
        saved = await second.append_turn(
            session.session_id, user, assistant, seen.character_state, expected_version=seen.version
        )
        assert saved.version == 3

    asyncio.run(scenario())


def test_version_conflict_evicts_the_cached_copy() -> None:
    store = InMemorySessionStore()
    cache = SessionCache()
    service = _service(store, cache)

    async def scenario() -> None:
        session = await service.get_or_create(character_id="mob")
        stale = session.copy()
        stale.version = 7
        await cache.set(stale)

        user, assistant = _turn()
        with pytest.raises(VersionConflictError):
            await service.append_turn(session.session_id, user, assistant, session.character_state, expected_version=7)
        assert await cache.get(session.session_id) is None

    asyncio.run(scenario())
