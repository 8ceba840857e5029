from __future__ import annotations

import asyncio
import sqlite3
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from headless_npc.characters import CharacterService  # noqa: E402
from headless_npc.errors import MemoryBackendUnavailable, VersionConflictError  # noqa: E402
from headless_npc.models import CharacterState, ChatMessage, MemoryEntry, Session, StoredAvatar  # noqa: E402
from headless_npc.services.session_service import SessionService  # noqa: E402
from headless_npc.storage.sqlite import SqliteSessionStore  # noqa: E402


CHARACTERS = CharacterService(PROJECT_ROOT / "headless_npc" / "characters" / "data")


def _session(session_id: str = "s1") -> Session:
    greeting = ChatMessage(role="assistant", content="hello", thought="Opening line", stress_change=0.0)
    return Session(
        session_id=session_id,
        character_id="mob",
        language_code="zh",
        character_state=CharacterState(stress=12.5, trust=40, mode="NORMAL", name="Shigeo"),
        messages=[greeting.ensure_identity(1000)],
        persona_id="mob-kageyama",
        persona_runtime={"stress_meter": {"current_level": 12, "active_triggers": ["你好"]}},
        version=1,
        created_at=1000,
        updated_at=1000,
    )


def test_session_round_trip_keeps_state_runtime_and_attributes(tmp_path: Path) -> None:
    store = SqliteSessionStore(tmp_path / "sessions.db")

    async def scenario() -> Session | None:
        await store.init()
        await store.save(_session())
        return await store.get("s1")

    loaded = asyncio.run(scenario())

    assert loaded is not None
    assert loaded.language_code == "zh"
    assert loaded.character_state.stress == 12.5
    assert loaded.persona_runtime == {"stress_meter": {"current_level": 12, "active_triggers": ["你好"]}}
    assert loaded.messages[0].thought == "Opening line"
    assert loaded.messages[0].stress_change == 0.0


def test_writes_are_compare_and_swap_on_version(tmp_path: Path) -> None:
    store = SqliteSessionStore(tmp_path / "sessions.db")

    async def scenario() -> None:
        await store.init()
        session = _session()
        await store.save(session)
        with pytest.raises(VersionConflictError):
            await store.save(session)

        session.messages.append(ChatMessage(role="user", content="hi").ensure_identity(1001))
        session.version = 2
        await store.save(session, expected_version=1)

        stale = _session()
        stale.version = 2
        stale.messages.append(ChatMessage(role="user", content="lost").ensure_identity(1002))
        with pytest.raises(VersionConflictError) as exc_info:
            await store.save(stale, expected_version=1)
        assert exc_info.value.actual == 2

        stored = await store.get("s1")
        assert stored is not None
        assert [message.content for message in stored.messages] == ["hello", "hi"]

    asyncio.run(scenario())


def test_delete_cascades_to_messages(tmp_path: Path) -> None:
    db_path = tmp_path / "sessions.db"
    store = SqliteSessionStore(db_path)

    async def scenario() -> None:
        await store.init()
        await store.save(_session())
        await store.delete("s1")
        assert await store.get("s1") is None
        assert await store.list_messages_page("s1", 10) == []

    asyncio.run(scenario())
    with sqlite3.connect(db_path) as conn:
        assert conn.execute("SELECT COUNT(*) FROM session_messages").fetchone()[0] == 0


def test_pagination_through_service_on_sqlite(tmp_path: Path) -> None:
    store = SqliteSessionStore(tmp_path / "sessions.db")
    service = SessionService(store, CHARACTERS)

    async def scenario() -> list[str]:
        await store.init()
        session = _session()
        session.messages = [
            ChatMessage(role="user", content=f"m{index}", message_id=f"id-{index % 3}-{index:02d}", created_at=1000 + index // 4)
            for index in range(10)
        ]
        await store.save(session)
        seen: list[str] = []
        cursor = None
        while True:
            page = await service.list_messages("s1", limit=3, cursor=cursor)
            seen = [item.message_id for item in page.items] + seen
            if page.next_cursor is None:
                return seen
            cursor = page.next_cursor

    seen = asyncio.run(scenario())
    expected = sorted(
        (f"id-{index % 3}-{index:02d}" for index in range(10)),
        key=lambda message_id: (1000 + int(message_id[-2:]) // 4, message_id),
    )
    assert seen == expected


def test_pagination_stays_consistent_while_turns_are_appended(tmp_path: Path) -> None:
    store = SqliteSessionStore(tmp_path / "sessions.db")
    service = SessionService(store, CHARACTERS)

    async def scenario() -> tuple[list[str], list[list[str]], int]:
        await store.init()
        session = await service.get_or_create(character_id="mob", language_code="en")
        for index in range(5):
            await service.append_turn(
                session.session_id,
                ChatMessage(role="user", content=f"q{index}"),
                ChatMessage(role="assistant", content=f"a{index}"),
                session.character_state,
            )
        original = await service.get(session.session_id)
        assert original is not None
        pages: list[list[str]] = []
        cursor = None
        while True:
            page = await service.list_messages(session.session_id, limit=3, cursor=cursor)
            pages.append([item.message_id for item in page.items])
            await service.append_turn(
                session.session_id,
                ChatMessage(role="user", content=f"late{len(pages)}"),
                ChatMessage(role="assistant", content="late reply"),
                session.character_state,
            )
            if page.next_cursor is None:
                break
            cursor = page.next_cursor
        final = await service.get(session.session_id)
        assert final is not None
        return [message.message_id for message in original.messages], pages, len(final.messages)

    original_ids, pages, final_count = asyncio.run(scenario())
    combined = [message_id for page in reversed(pages) for message_id in page]

    assert combined == original_ids
    assert len(set(combined)) == len(combined) == 11
    assert final_count == 11 + 2 * len(pages)


def test_save_only_inserts_new_messages_and_updates_attached_images(tmp_path: Path) -> None:
    db_path = tmp_path / "sessions.db"
    store = SqliteSessionStore(db_path)
    service = SessionService(store, CHARACTERS)

    async def scenario() -> tuple[str, str]:
        await store.init()
        session = await service.get_or_create(character_id="mob", language_code="en")
        greeting = session.messages[0]

        loaded = await store.get(session.session_id)
        assert loaded is not None
        assert loaded.unsaved_messages() == []
        loaded.messages[0].content = "edited in memory only"
        loaded.messages.append(ChatMessage(role="user", content="hi").ensure_identity(loaded.updated_at + 1))
        base_version = loaded.version
        loaded.version += 1
        await store.save(loaded, expected_version=base_version)
        assert loaded.unsaved_messages() == []

        await service.append_turn(
            session.session_id,
            ChatMessage(role="user", content="again"),
            ChatMessage(role="assistant", content="reply"),
            session.character_state,
        )
        updated = await service.attach_image_to_last_assistant_message(
            session.session_id,
            "https://img.example.com/1.png",
            "a quiet street",
        )
        return greeting.message_id, updated.messages[-1].message_id

    greeting_id, reply_id = asyncio.run(scenario())

    with sqlite3.connect(db_path) as conn:
        assert conn.execute("SELECT COUNT(*) FROM session_messages").fetchone()[0] == 4
        content = conn.execute("SELECT content FROM session_messages WHERE message_id = ?", (greeting_id,)).fetchone()[0]
        attributes = conn.execute("SELECT attributes FROM session_messages WHERE message_id = ?", (reply_id,)).fetchone()[0]
    assert content != "edited in memory only"
    assert "https://img.example.com/1.png" in attributes
    assert "a quiet street" in attributes


def test_memory_entries_persist_but_vectors_are_unavailable(tmp_path: Path) -> None:
    store = SqliteSessionStore(tmp_path / "sessions.db")
    entry = MemoryEntry(id="mob:s1:2", character_id="mob", session_id="s1", type="INSIGHT", content="calm", importance=3, created_at=5)

    async def scenario() -> None:
        await store.init()
        assert await store.create_memory_entry(entry) is True
        assert await store.create_memory_entry(entry) is False
        total, items = await store.list_memory_entries(character_id="mob")
        assert total == 1
        assert items[0].content == "calm"
        with pytest.raises(MemoryBackendUnavailable):
            await store.upsert_memory_embedding(entry.id, [0.1])
        with pytest.raises(MemoryBackendUnavailable):
            await store.search_memory("mob", [0.1], 5)

    asyncio.run(scenario())


def test_avatar_lookup_by_label_and_global_listing(tmp_path: Path) -> None:
    store = SqliteSessionStore(tmp_path / "sessions.db")

    async def scenario() -> None:
        await store.init()
        await store.create_avatar(StoredAvatar("a1", "mob", "normal", "https://img/a1.png", {"prompt": "p"}, 1))
        await store.create_avatar(StoredAvatar("a2", "mob", "broken", "https://img/a2.png", None, 2))
        await store.create_avatar(StoredAvatar("g1", None, "normal", "https://img/g1.png", None, 3))

        latest_normal = await store.find_latest_avatar("mob", "normal")
        assert latest_normal is not None and latest_normal.id == "a1"
        assert latest_normal.metadata == {"prompt": "p"}
        latest_any = await store.find_latest_avatar("mob")
        assert latest_any is not None and latest_any.id == "a2"

        assert [item.id for item in await store.list_avatars("mob", True)] == ["g1", "a2", "a1"]
        assert [item.id for item in await store.list_avatars("mob", False)] == ["a2", "a1"]

    asyncio.run(scenario())


def test_schema_mismatch_raises_without_opt_in(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SQLITE_RESET_ON_SCHEMA_MISMATCH", raising=False)
    db_path = tmp_path / "sessions.db"

    asyncio.run(SqliteSessionStore(db_path).init())
    with sqlite3.connect(db_path) as conn:
        conn.execute("PRAGMA user_version = 999")
        conn.commit()

    with pytest.raises(RuntimeError, match="schema version mismatch"):
        asyncio.run(SqliteSessionStore(db_path).init())


def test_schema_mismatch_can_reset_with_explicit_opt_in(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    db_path = tmp_path / "sessions.db"
    asyncio.run(SqliteSessionStore(db_path).init())

    with sqlite3.connect(db_path) as conn:
        conn.execute("PRAGMA user_version = 999")
        conn.commit()

    monkeypatch.setenv("SQLITE_RESET_ON_SCHEMA_MISMATCH", "1")
    asyncio.run(SqliteSessionStore(db_path).init())

    with sqlite3.connect(db_path) as conn:
        version = conn.execute("PRAGMA user_version").fetchone()[0]
    assert version == SqliteSessionStore.SCHEMA_VERSION
