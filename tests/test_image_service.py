from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from headless_npc.characters import CharacterService  # noqa: E402
from headless_npc.errors import ClientError  # noqa: E402
from headless_npc.models import ChatMessage  # noqa: E402
from headless_npc.services.avatar_service import AvatarService  # noqa: E402
from headless_npc.services.image_service import ImageService  # noqa: E402
from headless_npc.services.session_service import SessionService  # noqa: E402
from headless_npc.storage.in_memory import InMemorySessionStore  # noqa: E402


CHARACTERS = CharacterService(PROJECT_ROOT / "headless_npc" / "characters" / "data")


class _FakeImageLLM:
    def __init__(self) -> None:
        self.requests: list[tuple[str, str]] = []

    async def generate_image(self, prompt: str, ratio: str = "1:1") -> str:
        self.requests.append((prompt, ratio))
        return f"https://img.example.com/{len(self.requests)}.png"


def _build() -> tuple[ImageService, SessionService, AvatarService, _FakeImageLLM]:
    store = InMemorySessionStore()
    avatars = AvatarService(store)
    sessions = SessionService(store, CHARACTERS, avatars)
    llm = _FakeImageLLM()
    return ImageService(llm=llm, sessions=sessions, avatars=avatars, characters=CHARACTERS), sessions, avatars, llm


def test_explicit_prompt_wins_and_ratio_defaults_by_intent() -> None:
    images, sessions, _, llm = _build()

    async def scenario() -> None:
        session = await sessions.get_or_create(character_id="mob")
        result = await images.handle_generation(session, prompt="  a quiet street  ")
        assert result.prompt == "a quiet street"
        assert result.session.version == 2
        assert result.session.messages[-1].image_url == result.image_url
        assert result.avatar is None

        await images.handle_generation(result.session, intent="scene")

    asyncio.run(scenario())
    assert llm.requests[0] == ("a quiet street", "1:1")
    assert llm.requests[1][1] == "16:9"
    assert llm.requests[1][0].startswith("Spirits and Such consultation office")


def test_configured_prompt_follows_mood() -> None:
    images, sessions, _, llm = _build()

    async def scenario() -> None:
        session = await sessions.get_or_create(character_id="mob")
        await images.handle_generation(session, avatar_mood="broken")
        await images.handle_generation(session.copy(), avatar_mood="unknown-mood")

    asyncio.run(scenario())
    assert "???% mode" in llm.requests[0][0]
    assert "blank expression" in llm.requests[1][0]


def test_last_image_prompt_can_be_reused() -> None:
    images, sessions, _, llm = _build()

    async def scenario() -> None:
        session = await sessions.get_or_create(character_id="mob")
        saved = await sessions.append_turn(
            session.session_id,
            ChatMessage(role="user", content="show me"),
            ChatMessage(role="assistant", content="ok", image_prompt="a glowing aura over a rooftop"),
            session.character_state,
        )
        await images.handle_generation(saved, use_image_prompt=True, ratio="4:3")

    asyncio.run(scenario())
    assert llm.requests == [("a glowing aura over a rooftop", "4:3")]


def test_update_avatar_stores_and_adopts_the_image() -> None:
    images, sessions, avatars, _ = _build()

    async def scenario() -> None:
        session = await sessions.get_or_create(character_id="mob")
        result = await images.handle_generation(session, update_avatar=True, metadata={"source": "test"})

        assert result.avatar is not None
        assert result.avatar.status_label == "normal"
        assert result.avatar.metadata["source"] == "test"
        assert result.avatar.metadata["ratio"] == "1:1"
        assert result.session.character_state.avatar_id == result.avatar.id
        assert result.session.character_state.avatar_url == result.image_url
        assert result.session.version == 3

        listed = await avatars.list_avatars("mob", include_global=False)
        assert [item.id for item in listed] == [result.avatar.id]

    asyncio.run(scenario())


def test_unknown_intent_or_ratio_is_rejected() -> None:
    images, sessions, _, llm = _build()

    async def scenario() -> None:
        session = await sessions.get_or_create(character_id="mob")
        with pytest.raises(ClientError):
            await images.handle_generation(session, intent="poster")
        with pytest.raises(ClientError):
            await images.handle_generation(session, ratio="21:9")

    asyncio.run(scenario())
    assert llm.requests == []
