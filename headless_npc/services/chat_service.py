from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Iterable

from ..common import now_ms
from ..errors import MemoryBackendUnavailable, MissingUserMessageError
from ..models import AIResponse, CharacterState, ChatMessage, MemoryEntry, Session
from ..persona.runtime import derive_persona_patch
from ..persona.state import derive_character_state, memory_importance, mode_label

if TYPE_CHECKING:
    from ..characters import CharacterService
    from ..prompts.engine import PromptEngine
    from .avatar_service import AvatarService
    from .llm_client import LLMClient
    from .memory_service import MemoryService
    from .session_service import SessionService


logger = logging.getLogger("headless_npc.chat")


@dataclass(slots=True)
class TurnResult:
    session: Session
    assistant_message: ChatMessage
    ai: AIResponse

    def to_payload(self) -> dict[str, Any]:
        return {
            "sessionId": self.session.session_id,
            "characterState": self.session.character_state.to_dict(),
            "assistantMessage": self.assistant_message.to_dict(),
            "imagePrompt": self.ai.image_prompt,
            "sessionVersion": self.session.version,
            "personaRuntime": self.session.persona_runtime,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_memory_block(memories: Iterable[MemoryEntry]) -> str:
    bullets = "\n".join(f"- ({entry.type}) {entry.content}" for entry in memories)
    return f"\n\n[Long-term memories]\n{bullets}" if bullets else ""


class ChatService:
    """Runs one conversational turn end to end."""

    def __init__(
        self,
        *,
        prompts: "PromptEngine",
        sessions: "SessionService",
        characters: "CharacterService",
        llm: "LLMClient",
        memory: "MemoryService | None" = None,
        avatars: "AvatarService | None" = None,
        history_window: int = 10,
        trust_min: float = 0.0,
        importance_scale: float = 5.0,
        trigger_snippet_chars: int = 48,
        max_active_triggers: int = 5,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.prompts = prompts
        self.sessions = sessions
        self.characters = characters
        self.llm = llm
        self.memory = memory
        self.avatars = avatars
        self.history_window = max(1, int(history_window))
        self.trust_min = float(trust_min)
        self.importance_scale = float(importance_scale)
        self.trigger_snippet_chars = int(trigger_snippet_chars)
        self.max_active_triggers = int(max_active_triggers)
        self._clock = clock
        self._background: set[asyncio.Task[None]] = set()

    async def handle_turn(
        self,
        session: Session,
        incoming_messages: list[ChatMessage],
        *,
        stream: bool = False,
        on_chunk: Callable[[str], None] | None = None,
    ) -> TurnResult:
        latest_user = next((message for message in reversed(incoming_messages) if message.role == "user"), None)
        if latest_user is None:
            raise MissingUserMessageError("At least one user message is required")

        profile = self.characters.get_or_raise(session.character_id)
        system_prompt = self.prompts.build(
            profile,
            session.character_state,
            session.language_code,
            session.persona_runtime,
        )
        system_prompt += await self._recall(session.character_id, latest_user.content)

        history = [
            {"role": message.role, "content": message.content}
            for message in session.messages[-self.history_window :]
            if message.role in {"user", "assistant"}
        ]
        history.append({"role": "user", "content": latest_user.content})

        ai = await self.llm.complete_chat(system_prompt, history, stream=stream, on_chunk=on_chunk)

        previous = session.character_state
        updated = derive_character_state(previous.stored(), ai.stress_change, ai.trust_change, trust_min=self.trust_min)
        if updated.mode != previous.mode:
            await self._switch_avatar(session.character_id, previous, updated)

        persona_patch = derive_persona_patch(
            session.persona_runtime or profile.default_persona_runtime(),
            ai.stress_change,
            updated.stress,
            self._clock(),
            latest_user.content,
            profile.date_of_birth,
            trigger_snippet_chars=self.trigger_snippet_chars,
            max_triggers=self.max_active_triggers,
        )

        user_message = ChatMessage(role="user", content=latest_user.content)
        assistant_message = ChatMessage(
            role="assistant",
            content=ai.response,
            thought=ai.thought,
            stress_change=ai.stress_change,
            trust_change=ai.trust_change,
            current_stress=updated.stress,
            image_prompt=ai.image_prompt,
        )
        saved = await self.sessions.append_turn(
            session.session_id,
            user_message,
            assistant_message,
            updated,
            persona_patch=persona_patch,
            expected_version=session.version,
        )
        logger.info(
            "[chat.turn] session=%s version=%s stress=%.2f trust=%.2f mode=%s",
            saved.session_id,
            saved.version,
            updated.stress,
            updated.trust,
            updated.mode,
        )

        self._schedule_memory_write(saved, ai)
        return TurnResult(session=saved, assistant_message=assistant_message, ai=ai)

    async def _recall(self, character_id: str, query: str) -> str:
        if self.memory is None:
            return ""
        try:
            memories = await self.memory.search(character_id, query)
        except MemoryBackendUnavailable as exc:
            logger.warning("[memory.search] degraded, continuing without long-term memories: %s", exc)
            return ""
        return format_memory_block(memories)

    async def _switch_avatar(self, character_id: str, previous: CharacterState, updated: CharacterState) -> None:
        if self.avatars is None:
            return
        try:
            avatar = await self.avatars.find_latest_by_label(character_id, mode_label(updated.mode))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[chat.avatar] lookup failed, keeping current avatar: %s", exc)
            return
        if avatar is not None:
            updated.set_avatar(avatar.id, avatar.image_url, avatar.status_label)
        elif previous.avatar_label == mode_label(previous.mode):
            updated.clear_avatar()
            updated.avatar_cleared = True

    def _schedule_memory_write(self, session: Session, ai: AIResponse) -> None:
        if self.memory is None:
            return
        content = (ai.thought or "").strip() or (ai.response or "").strip()
        if not content:
            return
        entry = MemoryEntry(
            id=f"{session.character_id}:{session.session_id}:{session.version}",
            character_id=session.character_id,
            session_id=session.session_id,
            type="INSIGHT",
            content=content,
            importance=memory_importance(ai.stress_change, ai.trust_change, self.importance_scale),
            created_at=now_ms(),
        )
        task = asyncio.create_task(self._write_memory(entry))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _write_memory(self, entry: MemoryEntry) -> None:
        assert self.memory is not None
        try:
            await self.memory.create(entry)
            await self.memory.upsert_embedding(entry.id, entry.content)
        except asyncio.CancelledError:
            raise
        except MemoryBackendUnavailable as exc:
            logger.info("[memory.write] stored %s without embedding: %s", entry.id, exc)
        except Exception:
            logger.exception("[memory.write] failed for %s", entry.id)

    @property
    def pending_writes(self) -> int:
        return len(self._background)

    async def drain(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
