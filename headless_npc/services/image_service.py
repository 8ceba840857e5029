from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..errors import ClientError, UpstreamFormatError
from ..models import Session, StoredAvatar
from ..persona.state import mode_label

if TYPE_CHECKING:
    from ..characters import CharacterProfile, CharacterService
    from .avatar_service import AvatarService
    from .llm_client import LLMClient
    from .session_service import SessionService


logger = logging.getLogger("headless_npc.images")

IMAGE_INTENTS = ("avatar", "scene")
IMAGE_RATIOS = ("1:1", "16:9", "4:3")


@dataclass(slots=True)
class ImageResult:
    image_url: str
    prompt: str
    session: Session
    avatar: StoredAvatar | None = None


class ImageService:
    def __init__(
        self,
        *,
        llm: "LLMClient",
        sessions: "SessionService",
        avatars: "AvatarService",
        characters: "CharacterService",
    ) -> None:
        self.llm = llm
        self.sessions = sessions
        self.avatars = avatars
        self.characters = characters

    async def handle_generation(
        self,
        session: Session,
        *,
        prompt: str | None = None,
        intent: str = "avatar",
        avatar_mood: str | None = None,
        ratio: str | None = None,
        use_image_prompt: bool = False,
        update_avatar: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> ImageResult:
        if intent not in IMAGE_INTENTS:
            raise ClientError(f"Unsupported image intent: {intent}")
        if ratio is not None and ratio not in IMAGE_RATIOS:
            raise ClientError(f"Unsupported image ratio: {ratio}")

        resolved_prompt = (prompt or "").strip() or self.resolve_prompt(
            session,
            intent=intent,
            avatar_mood=avatar_mood,
            use_image_prompt=use_image_prompt,
        )
        if not resolved_prompt:
            raise ClientError("Prompt is required for image generation")

        resolved_ratio = ratio or ("16:9" if intent == "scene" else "1:1")
        image_url = await self.llm.generate_image(resolved_prompt, resolved_ratio)
        if not image_url:
            raise UpstreamFormatError("Image API returned empty payload")

        current = session
        stored: StoredAvatar | None = None
        if update_avatar:
            label = self.resolve_avatar_label(session, avatar_mood)
            stored = await self.avatars.create_avatar(
                character_id=session.character_id,
                status_label=label,
                image_url=image_url,
                metadata={
                    "prompt": resolved_prompt,
                    "ratio": resolved_ratio,
                    "useImagePrompt": bool(use_image_prompt),
                    "intent": intent,
                    "avatarMood": label,
                    **(metadata or {}),
                },
            )
            current = await self.sessions.update_avatar(
                session.session_id,
                stored.id,
                stored.image_url,
                stored.status_label,
            )

        current = await self.sessions.attach_image_to_last_assistant_message(
            current.session_id,
            image_url,
            resolved_prompt,
        )
        logger.info(
            "[images.generate] session=%s intent=%s ratio=%s avatar=%s",
            current.session_id,
            intent,
            resolved_ratio,
            stored.id if stored else "-",
        )
        return ImageResult(image_url=image_url, prompt=resolved_prompt, session=current, avatar=stored)

    def resolve_prompt(
        self,
        session: Session,
        *,
        intent: str = "avatar",
        avatar_mood: str | None = None,
        use_image_prompt: bool = False,
    ) -> str:
        if use_image_prompt:
            for message in reversed(session.messages):
                if message.role == "assistant" and message.image_prompt:
                    return message.image_prompt
        profile = self.characters.get_or_raise(session.character_id)
        return self._configured_prompt(profile, session, intent, avatar_mood)

    @staticmethod
    def _configured_prompt(
        profile: "CharacterProfile",
        session: Session,
        intent: str,
        avatar_mood: str | None,
    ) -> str:
        prompts = profile.image_prompts.get(intent)
        fallback = profile.image_prompts.get("fallback") or (
            f"{profile.name} portrait, {profile.image_style_guidelines}, "
            f"mood {mode_label(session.character_state.mode)}"
        )
        if not isinstance(prompts, dict) or not prompts:
            return str(fallback)
        mood = str(avatar_mood or session.character_state.avatar_label or session.character_state.mode or "default")
        mood = mood.lower()
        return str(prompts.get(mood) or prompts.get("default") or fallback)

    @staticmethod
    def resolve_avatar_label(session: Session, explicit: str | None = None) -> str:
        return explicit or session.character_state.avatar_label or mode_label(session.character_state.mode)
