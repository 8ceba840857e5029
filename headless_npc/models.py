from __future__ import annotations

import copy
import math
from dataclasses import dataclass, field
from typing import Any

from .common import new_id, now_ms
from .errors import ResponseValidationError


ROLES = ("user", "assistant", "system")
MODES = ("NORMAL", "ELEVATED", "BROKEN")
MEMORY_TYPES = ("INSIGHT", "FACT", "TRAIT", "GOAL")


def _opt_float(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def _opt_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text else None


def _drop_none(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


@dataclass(slots=True)
class ChatMessage:
    role: str
    content: str
    thought: str | None = None
    stress_change: float | None = None
    trust_change: float | None = None
    current_stress: float | None = None
    image_url: str | None = None
    image_prompt: str | None = None
    message_id: str | None = None
    created_at: int | None = None

    def ensure_identity(self, created_at: int | None = None) -> "ChatMessage":
        if not self.message_id:
            self.message_id = new_id()
        if self.created_at is None:
            self.created_at = int(created_at if created_at is not None else now_ms())
        return self

    def attributes(self) -> dict[str, Any]:
        return _drop_none(
            {
                "stressChange": self.stress_change,
                "trustChange": self.trust_change,
                "currentStress": self.current_stress,
                "imageUrl": self.image_url,
                "imagePrompt": self.image_prompt,
            }
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": self.role, "content": self.content, "thought": self.thought}
        payload.update(self.attributes())
        payload["messageId"] = self.message_id
        payload["createdAt"] = self.created_at
        return _drop_none(payload)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChatMessage":
        role = str(data.get("role", "")).strip().lower()
        if role not in ROLES:
            role = "user"
        created_at = data.get("createdAt", data.get("created_at"))
        return cls(
            role=role,
            content=str(data.get("content") or ""),
            thought=_opt_str(data.get("thought")),
            stress_change=_opt_float(data.get("stressChange", data.get("stress_change"))),
            trust_change=_opt_float(data.get("trustChange", data.get("trust_change"))),
            current_stress=_opt_float(data.get("currentStress", data.get("current_stress"))),
            image_url=_opt_str(data.get("imageUrl", data.get("image_url"))),
            image_prompt=_opt_str(data.get("imagePrompt", data.get("image_prompt"))),
            message_id=_opt_str(data.get("messageId", data.get("message_id"))),
            created_at=int(created_at) if isinstance(created_at, (int, float)) else None,
        )


@dataclass(slots=True)
class CharacterState:
    stress: float = 0.0
    trust: float = 50.0
    mode: str = "NORMAL"
    name: str | None = None
    avatar_id: str | None = None
    avatar_label: str | None = None
    avatar_url: str | None = None
    # Set when a mode change dropped an avatar of the old mode; only a same-mode avatar may fill the slot.
    avatar_cleared: bool = False
    # Read-time backfill, never persisted.
    avatar_hydrated: bool = False

    @property
    def has_avatar(self) -> bool:
        return bool(self.avatar_id or self.avatar_url)

    def clear_avatar(self) -> None:
        self.avatar_id = None
        self.avatar_label = None
        self.avatar_url = None
        self.avatar_hydrated = False

    def set_avatar(self, avatar_id: str | None, image_url: str | None, status_label: str | None) -> None:
        self.avatar_id = avatar_id
        self.avatar_url = image_url
        self.avatar_label = status_label
        self.avatar_cleared = False
        self.avatar_hydrated = False

    def stored(self) -> "CharacterState":
        """Copy without any avatar that was only backfilled at read time."""
        state = self.copy()
        if self.avatar_hydrated:
            state.clear_avatar()
        return state

    def copy(self) -> "CharacterState":
        return CharacterState.from_dict(self.to_dict())

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(
            {
                "stress": self.stress,
                "trust": self.trust,
                "mode": self.mode,
                "name": self.name,
                "avatarId": self.avatar_id,
                "avatarLabel": self.avatar_label,
                "avatarUrl": self.avatar_url,
                "avatarCleared": True if self.avatar_cleared else None,
            }
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CharacterState":
        data = data or {}
        mode = str(data.get("mode") or "NORMAL").upper()
        return cls(
            stress=_opt_float(data.get("stress")) or 0.0,
            trust=_opt_float(data.get("trust")) or 0.0,
            mode=mode if mode in MODES else "NORMAL",
            name=_opt_str(data.get("name")),
            avatar_id=_opt_str(data.get("avatarId", data.get("avatar_id"))),
            avatar_label=_opt_str(data.get("avatarLabel", data.get("avatar_label"))),
            avatar_url=_opt_str(data.get("avatarUrl", data.get("avatar_url"))),
            avatar_cleared=data.get("avatarCleared", data.get("avatar_cleared")) is True,
        )


@dataclass(slots=True)
class Session:
    session_id: str
    character_id: str
    language_code: str
    character_state: CharacterState
    messages: list[ChatMessage] = field(default_factory=list)
    persona_id: str | None = None
    persona_runtime: dict[str, Any] | None = None
    version: int = 1
    created_at: int = 0
    updated_at: int = 0
    # Store bookkeeping for append-only message writes; never serialized.
    stored_message_ids: set[str] = field(default_factory=set, repr=False, compare=False)
    changed_message_ids: set[str] = field(default_factory=set, repr=False, compare=False)

    def unsaved_messages(self) -> list[ChatMessage]:
        return [message for message in self.messages if message.message_id not in self.stored_message_ids]

    def changed_messages(self) -> list[ChatMessage]:
        return [
            message
            for message in self.messages
            if message.message_id in self.changed_message_ids
        ]

    def mark_stored(self) -> None:
        self.stored_message_ids = {str(message.message_id) for message in self.messages if message.message_id}
        self.changed_message_ids = set()

    def last_assistant_message(self) -> ChatMessage | None:
        for message in reversed(self.messages):
            if message.role == "assistant":
                return message
        return None

    def copy(self) -> "Session":
        return Session.from_dict(self.to_dict())

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "sessionId": self.session_id,
            "characterId": self.character_id,
            "languageCode": self.language_code,
            "characterState": self.character_state.to_dict(),
            "messages": [message.to_dict() for message in self.messages],
            "version": self.version,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.persona_id:
            payload["personaId"] = self.persona_id
        if self.persona_runtime is not None:
            payload["personaRuntime"] = copy.deepcopy(self.persona_runtime)
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        runtime = data.get("personaRuntime")
        return cls(
            session_id=str(data["sessionId"]),
            character_id=str(data["characterId"]),
            language_code=str(data.get("languageCode") or "en"),
            character_state=CharacterState.from_dict(data.get("characterState")),
            messages=[ChatMessage.from_dict(item) for item in data.get("messages") or [] if isinstance(item, dict)],
            persona_id=_opt_str(data.get("personaId")),
            persona_runtime=copy.deepcopy(runtime) if isinstance(runtime, dict) else None,
            version=int(data.get("version") or 1),
            created_at=int(data.get("createdAt") or 0),
            updated_at=int(data.get("updatedAt") or 0),
        )


@dataclass(slots=True)
class MessagePage:
    items: list[ChatMessage]
    next_cursor: str | None

    def to_dict(self) -> dict[str, Any]:
        return {"items": [item.to_dict() for item in self.items], "nextCursor": self.next_cursor}


@dataclass(slots=True)
class MemoryEntry:
    id: str
    character_id: str
    type: str
    content: str
    importance: int
    created_at: int
    session_id: str | None = None
    distance: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(
            {
                "id": self.id,
                "characterId": self.character_id,
                "sessionId": self.session_id,
                "type": self.type,
                "content": self.content,
                "importance": self.importance,
                "createdAt": self.created_at,
                "distance": self.distance,
            }
        )


@dataclass(slots=True)
class StoredAvatar:
    id: str
    character_id: str | None
    status_label: str
    image_url: str
    metadata: dict[str, Any] | None
    created_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "characterId": self.character_id,
            "statusLabel": self.status_label,
            "imageUrl": self.image_url,
            "metadata": self.metadata,
            "createdAt": self.created_at,
        }


def _require_number(data: dict[str, Any], key: str) -> float:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ResponseValidationError(f"AI response field `{key}` must be a number")
    if not math.isfinite(float(value)):
        raise ResponseValidationError(f"AI response field `{key}` must be finite")
    return float(value)


def _require_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise ResponseValidationError(f"AI response field `{key}` must be a string")
    return value


@dataclass(slots=True)
class AIResponse:
    thought: str
    stress_change: float
    trust_change: float
    response: str
    image_prompt: str | None = None

    @classmethod
    def validate(cls, data: object) -> "AIResponse":
        if not isinstance(data, dict):
            raise ResponseValidationError("AI response must be a JSON object")
        image_prompt = data.get("image_prompt")
        if image_prompt is not None and not isinstance(image_prompt, str):
            raise ResponseValidationError("AI response field `image_prompt` must be a string")
        return cls(
            thought=_require_str(data, "thought"),
            stress_change=_require_number(data, "stress_change"),
            trust_change=_require_number(data, "trust_change"),
            response=_require_str(data, "response"),
            image_prompt=image_prompt or None,
        )

    def to_dict(self) -> dict[str, Any]:
        return _drop_none(
            {
                "thought": self.thought,
                "stress_change": self.stress_change,
                "trust_change": self.trust_change,
                "response": self.response,
                "image_prompt": self.image_prompt,
            }
        )
