from __future__ import annotations

import copy
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..errors import CharacterNotFoundError, ConfigurationError
from ..models import CharacterState


logger = logging.getLogger("headless_npc.characters")

_LANGUAGE_RE = re.compile(r"[a-z]{2}(?:-[a-z]{2})?")


def _read_text(path: Path) -> str:
    last_exc: Exception | None = None
    for encoding in ("utf-8-sig", "utf-8"):
        try:
            return path.read_text(encoding=encoding)
        except UnicodeDecodeError as exc:
            last_exc = exc
    if last_exc is not None:
        raise last_exc
    raise RuntimeError(f"Unable to read character JSON: {path}")


def _sanitize_language(value: object) -> str | None:
    text = str(value or "").strip().lower().replace("_", "-")
    if not text:
        return None
    match = _LANGUAGE_RE.search(text)
    return match.group(0) if match else text


def _localized(mapping: object, language_code: str | None) -> str | None:
    if not isinstance(mapping, dict) or not mapping:
        return None
    order: list[str] = []
    if language_code:
        normalized = language_code.strip().lower()
        order.append(normalized)
        base = normalized.split("-")[0]
        if base and base != normalized:
            order.append(base)
    else:
        order.extend(["zh-cn", "zh"])
    if "en" not in order:
        order.append("en")
    for candidate in order:
        value = mapping.get(candidate)
        if value:
            return str(value)
    first = next(iter(mapping.values()))
    return str(first) if first is not None else None


@dataclass(slots=True)
class CharacterProfile:
    id: str
    name: str
    codename: str
    default_greeting: str
    default_state: CharacterState
    statuses: dict[str, str]
    languages: list[str]
    image_style_guidelines: str = ""
    image_prompts: dict[str, Any] = field(default_factory=dict)
    capabilities: dict[str, bool] = field(default_factory=dict)
    persona: dict[str, Any] | None = None
    display: dict[str, Any] | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def persona_id(self) -> str | None:
        if not self.persona:
            return None
        value = self.persona.get("id") or self.persona.get("persona_id")
        return str(value) if value else None

    @property
    def date_of_birth(self) -> str | None:
        static = (self.persona or {}).get("static_profile")
        if not isinstance(static, dict):
            return None
        value = static.get("date_of_birth")
        return str(value) if value else None

    def default_persona_runtime(self) -> dict[str, Any] | None:
        runtime = (self.persona or {}).get("runtime_state")
        return copy.deepcopy(runtime) if isinstance(runtime, dict) else None

    def template_context(self) -> dict[str, Any]:
        return copy.deepcopy(self.raw)

    def summary(self, language_code: str | None = None) -> dict[str, Any]:
        languages: list[str] = []
        for item in self.languages:
            code = _sanitize_language(item)
            if code and code not in languages:
                languages.append(code)
        payload: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "codename": self.codename,
            "avatarUrl": self.default_state.avatar_url,
            "languages": languages,
            "capabilities": dict(self.capabilities),
        }
        if self.display:
            status_line = self.display.get("status_line") if isinstance(self.display.get("status_line"), dict) else None
            payload["display"] = {
                "title": _localized(self.display.get("title"), language_code),
                "subtitle": _localized(self.display.get("subtitle"), language_code),
                "statusLine": {
                    "normal": _localized(status_line.get("normal"), language_code),
                    "broken": _localized(status_line.get("broken"), language_code),
                }
                if status_line
                else None,
            }
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CharacterProfile":
        missing = [key for key in ("id", "name", "default_greeting", "default_state") if not data.get(key)]
        if missing:
            raise ValueError(f"missing required field(s): {', '.join(missing)}")
        if not isinstance(data["default_state"], dict):
            raise ValueError("default_state must be an object")
        persona = data.get("persona")
        image_prompts = data.get("image_prompts")
        statuses = data.get("statuses")
        state = CharacterState.from_dict(data["default_state"])
        if not state.name:
            state.name = str(data["name"])
        return cls(
            id=str(data["id"]).strip(),
            name=str(data["name"]),
            codename=str(data.get("codename") or data["name"]),
            default_greeting=str(data["default_greeting"]),
            default_state=state,
            statuses={str(k): str(v) for k, v in statuses.items()} if isinstance(statuses, dict) else {},
            languages=[str(item) for item in data.get("languages") or []],
            image_style_guidelines=str(data.get("image_style_guidelines") or ""),
            image_prompts=copy.deepcopy(image_prompts) if isinstance(image_prompts, dict) else {},
            capabilities={str(k): bool(v) for k, v in (data.get("capabilities") or {}).items()},
            persona=copy.deepcopy(persona) if isinstance(persona, dict) else None,
            display=copy.deepcopy(data["display"]) if isinstance(data.get("display"), dict) else None,
            raw=copy.deepcopy(data),
        )


class CharacterService:
    """Loads character profiles from `*.json` files in one directory."""

    def __init__(self, characters_dir: str | Path) -> None:
        self.characters_dir = Path(characters_dir)
        self._profiles: dict[str, CharacterProfile] = {}
        self.reload()

    def reload(self) -> None:
        profiles: dict[str, CharacterProfile] = {}
        if self.characters_dir.is_dir():
            for path in sorted(self.characters_dir.glob("*.json")):
                try:
                    payload = json.loads(_read_text(path))
                    if not isinstance(payload, dict):
                        raise ValueError("root must be an object")
                    profile = CharacterProfile.from_dict(payload)
                except (OSError, ValueError) as exc:
                    logger.warning("[characters.load] skipped %s: %s", path.name, exc)
                    continue
                profiles[profile.id] = profile
        if not profiles:
            raise ConfigurationError(f"No character profiles found under {self.characters_dir}")
        self._profiles = profiles
        logger.info("[characters.load] loaded %s profile(s) from %s", len(profiles), self.characters_dir)

    def list_characters(self, language_code: str | None = None) -> list[dict[str, Any]]:
        return [profile.summary(language_code) for profile in self._profiles.values()]

    def get(self, character_id: str) -> CharacterProfile | None:
        return self._profiles.get(str(character_id or "").strip())

    def get_or_raise(self, character_id: str) -> CharacterProfile:
        profile = self.get(character_id)
        if profile is None:
            raise CharacterNotFoundError(character_id)
        return profile
