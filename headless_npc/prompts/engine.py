from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from jinja2 import ChainableUndefined, Environment, Template, TemplateError

from ..errors import ConfigurationError
from ..models import CharacterState
from ..persona.state import BROKEN_STRESS
from .language import resolve_language


logger = logging.getLogger("headless_npc.prompts")


def _read_text(path: Path) -> str:
    last_exc: Exception | None = None
    for encoding in ("utf-8-sig", "utf-8"):
        try:
            return path.read_text(encoding=encoding)
        except UnicodeDecodeError as exc:
            last_exc = exc
    if last_exc is not None:
        raise last_exc
    raise RuntimeError(f"Unable to read prompt template: {path}")


class PromptEngine:
    """Selects a system-prompt template per character/language and renders it."""

    def __init__(self, templates_dir: str | Path) -> None:
        self.templates_dir = Path(templates_dir)
        self._env = Environment(
            undefined=ChainableUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )
        self._cache: dict[str, tuple[int, Template]] = {}

    def candidate_paths(self, character_id: str, language_code: str) -> list[Path]:
        return [
            self.templates_dir / f"{character_id}-{language_code}.md",
            self.templates_dir / f"{character_id}-en.md",
            self.templates_dir / f"default-{language_code}.md",
            self.templates_dir / "default.md",
        ]

    def resolve_template_path(self, character_id: str, language_code: str) -> Path:
        candidates = self.candidate_paths(character_id, language_code)
        for path in candidates[:-1]:
            if path.is_file():
                return path
        # default.md is mandatory; a missing file surfaces as FileNotFoundError.
        return candidates[-1]

    def _load_template(self, path: Path) -> Template:
        mtime_ns = path.stat().st_mtime_ns
        cache_key = str(path.resolve())
        cached = self._cache.get(cache_key)
        if cached is not None and cached[0] == mtime_ns:
            return cached[1]
        try:
            template = self._env.from_string(_read_text(path))
        except TemplateError as exc:
            raise ConfigurationError(f"Prompt template {path.name} is invalid: {exc}") from exc
        self._cache[cache_key] = (mtime_ns, template)
        return template

    @staticmethod
    def resolve_state_label(statuses: dict[str, Any] | None, state: CharacterState) -> str:
        statuses = statuses or {}
        if state.stress >= BROKEN_STRESS:
            return str(statuses.get("broken") or "UNSTABLE")
        return str(statuses.get("normal") or "NORMAL")

    def build(
        self,
        character: Any,
        state: CharacterState,
        language_code: str,
        persona_runtime: dict[str, Any] | None = None,
    ) -> str:
        language = resolve_language(language_code)
        path = self.resolve_template_path(character.id, language["code"])
        template = self._load_template(path)

        if persona_runtime is None:
            persona_runtime = character.default_persona_runtime()

        state_context = state.to_dict()
        state_context.setdefault("name", character.name)
        context = {
            "character": character.template_context(),
            "state": state_context,
            "persona_runtime": persona_runtime or {},
            "language": language,
            "state_label": self.resolve_state_label(character.statuses, state),
        }
        logger.debug("[prompts.build] character=%s template=%s lang=%s", character.id, path.name, language["code"])
        return template.render(**context)
