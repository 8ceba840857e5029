from .runtime import build_persona_highlights, derive_persona_patch, merge_persona_runtime
from .state import derive_character_state, memory_importance, mode_label, resolve_mode

__all__ = [
    "build_persona_highlights",
    "derive_character_state",
    "derive_persona_patch",
    "memory_importance",
    "merge_persona_runtime",
    "mode_label",
    "resolve_mode",
]
