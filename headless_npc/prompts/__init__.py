from .engine import PromptEngine
from .language import normalize_language_code, resolve_language

__all__ = ["PromptEngine", "normalize_language_code", "resolve_language"]
