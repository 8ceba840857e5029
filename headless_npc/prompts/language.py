from __future__ import annotations


FALLBACK_LANGUAGE = "en"

LANGUAGE_LABELS = {
    "en": "English",
    "zh": "简体中文",
}

_LANGUAGE_ALIASES = {
    "en": "en",
    "en-us": "en",
    "en-gb": "en",
    "zh": "zh",
    "zh-cn": "zh",
    "zh-hans": "zh",
}


def normalize_language_code(code: str | None) -> str:
    key = str(code or "").strip().lower().replace("_", "-")
    return _LANGUAGE_ALIASES.get(key, FALLBACK_LANGUAGE)


def resolve_language(code: str | None) -> dict[str, str]:
    normalized = normalize_language_code(code)
    return {"code": normalized, "label": LANGUAGE_LABELS.get(normalized, LANGUAGE_LABELS[FALLBACK_LANGUAGE])}
