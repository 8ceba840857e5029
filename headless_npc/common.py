from __future__ import annotations

import json
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Any


def collapse_spaces(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def round2(value: float) -> float:
    return round(float(value) * 100) / 100


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex


def iso_utc(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def snippet(text: str, limit: int) -> str:
    cleaned = collapse_spaces(text)
    if limit <= 0:
        return ""
    if len(cleaned) <= limit:
        return cleaned
    return cleaned[: max(1, limit - 1)].rstrip() + "…"


_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_PLUS_NUMBER_RE = re.compile(r"(:\s*)\+(\d+(?:\.\d+)?)")


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text or "").strip()


def normalize_json_numbers(text: str) -> str:
    # JSON has no unary plus; models still write `"stress_change": +5`.
    return _PLUS_NUMBER_RE.sub(r"\1\2", text or "")


def coerce_json_object(value: object, default: dict[str, Any] | None = None) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    if isinstance(value, (str, bytes)) and value:
        try:
            parsed = json.loads(value)
        except (TypeError, ValueError):
            return dict(default or {})
        if isinstance(parsed, dict):
            return parsed
    return dict(default or {})
