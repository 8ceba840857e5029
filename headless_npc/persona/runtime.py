from __future__ import annotations

import copy
import re
from datetime import date, datetime
from typing import Any

from ..common import clamp, iso_utc, snippet


_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")


def _parse_birth_date(value: object) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    match = _DATE_RE.match(str(value or "").strip())
    if match is None:
        return None
    try:
        return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    except ValueError:
        return None


def calculate_age(date_of_birth: object, today: date) -> int | None:
    born = _parse_birth_date(date_of_birth)
    if born is None:
        return None
    age = today.year - born.year
    if (today.month, today.day) < (born.month, born.day):
        age -= 1
    return max(0, age)


def _existing_triggers(runtime: dict[str, Any] | None) -> list[str]:
    meter = (runtime or {}).get("stress_meter")
    if not isinstance(meter, dict):
        return []
    triggers = meter.get("active_triggers")
    if not isinstance(triggers, list):
        return []
    return [str(item) for item in triggers if str(item).strip()]


def next_active_triggers(
    previous: list[str],
    stress_delta: float,
    user_text: str,
    *,
    snippet_chars: int = 48,
    max_triggers: int = 5,
) -> list[str] | None:
    """Return the new trigger window, or None when it stays as it is."""
    if stress_delta > 0:
        label = snippet(user_text, snippet_chars)
        window = list(previous)
        if label and label not in window:
            window.append(label)
        window = window[-max(1, max_triggers) :]
        return None if window == previous else window
    if stress_delta < 0 and previous:
        return previous[1:]
    return None


def _prune(patch: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in patch.items() if not (isinstance(value, dict) and not value)}


def derive_persona_patch(
    previous_runtime: dict[str, Any] | None,
    stress_delta: float,
    updated_stress: float,
    now: datetime,
    latest_user_text: str,
    date_of_birth: object = None,
    *,
    trigger_snippet_chars: int = 48,
    max_triggers: int = 5,
) -> dict[str, Any]:
    temporal: dict[str, Any] = {"current_date": iso_utc(now)}
    age = calculate_age(date_of_birth, now.date()) if date_of_birth else None
    if age is not None:
        temporal["calculated_age"] = age

    meter: dict[str, Any] = {"current_level": int(round(clamp(updated_stress, 0.0, 100.0)))}
    triggers = next_active_triggers(
        _existing_triggers(previous_runtime),
        stress_delta,
        latest_user_text,
        snippet_chars=trigger_snippet_chars,
        max_triggers=max_triggers,
    )
    if triggers is not None:
        meter["active_triggers"] = triggers

    return _prune({"temporal_status": temporal, "stress_meter": meter})


def merge_persona_runtime(runtime: dict[str, Any] | None, patch: dict[str, Any] | None) -> dict[str, Any] | None:
    """Merge a sparse patch: objects merge one level deep, lists and scalars are replaced."""
    if not patch:
        return copy.deepcopy(runtime) if runtime is not None else None
    merged: dict[str, Any] = copy.deepcopy(runtime) if isinstance(runtime, dict) else {}
    for key, value in patch.items():
        current = merged.get(key)
        if isinstance(value, dict) and isinstance(current, dict):
            combined = dict(current)
            combined.update(copy.deepcopy(value))
            merged[key] = combined
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _percent(value: float) -> int:
    return int(clamp(round(value), 0, 100))


def build_persona_highlights(runtime: dict[str, Any] | None) -> dict[str, list[dict[str, Any]]] | None:
    if not runtime:
        return None

    percent_metrics: list[dict[str, Any]] = []
    narrative_facts: list[dict[str, Any]] = []

    meter = runtime.get("stress_meter") if isinstance(runtime.get("stress_meter"), dict) else {}
    temporal = runtime.get("temporal_status") if isinstance(runtime.get("temporal_status"), dict) else {}
    scene = runtime.get("scene_context") if isinstance(runtime.get("scene_context"), dict) else {}
    status = runtime.get("current_status") if isinstance(runtime.get("current_status"), dict) else {}
    relations = runtime.get("relationship_matrix") if isinstance(runtime.get("relationship_matrix"), list) else []
    user_relation = next(
        (item for item in relations if isinstance(item, dict) and item.get("target_id") == "user"),
        None,
    )

    level = meter.get("current_level")
    if isinstance(level, (int, float)) and not isinstance(level, bool):
        percent_metrics.append({"key": "stress_meter.current_level", "value": _percent(level)})

    trust = user_relation.get("trust_level") if user_relation else None
    if isinstance(trust, (int, float)) and not isinstance(trust, bool):
        percent_metrics.append(
            {
                "key": "relationship_matrix.trust_level",
                # Relationship trust spans -100..100; the UI bar spans 0..100.
                "value": _percent((trust + 100) / 200 * 100),
                "rawValue": trust,
                "targetId": "user",
            }
        )

    for section, key in (
        (scene, "current_goal"),
        (scene, "current_tactic"),
        (status, "occupation"),
        (status, "health_status"),
        (status, "appearance_variable"),
    ):
        value = section.get(key)
        if value:
            prefix = "scene_context" if section is scene else "current_status"
            narrative_facts.append({"key": f"{prefix}.{key}", "value": str(value)})

    triggers = meter.get("active_triggers")
    if isinstance(triggers, list) and triggers:
        narrative_facts.append({"key": "stress_meter.active_triggers", "value": ", ".join(str(t) for t in triggers)})
    if temporal.get("current_date"):
        narrative_facts.append({"key": "temporal_status.current_date", "value": str(temporal["current_date"])})
    age = temporal.get("calculated_age")
    if isinstance(age, int) and not isinstance(age, bool):
        narrative_facts.append({"key": "temporal_status.calculated_age", "value": str(age)})
    if user_relation and user_relation.get("knowledge_about_target"):
        narrative_facts.append(
            {
                "key": "relationship_matrix.knowledge",
                "value": str(user_relation["knowledge_about_target"]),
                "targetId": "user",
            }
        )

    if not percent_metrics and not narrative_facts:
        return None
    return {"percentMetrics": percent_metrics, "narrativeFacts": narrative_facts}
