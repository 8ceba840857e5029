from __future__ import annotations

from ..common import clamp, round2
from ..models import CharacterState


BROKEN_STRESS = 99.0
ELEVATED_STRESS = 70.0


def clamp_meter(value: float, low: float = 0.0, high: float = 100.0) -> float:
    # Round first so repeated small deltas never accumulate float drift.
    return clamp(round2(value), low, high)


def resolve_mode(stress: float) -> str:
    if stress >= BROKEN_STRESS:
        return "BROKEN"
    if stress >= ELEVATED_STRESS:
        return "ELEVATED"
    return "NORMAL"


def mode_label(mode: str | None) -> str:
    return (mode or "NORMAL").strip().lower() or "normal"


def derive_character_state(
    previous: CharacterState,
    stress_change: float,
    trust_change: float,
    *,
    trust_min: float = 0.0,
) -> CharacterState:
    updated = previous.copy()
    updated.stress = clamp_meter(previous.stress + stress_change)
    updated.trust = clamp_meter(previous.trust + trust_change, trust_min, 100.0)
    updated.mode = resolve_mode(updated.stress)
    return updated


def memory_importance(stress_change: float, trust_change: float, scale: float = 5.0) -> int:
    return int(clamp(round(abs(stress_change + trust_change) * scale), 1, 10))
