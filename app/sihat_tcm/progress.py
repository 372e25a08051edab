"""Completion percentage derived from stage position and in-stage field completion."""

from __future__ import annotations

from typing import Any

from sihat_tcm.schemas import SessionState
from sihat_tcm.stages import Stage, StageRegistry


def _is_filled(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, list, dict, tuple, set)):
        return len(value) > 0
    return True


def draft_fraction(stage: Stage, draft: dict[str, Any]) -> float:
    fields = stage.input_fields
    if not fields:
        return 0.0
    filled = sum(1 for name in fields if _is_filled(draft.get(name)))
    return filled / len(fields)


def compute_completion(session: SessionState, registry: StageRegistry) -> float:
    """Recompute ``completion_percentage``; never lower than the stored value."""
    if session.status == "complete":
        return 100.0
    ordinal = min(session.current_stage_ordinal, len(registry) - 1)
    stage = registry.stage_at(ordinal)
    value = registry.base_progress(ordinal) + stage.weight * draft_fraction(stage, session.draft)
    value = round(min(max(value, 0.0), 100.0), 2)
    return max(value, session.completion_percentage)
