"""Fixed examination order for a diagnosis session."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from pydantic import BaseModel

from sihat_tcm.errors import ConfigurationError, StageNotFound
from sihat_tcm.schemas import (
    AudioPayload,
    BasicInfoPayload,
    DeviceSyncPayload,
    FacePayload,
    InquiryPayload,
    PulsePayload,
    SynthesisPayload,
    TonguePayload,
)


@dataclass(frozen=True)
class Stage:
    stage_id: str
    ordinal: int
    payload_model: type[BaseModel]
    produces_ai_output: bool
    # Share of the overall completion percentage owned by this stage.
    weight: float

    @property
    def input_fields(self) -> tuple[str, ...]:
        return tuple(name for name in self.payload_model.model_fields if name != "stage")

    @property
    def required_inputs(self) -> frozenset[str]:
        return frozenset(
            name
            for name, info in self.payload_model.model_fields.items()
            if name != "stage" and info.is_required()
        )


class StageRegistry:
    def __init__(self, stages: Sequence[Stage]):
        ordered = tuple(sorted(stages, key=lambda s: s.ordinal))
        if not ordered:
            raise ConfigurationError("Stage registry is empty")
        if [s.ordinal for s in ordered] != list(range(len(ordered))):
            raise ConfigurationError("Stage ordinals must be contiguous from 0")
        ids = [s.stage_id for s in ordered]
        if len(set(ids)) != len(ids):
            raise ConfigurationError("Stage ids must be unique")
        if any(s.weight < 0 for s in ordered):
            raise ConfigurationError("Stage weights must be non-negative")
        total = sum(s.weight for s in ordered)
        if abs(total - 100.0) > 1e-6:
            raise ConfigurationError(f"Stage weights must sum to 100 (got {total})")

        self._stages = ordered
        self._by_id = {s.stage_id: s for s in ordered}

    def stages(self) -> tuple[Stage, ...]:
        return self._stages

    def __len__(self) -> int:
        return len(self._stages)

    @property
    def terminal(self) -> Stage:
        return self._stages[-1]

    def stage_at(self, ordinal: int) -> Stage:
        if ordinal < 0 or ordinal >= len(self._stages):
            raise StageNotFound(ordinal)
        return self._stages[ordinal]

    def by_id(self, stage_id: str) -> Stage | None:
        return self._by_id.get(stage_id)

    def next_ordinal(self, current: int) -> int | None:
        stage = self.stage_at(current)
        if stage.ordinal == len(self._stages) - 1:
            return None
        return stage.ordinal + 1

    def base_progress(self, ordinal: int) -> float:
        """Completion owned by every stage strictly before ``ordinal``."""
        return sum(s.weight for s in self._stages[: max(ordinal, 0)])


def default_registry() -> StageRegistry:
    return StageRegistry(
        [
            Stage("basic_info", 0, BasicInfoPayload, produces_ai_output=False, weight=14),
            Stage("inquiry", 1, InquiryPayload, produces_ai_output=True, weight=14),
            Stage("tongue", 2, TonguePayload, produces_ai_output=True, weight=14),
            Stage("face", 3, FacePayload, produces_ai_output=True, weight=14),
            Stage("audio", 4, AudioPayload, produces_ai_output=True, weight=14),
            Stage("pulse", 5, PulsePayload, produces_ai_output=False, weight=14),
            Stage("device_sync", 6, DeviceSyncPayload, produces_ai_output=False, weight=10),
            Stage("synthesis", 7, SynthesisPayload, produces_ai_output=True, weight=6),
        ]
    )
