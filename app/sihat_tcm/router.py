"""Complexity/urgency based model tier selection."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from pydantic import ValidationError as SchemaValidationError

from sihat_tcm.errors import ConfigurationError
from sihat_tcm.schemas import ModelTier

logger = logging.getLogger(__name__)


def build_tier_table(entries: Iterable[Mapping[str, Any]]) -> tuple[ModelTier, ...]:
    try:
        return tuple(ModelTier.model_validate(dict(entry)) for entry in entries)
    except SchemaValidationError as exc:
        raise ConfigurationError(f"Invalid model tier table: {exc}") from exc


class ModelRouter:
    """Selects a preferred tier and the fallback chain that follows it.

    The table is validated once here; ``select_tier`` never fails at runtime.
    """

    def __init__(self, tiers: Iterable[ModelTier]):
        ordered = tuple(sorted(tiers, key=lambda t: t.capability_rank))
        if not ordered:
            raise ConfigurationError("Model tier table is empty")
        ids = [t.tier_id for t in ordered]
        if len(set(ids)) != len(ids):
            raise ConfigurationError("Model tier ids must be unique")
        ranks = [t.capability_rank for t in ordered]
        if len(set(ranks)) != len(ranks):
            raise ConfigurationError("Model tier capability ranks must be unique")
        self._tiers = ordered

    @property
    def tiers(self) -> tuple[ModelTier, ...]:
        return self._tiers

    def _base_index(self, complexity_score: float) -> int:
        for index, tier in enumerate(self._tiers):
            if tier.max_complexity_score >= complexity_score:
                return index
        # Nothing is rated for this score; the most capable tier is the closest fit.
        return len(self._tiers) - 1

    def select_tier(self, complexity_score: float, urgency_flag: bool = False) -> list[ModelTier]:
        index = self._base_index(complexity_score)
        if urgency_flag:
            index = min(index + 1, len(self._tiers) - 1)
        chain = list(self._tiers[index:])
        logger.debug(
            "tier_selected score=%.4f urgent=%s chain=%s",
            complexity_score,
            urgency_flag,
            [t.tier_id for t in chain],
        )
        return chain
