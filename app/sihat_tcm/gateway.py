"""Tiered inference gateway: tries each model tier in order until one succeeds."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence

from pydantic import ValidationError as SchemaValidationError

from sihat_tcm.clients import InferenceClient
from sihat_tcm.errors import AllTiersExhausted, ProviderError
from sihat_tcm.schemas import InferenceRequest, ModelTier, StageAnalysis, TierAttempt
from sihat_tcm.utils import elapsed_ms, extract_json, now_ms

logger = logging.getLogger(__name__)

EmitFn = Callable[[str, dict[str, Any]], Awaitable[None]]


async def _no_emit(event: str, payload: dict[str, Any]) -> None:
    return None


@dataclass
class ChainOutcome:
    result: StageAnalysis | None
    attempts: list[TierAttempt] = field(default_factory=list)

    @property
    def failures(self) -> list[TierAttempt]:
        return [a for a in self.attempts if not a.ok]


class InferenceGateway:
    """The only component allowed to retry an inference call."""

    def __init__(self, client: InferenceClient, *, attempt_timeout_sec: float):
        self._client = client
        self._attempt_timeout_sec = attempt_timeout_sec

    def _parse(self, request: InferenceRequest, tier: ModelTier, text: str) -> StageAnalysis | None:
        data = extract_json(text or "")
        if data is None:
            return None
        data.update(
            {
                "stage": request.stage,
                "tier_id": tier.tier_id,
                "endpoint_ref": tier.provider_endpoint_ref,
            }
        )
        try:
            return StageAnalysis.model_validate(data)
        except SchemaValidationError:
            return None

    async def _attempt(
        self,
        request: InferenceRequest,
        tier: ModelTier,
    ) -> tuple[StageAnalysis | None, TierAttempt]:
        started = now_ms()

        def _failed(kind: str, detail: str) -> tuple[None, TierAttempt]:
            return None, TierAttempt(
                tier_id=tier.tier_id,
                endpoint_ref=tier.provider_endpoint_ref,
                ok=False,
                error_kind=kind,
                detail=detail[:300],
                latency_ms=elapsed_ms(started),
            )

        try:
            text = await asyncio.wait_for(
                self._client.generate(request.prompt, request.media, tier.provider_endpoint_ref),
                timeout=self._attempt_timeout_sec,
            )
        except (asyncio.TimeoutError, TimeoutError):
            return _failed("timeout", f"no response within {self._attempt_timeout_sec}s")
        except ProviderError as exc:
            return _failed("provider_error", str(exc))
        except Exception as exc:
            return _failed("provider_error", f"{type(exc).__name__}: {exc}")

        analysis = self._parse(request, tier, text)
        if analysis is None:
            return _failed("malformed_response", (text or "<empty>")[:120])

        return analysis, TierAttempt(
            tier_id=tier.tier_id,
            endpoint_ref=tier.provider_endpoint_ref,
            ok=True,
            latency_ms=elapsed_ms(started),
        )

    async def run_chain(
        self,
        request: InferenceRequest,
        tier_chain: Sequence[ModelTier],
        emit: EmitFn | None = None,
    ) -> ChainOutcome:
        emit = emit or _no_emit
        outcome = ChainOutcome(result=None)
        for tier in tier_chain:
            await emit(
                "inference.started",
                {"stage": request.stage, "tier_id": tier.tier_id},
            )
            result, attempt = await self._attempt(request, tier)
            outcome.attempts.append(attempt)
            if result is not None:
                outcome.result = result
                await emit(
                    "inference.completed",
                    {
                        "stage": request.stage,
                        "tier_id": tier.tier_id,
                        "latency_ms": attempt.latency_ms,
                        "prior_failures": len(outcome.failures),
                    },
                )
                return outcome

            logger.warning(
                "inference_attempt_failed stage=%s tier=%s kind=%s detail=%s",
                request.stage,
                tier.tier_id,
                attempt.error_kind,
                attempt.detail,
            )
            await emit(
                "inference.attempt_failed",
                {
                    "stage": request.stage,
                    "tier_id": tier.tier_id,
                    "error_kind": attempt.error_kind,
                    "detail": attempt.detail,
                    "latency_ms": attempt.latency_ms,
                },
            )
        return outcome

    async def analyze(
        self,
        request: InferenceRequest,
        tier_chain: Sequence[ModelTier],
        emit: EmitFn | None = None,
    ) -> ChainOutcome:
        outcome = await self.run_chain(request, tier_chain, emit)
        if outcome.result is None:
            raise AllTiersExhausted(outcome.failures)
        return outcome
