"""Diagnosis session state machine: start, advance, resume, abandon."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, TypeVar
from uuid import uuid4

from pydantic import BaseModel
from pydantic import ValidationError as SchemaValidationError

from sihat_tcm import complexity
from sihat_tcm.errors import (
    AIUnavailable,
    AllTiersExhausted,
    PersistenceError,
    SessionClosed,
    ValidationError,
)
from sihat_tcm.gateway import InferenceGateway
from sihat_tcm.progress import compute_completion
from sihat_tcm.prompts import build_request
from sihat_tcm.report import build_report
from sihat_tcm.router import ModelRouter
from sihat_tcm.schemas import DiagnosisReport, RecoverableSession, SessionState
from sihat_tcm.stages import Stage, StageRegistry
from sihat_tcm.storage import SessionStore
from sihat_tcm.utils import utc_now

logger = logging.getLogger(__name__)

EmitFn = Callable[[str, dict[str, Any]], Awaitable[None]]
T = TypeVar("T")


async def _no_emit(event: str, payload: dict[str, Any]) -> None:
    return None


def _error_fields(exc: SchemaValidationError) -> list[str]:
    fields = {".".join(str(part) for part in err["loc"]) for err in exc.errors()}
    return sorted(f for f in fields if f)


class DiagnosisSessionMachine:
    def __init__(
        self,
        store: SessionStore,
        gateway: InferenceGateway,
        router: ModelRouter,
        registry: StageRegistry,
        *,
        persist_max_retries: int = 3,
        persist_retry_backoff_sec: float = 0.5,
        recovery_window_hours: int = 72,
    ):
        self._store = store
        self._gateway = gateway
        self._router = router
        self._registry = registry
        self._persist_max_retries = max(persist_max_retries, 0)
        self._persist_retry_backoff_sec = persist_retry_backoff_sec
        self._recovery_window = timedelta(hours=recovery_window_hours)

    @property
    def registry(self) -> StageRegistry:
        return self._registry

    async def _with_persist_retries(self, op: Callable[[], Awaitable[T]], *, session_id: str) -> T:
        attempt = 0
        while True:
            try:
                return await op()
            except PersistenceError as exc:
                attempt += 1
                if attempt > self._persist_max_retries:
                    logger.error(
                        "persist_failed session=%s attempts=%s error=%s",
                        session_id,
                        attempt,
                        exc,
                    )
                    raise
                logger.warning(
                    "persist_retry session=%s attempt=%s error=%s",
                    session_id,
                    attempt,
                    exc,
                )
                await asyncio.sleep(self._persist_retry_backoff_sec * attempt)

    async def _persist(self, session: SessionState, emit: EmitFn) -> SessionState:
        persisted = await self._with_persist_retries(
            lambda: self._store.save(session),
            session_id=session.session_id,
        )
        await emit(
            "session.persisted",
            {
                "session_id": persisted.session_id,
                "version": persisted.version,
                "current_stage_ordinal": persisted.current_stage_ordinal,
                "completion_percentage": persisted.completion_percentage,
                "status": persisted.status,
            },
        )
        return persisted

    async def _load_active(self, session_id: str) -> SessionState:
        session = await self._store.load(session_id)
        if session.status != "active":
            raise SessionClosed(session_id, session.status)
        return session

    def _validate(self, stage: Stage, stage_input: dict[str, Any]) -> BaseModel:
        declared = stage_input.get("stage")
        if declared is not None and declared != stage.stage_id:
            target = self._registry.by_id(str(declared))
            if target is not None and target.ordinal < stage.ordinal:
                message = f"Stage {declared} is already completed; completed stages cannot be edited"
            else:
                message = f"Session expects input for stage {stage.stage_id}, not {declared}"
            raise ValidationError(message, fields=["stage"], expected_stage=stage.stage_id)

        fields = {k: v for k, v in stage_input.items() if k != "stage"}
        unknown = sorted(set(fields) - set(stage.input_fields))
        if unknown:
            raise ValidationError(
                f"Unknown fields for {stage.stage_id}: {', '.join(unknown)}",
                fields=unknown,
                expected_stage=stage.stage_id,
            )
        missing = sorted(name for name in stage.required_inputs if fields.get(name) is None)
        if missing:
            raise ValidationError(
                f"Missing required inputs for {stage.stage_id}: {', '.join(missing)}",
                fields=missing,
                expected_stage=stage.stage_id,
            )
        try:
            return stage.payload_model.model_validate({**fields, "stage": stage.stage_id})
        except SchemaValidationError as exc:
            invalid = _error_fields(exc)
            raise ValidationError(
                f"Invalid inputs for {stage.stage_id}: {', '.join(invalid)}",
                fields=invalid,
                expected_stage=stage.stage_id,
            ) from exc

    async def start(self, owner_ref: str, emit: EmitFn | None = None) -> SessionState:
        emit = emit or _no_emit
        existing = await self._store.load_active_by_owner(owner_ref)
        if existing is not None:
            logger.info("session_resumed id=%s owner=%s", existing.session_id, owner_ref)
            await emit(
                "session.resumed",
                {"session_id": existing.session_id, "owner_ref": owner_ref},
            )
            return existing

        session = SessionState(
            session_id=uuid4().hex,
            owner_ref=owner_ref,
            created_at=utc_now(),
        )
        persisted = await self._persist(session, emit)
        logger.info("session_started id=%s owner=%s", persisted.session_id, owner_ref)
        await emit(
            "session.started",
            {"session_id": persisted.session_id, "owner_ref": owner_ref},
        )
        return persisted

    async def resume(self, session_id: str) -> SessionState:
        return await self._store.load(session_id)

    async def advance(
        self,
        session_id: str,
        stage_input: dict[str, Any],
        emit: EmitFn | None = None,
    ) -> SessionState:
        emit = emit or _no_emit
        session = await self._load_active(session_id)
        stage = self._registry.stage_at(session.current_stage_ordinal)

        try:
            payload = self._validate(stage, stage_input)
        except ValidationError as exc:
            await emit(
                "stage.rejected",
                {"session_id": session_id, "stage": stage.stage_id, "fields": exc.fields},
            )
            raise

        # All changes happen on a copy; the stored snapshot is only replaced
        # once the whole stage (payload and AI result) has succeeded.
        working = session.model_copy(deep=True)
        working.stage_payloads[stage.stage_id] = payload
        await emit(
            "stage.accepted",
            {"session_id": session_id, "stage": stage.stage_id, "ordinal": stage.ordinal},
        )

        if stage.produces_ai_output:
            case_score = complexity.score(working)
            urgent = complexity.urgency_flag(working)
            chain = self._router.select_tier(case_score, urgent)
            request = build_request(stage.stage_id, payload, working)
            try:
                outcome = await self._gateway.analyze(request, chain, emit)
            except AllTiersExhausted as exc:
                failures = [f.model_dump() for f in exc.failures]
                logger.error(
                    "stage_inference_exhausted session=%s stage=%s tiers=%s",
                    session_id,
                    stage.stage_id,
                    [f.tier_id for f in exc.failures],
                )
                await emit(
                    "inference.exhausted",
                    {"session_id": session_id, "stage": stage.stage_id, "failures": failures},
                )
                raise AIUnavailable(
                    f"AI analysis for {stage.stage_id} is temporarily unavailable",
                    stage=stage.stage_id,
                    failures=failures,
                ) from exc
            except asyncio.CancelledError:
                logger.info("stage_cancelled session=%s stage=%s", session_id, stage.stage_id)
                raise

            working.stage_results[stage.stage_id] = outcome.result
            working.inference_trace[stage.stage_id] = outcome.attempts
            logger.info(
                "stage_analyzed session=%s stage=%s score=%.4f urgent=%s tier=%s",
                session_id,
                stage.stage_id,
                case_score,
                urgent,
                outcome.result.tier_id,
            )

        next_ordinal = self._registry.next_ordinal(stage.ordinal)
        working.draft = {}
        if next_ordinal is None:
            working.status = "complete"
        else:
            working.current_stage_ordinal = next_ordinal
        working.completion_percentage = compute_completion(working, self._registry)

        persisted = await self._persist(working, emit)
        if persisted.status == "complete":
            logger.info("session_completed id=%s", session_id)
            await emit("session.completed", {"session_id": session_id})
        return persisted

    async def save_draft(
        self,
        session_id: str,
        fields: dict[str, Any],
        emit: EmitFn | None = None,
    ) -> SessionState:
        """Auto-save in-progress values for the current stage without advancing."""
        emit = emit or _no_emit
        session = await self._load_active(session_id)
        stage = self._registry.stage_at(session.current_stage_ordinal)

        unknown = sorted(set(fields) - set(stage.input_fields))
        if unknown:
            raise ValidationError(
                f"Unknown fields for {stage.stage_id}: {', '.join(unknown)}",
                fields=unknown,
                expected_stage=stage.stage_id,
            )

        working = session.model_copy(deep=True)
        working.draft.update(fields)
        working.completion_percentage = compute_completion(working, self._registry)
        return await self._persist(working, emit)

    async def abandon(self, session_id: str, emit: EmitFn | None = None) -> SessionState:
        emit = emit or _no_emit
        session = await self._store.load(session_id)
        if session.status == "abandoned":
            return session
        if session.status == "complete":
            raise SessionClosed(session_id, session.status)

        abandoned = await self._with_persist_retries(
            lambda: self._store.mark_abandoned(session_id),
            session_id=session_id,
        )
        await emit(
            "session.abandoned",
            {"session_id": session_id, "owner_ref": abandoned.owner_ref},
        )
        return abandoned

    async def recoverable(self, owner_ref: str) -> list[RecoverableSession]:
        cutoff = utc_now() - self._recovery_window
        sessions = [
            s
            for s in await self._store.list_by_owner(owner_ref)
            if s.status == "active" and s.last_persisted_at is not None and s.last_persisted_at >= cutoff
        ]
        sessions.sort(key=lambda s: s.last_persisted_at, reverse=True)
        return [
            RecoverableSession(
                session_id=s.session_id,
                owner_ref=s.owner_ref,
                current_stage=self._registry.stage_at(s.current_stage_ordinal).stage_id,
                current_stage_ordinal=s.current_stage_ordinal,
                completion_percentage=s.completion_percentage,
                last_persisted_at=s.last_persisted_at,
            )
            for s in sessions
        ]

    async def report(self, session_id: str) -> DiagnosisReport:
        session = await self._store.load(session_id)
        return build_report(session, self._registry)
