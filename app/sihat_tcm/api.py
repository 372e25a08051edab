"""HTTP transport mapping 1:1 onto the diagnosis session operations."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import Body, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from sihat_tcm.clients import InferenceClient, build_inference_client
from sihat_tcm.config import Settings, get_settings
from sihat_tcm.errors import SessionPipelineError
from sihat_tcm.gateway import InferenceGateway
from sihat_tcm.machine import DiagnosisSessionMachine
from sihat_tcm.router import ModelRouter, build_tier_table
from sihat_tcm.schemas import DraftRequest, StartSessionRequest
from sihat_tcm.sse import KEEP_ALIVE, format_sse
from sihat_tcm.stages import StageRegistry, default_registry
from sihat_tcm.storage import SessionStore
from sihat_tcm.utils import utc_now

logger = logging.getLogger(__name__)


def build_machine(
    settings: Settings,
    *,
    store: SessionStore | None = None,
    client: InferenceClient | None = None,
    registry: StageRegistry | None = None,
) -> DiagnosisSessionMachine:
    return DiagnosisSessionMachine(
        store=store or SessionStore(settings),
        gateway=InferenceGateway(
            client or build_inference_client(settings),
            attempt_timeout_sec=settings.inference_attempt_timeout_sec,
        ),
        router=ModelRouter(build_tier_table(settings.model_tiers)),
        registry=registry or default_registry(),
        persist_max_retries=settings.persist_max_retries,
        persist_retry_backoff_sec=settings.persist_retry_backoff_sec,
        recovery_window_hours=settings.recovery_window_hours,
    )


def _session_view(machine: DiagnosisSessionMachine, session: Any) -> dict[str, Any]:
    payload = session.model_dump(mode="json")
    if session.status == "active":
        stage = machine.registry.stage_at(session.current_stage_ordinal)
        payload["current_stage"] = stage.stage_id
        payload["required_inputs"] = sorted(stage.required_inputs)
    else:
        payload["current_stage"] = None
        payload["required_inputs"] = []
    return payload


def create_app(
    settings: Settings | None = None,
    *,
    machine: DiagnosisSessionMachine | None = None,
    store: SessionStore | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    store = store or SessionStore(settings)
    machine = machine or build_machine(settings, store=store)

    app = FastAPI(title="Sihat TCM Diagnosis Pipeline", version="1.0.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(SessionPipelineError)
    async def pipeline_error_handler(request: Request, exc: SessionPipelineError) -> JSONResponse:
        if exc.http_status >= 500:
            logger.error("request_failed path=%s code=%s message=%s", request.url.path, exc.code, exc.message)
        return JSONResponse(status_code=exc.http_status, content=exc.to_payload())

    async def audit(event_name: str, event_payload: dict[str, Any]) -> None:
        # The audit log never decides the outcome of a session operation.
        try:
            await store.append_event(event_name, event_payload)
        except Exception:
            logger.exception("audit_append_failed event=%s", event_name)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "service": settings.app_name,
            "timestamp": utc_now().isoformat(),
            "use_real_models": settings.use_real_models,
            "gemini_key_configured": bool(settings.gemini_api_key),
            "s3_configured": bool(settings.s3_bucket),
            "stages": [s.stage_id for s in machine.registry.stages()],
        }

    @app.post("/v1/sessions")
    async def start_session(body: StartSessionRequest) -> dict[str, Any]:
        session = await machine.start(body.owner_ref, audit)
        return _session_view(machine, session)

    @app.get("/v1/sessions/{session_id}")
    async def resume_session(session_id: str) -> dict[str, Any]:
        session = await machine.resume(session_id)
        return _session_view(machine, session)

    @app.post("/v1/sessions/{session_id}/advance")
    async def advance_session(session_id: str, payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
        session = await machine.advance(session_id, payload, audit)
        return _session_view(machine, session)

    @app.post("/v1/sessions/{session_id}/advance/stream")
    async def advance_session_stream(session_id: str, payload: dict[str, Any] = Body(...)):
        queue: asyncio.Queue[tuple[str, dict[str, Any]]] = asyncio.Queue()
        done = asyncio.Event()

        async def emit(event_name: str, event_payload: dict[str, Any]) -> None:
            envelope = {
                "event": event_name,
                "timestamp": utc_now().isoformat(),
                **event_payload,
            }
            await audit(event_name, envelope)
            await queue.put((event_name, envelope))

        async def runner() -> None:
            try:
                session = await machine.advance(session_id, payload, emit)
                await emit("session.updated", _session_view(machine, session))
            except SessionPipelineError as exc:
                await emit("session.error", {"status_code": exc.http_status, **exc.to_payload()})
            except Exception as exc:
                logger.exception("advance_stream_failed session=%s", session_id)
                await emit(
                    "session.error",
                    {"status_code": 500, "error": "internal_error", "message": str(exc)},
                )
            finally:
                done.set()

        task = asyncio.create_task(runner())

        async def event_gen():
            sequence = 0
            try:
                while True:
                    if done.is_set() and queue.empty():
                        break
                    try:
                        event_name, envelope = await asyncio.wait_for(queue.get(), timeout=0.75)
                    except asyncio.TimeoutError:
                        yield KEEP_ALIVE
                        continue
                    sequence += 1
                    yield format_sse(event_name, envelope, event_id=sequence)
            finally:
                # A disconnected client cancels the stage; nothing is persisted.
                if not task.done():
                    task.cancel()

        return StreamingResponse(event_gen(), media_type="text/event-stream")

    @app.put("/v1/sessions/{session_id}/draft")
    async def save_draft(session_id: str, body: DraftRequest) -> dict[str, Any]:
        session = await machine.save_draft(session_id, body.fields, audit)
        return _session_view(machine, session)

    @app.post("/v1/sessions/{session_id}/abandon")
    async def abandon_session(session_id: str) -> dict[str, Any]:
        session = await machine.abandon(session_id, audit)
        return _session_view(machine, session)

    @app.get("/v1/sessions/{session_id}/report")
    async def session_report(session_id: str) -> dict[str, Any]:
        report = await machine.report(session_id)
        return report.model_dump(mode="json")

    @app.get("/v1/owners/{owner_ref}/sessions")
    async def recoverable_sessions(owner_ref: str) -> dict[str, Any]:
        sessions = await machine.recoverable(owner_ref)
        return {
            "owner_ref": owner_ref,
            "sessions": [s.model_dump(mode="json") for s in sessions],
        }

    return app
