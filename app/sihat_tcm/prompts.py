"""Builds the per-stage inference request sent to the AI collaborator."""

from __future__ import annotations

import json
from typing import Any

from sihat_tcm.schemas import (
    AudioPayload,
    BasicInfoPayload,
    FacePayload,
    InferenceRequest,
    MediaAttachment,
    SessionState,
    TonguePayload,
)

_STAGE_TASKS = {
    "inquiry": "Assess the reported symptoms (wen zhen, inquiry) from a TCM perspective.",
    "tongue": "Inspect the attached tongue photograph (she zhen): body colour, shape, coating.",
    "face": "Inspect the attached face photograph (wang zhen): complexion, lustre, regional colour.",
    "audio": "Listen to the attached voice recording (wen zhen, listening): voice strength, breath, tone.",
    "synthesis": (
        "Integrate all prior stage findings into one TCM diagnosis: syndrome pattern, "
        "constitution and lifestyle recommendations."
    ),
}

_OUTPUT_CONTRACT: dict[str, str] = {
    "summary": "2-4 sentence plain-language summary",
    "findings": "list of concise observations",
    "flags": "list of findings that need clinician attention (may be empty)",
    "organs": "list of zang-fu organs implicated (may be empty)",
    "urgent": "true only if the patient should seek care promptly",
    "confidence": "number between 0 and 1",
}

_SYNTHESIS_CONTRACT: dict[str, str] = {
    **_OUTPUT_CONTRACT,
    "syndrome_pattern": "primary TCM syndrome pattern",
    "constitution": "body constitution type",
    "recommendations": "list of diet, lifestyle and follow-up recommendations",
}


def _patient_context(session: SessionState) -> dict[str, Any]:
    info = session.stage_payloads.get("basic_info")
    if not isinstance(info, BasicInfoPayload):
        return {}
    return {
        "age": info.age,
        "gender": info.gender,
        "bmi": info.bmi,
        "medical_history": info.medical_history.model_dump(),
    }


def _media_for(payload: Any) -> list[MediaAttachment]:
    if isinstance(payload, (TonguePayload, FacePayload)):
        return [MediaAttachment(mime_type=payload.mime_type, data_b64=payload.image_b64)]
    if isinstance(payload, AudioPayload):
        return [MediaAttachment(mime_type=payload.mime_type, data_b64=payload.audio_b64)]
    return []


def _stage_input(stage_id: str, payload: Any, session: SessionState) -> dict[str, Any]:
    if stage_id == "synthesis":
        return {
            "prior_results": {
                sid: result.model_dump(exclude={"tier_id", "endpoint_ref"})
                for sid, result in session.stage_results.items()
                if sid != "synthesis"
            },
            "measurements": {
                sid: p.model_dump(mode="json")
                for sid, p in session.stage_payloads.items()
                if sid in {"pulse", "device_sync"}
            },
            "notes": getattr(payload, "notes", None),
        }
    # Media travels as attachments, not inline in the prompt text.
    return payload.model_dump(mode="json", exclude={"stage", "image_b64", "audio_b64"})


def build_request(stage_id: str, payload: Any, session: SessionState) -> InferenceRequest:
    body = {
        "task": _STAGE_TASKS.get(stage_id, "Assess the stage input from a TCM perspective."),
        "patient_context": _patient_context(session),
        "stage_input": _stage_input(stage_id, payload, session),
        "style_rules": [
            "Use plain language suitable for a patient.",
            "Do not claim diagnostic certainty.",
        ],
        "output_contract": _SYNTHESIS_CONTRACT if stage_id == "synthesis" else _OUTPUT_CONTRACT,
    }
    prompt = (
        f"Stage: {stage_id}\n"
        "You are a Traditional Chinese Medicine diagnostic assistant. "
        "Return ONLY a JSON object following output_contract.\n"
        f"Input:\n{json.dumps(body, ensure_ascii=True, default=str)}"
    )
    return InferenceRequest(stage=stage_id, prompt=prompt, media=_media_for(payload))
