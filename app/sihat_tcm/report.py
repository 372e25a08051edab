"""Aggregates per-stage AI outputs into the final diagnosis report."""

from __future__ import annotations

from typing import Any

from sihat_tcm.errors import ValidationError
from sihat_tcm.schemas import (
    BasicInfoPayload,
    DiagnosisReport,
    PulsePayload,
    SessionState,
    StageFinding,
)
from sihat_tcm.stages import StageRegistry
from sihat_tcm.utils import merge_unique_lines, utc_now


def _patient_summary(session: SessionState) -> dict[str, Any]:
    patient: dict[str, Any] = {}
    info = session.stage_payloads.get("basic_info")
    if isinstance(info, BasicInfoPayload):
        patient.update(
            {
                "name": info.name,
                "age": info.age,
                "gender": info.gender,
                "bmi": info.bmi,
                "medical_history": info.medical_history.model_dump(),
            }
        )
    pulse = session.stage_payloads.get("pulse")
    if isinstance(pulse, PulsePayload):
        patient["pulse_bpm"] = pulse.bpm
        patient["pulse_qualities"] = list(pulse.qualities)
    return patient


def build_report(session: SessionState, registry: StageRegistry) -> DiagnosisReport:
    if session.status != "complete":
        raise ValidationError(
            f"Report is only available for complete sessions (status is {session.status})",
            fields=["status"],
        )
    synthesis = session.stage_results.get(registry.terminal.stage_id)
    if synthesis is None:
        raise ValidationError("Session has no synthesis result", fields=[registry.terminal.stage_id])

    findings: list[StageFinding] = []
    flag_sources: list[list[str]] = []
    organ_sources: list[list[str]] = []
    for stage in registry.stages():
        result = session.stage_results.get(stage.stage_id)
        if result is None:
            continue
        flag_sources.append(result.flags)
        organ_sources.append([o.lower() for o in result.organs])
        if stage.stage_id == synthesis.stage:
            continue
        findings.append(
            StageFinding(
                stage=result.stage,
                summary=result.summary,
                findings=list(result.findings),
                flags=list(result.flags),
                tier_id=result.tier_id,
            )
        )

    # Synthesis flags lead; stage flags fill in after it.
    flags = merge_unique_lines(synthesis.flags, *flag_sources, limit=12)
    organs = merge_unique_lines(*organ_sources, limit=8)
    tier_trace = {
        stage_id: [attempt.tier_id for attempt in attempts]
        for stage_id, attempts in session.inference_trace.items()
    }

    return DiagnosisReport(
        session_id=session.session_id,
        owner_ref=session.owner_ref,
        generated_at=utc_now(),
        patient=_patient_summary(session),
        summary=synthesis.summary,
        syndrome_pattern=synthesis.syndrome_pattern,
        constitution=synthesis.constitution,
        urgent=any(r.urgent for r in session.stage_results.values()),
        stage_findings=findings,
        flags=flags,
        organs=organs,
        recommendations=merge_unique_lines(synthesis.recommendations, limit=8),
        tier_trace=tier_trace,
    )
