"""Deterministic case-complexity scoring used for model routing.

Every factor is a non-negative number derived from a single stage entry, so a
session that gains payloads or results can only keep or raise its score.
"""

from __future__ import annotations

from sihat_tcm.schemas import (
    AudioPayload,
    BasicInfoPayload,
    DeviceReading,
    DeviceSyncPayload,
    FacePayload,
    InquiryPayload,
    PulsePayload,
    SessionState,
    StageAnalysis,
    TonguePayload,
)

MAX_RAW_SCORE = 100.0

SYMPTOM_WEIGHT = 3.0
SYMPTOM_CAP = 24.0
LONG_HISTORY_MESSAGES = 10
LONG_HISTORY_BONUS = 10.0
IMAGE_WEIGHT = 8.0
AUDIO_WEIGHT = 6.0
AGE_EXTREME_BONUS = 5.0
MEDICAL_COMPLEXITY = {"high": 15.0, "medium": 8.0, "low": 3.0, "none": 0.0}
URGENCY_POINTS = {"low": 0.0, "normal": 0.0, "high": 5.0, "urgent": 10.0}
ABNORMAL_PULSE_BONUS = 8.0
ABNORMAL_READING_WEIGHT = 4.0
ABNORMAL_READING_CAP = 12.0
RESULT_FLAG_WEIGHT = 4.0
RESULT_FLAG_CAP = 12.0
MULTI_ORGAN_BONUS = 8.0
URGENT_RESULT_BONUS = 10.0

# Inclusive normal ranges for device telemetry, keyed by normalized metric name.
_READING_RANGES: dict[str, tuple[float, float]] = {
    "heart_rate": (50.0, 110.0),
    "spo2": (94.0, 100.0),
    "systolic_bp": (90.0, 140.0),
    "diastolic_bp": (60.0, 90.0),
    "temperature": (35.5, 37.8),
    "blood_glucose": (3.9, 7.8),
}


def _normalize_metric(metric: str) -> str:
    return metric.strip().lower().replace("-", "_").replace(" ", "_")


def _medical_complexity(info: BasicInfoPayload) -> str:
    history = info.medical_history
    if len(history.conditions) > 3:
        return "high"
    if len(history.medications) > 2:
        return "medium"
    if history.conditions or history.medications:
        return "low"
    return "none"


def reading_is_abnormal(reading: DeviceReading) -> bool:
    bounds = _READING_RANGES.get(_normalize_metric(reading.metric))
    if bounds is None:
        return False
    low, high = bounds
    return reading.value < low or reading.value > high


def _payload_factors(stage_id: str, payload: object) -> dict[str, float]:
    factors: dict[str, float] = {}
    if isinstance(payload, BasicInfoPayload):
        if payload.age >= 65 or payload.age < 12:
            factors["age_extreme"] = AGE_EXTREME_BONUS
        factors["medical_history"] = MEDICAL_COMPLEXITY[_medical_complexity(payload)]
    elif isinstance(payload, InquiryPayload):
        symptoms = {s.strip().lower() for s in payload.symptoms if s.strip()}
        factors["symptoms"] = min(len(symptoms) * SYMPTOM_WEIGHT, SYMPTOM_CAP)
        if len(payload.chat_history) > LONG_HISTORY_MESSAGES:
            factors["long_history"] = LONG_HISTORY_BONUS
        factors["reported_urgency"] = URGENCY_POINTS[payload.urgency]
    elif isinstance(payload, (TonguePayload, FacePayload)):
        factors["image"] = IMAGE_WEIGHT
    elif isinstance(payload, AudioPayload):
        factors["audio"] = AUDIO_WEIGHT
    elif isinstance(payload, PulsePayload):
        if payload.bpm < 50 or payload.bpm > 110:
            factors["abnormal_pulse"] = ABNORMAL_PULSE_BONUS
    elif isinstance(payload, DeviceSyncPayload):
        abnormal = sum(1 for reading in payload.readings if reading_is_abnormal(reading))
        factors["abnormal_readings"] = min(abnormal * ABNORMAL_READING_WEIGHT, ABNORMAL_READING_CAP)
    return {f"{stage_id}.{name}": value for name, value in factors.items() if value > 0}


def _result_factors(stage_id: str, result: StageAnalysis) -> dict[str, float]:
    factors: dict[str, float] = {}
    flags = {f.strip().lower() for f in result.flags if f.strip()}
    if flags:
        factors["flags"] = min(len(flags) * RESULT_FLAG_WEIGHT, RESULT_FLAG_CAP)
    organs = {o.strip().lower() for o in result.organs if o.strip()}
    if len(organs) >= 2:
        factors["multi_organ"] = MULTI_ORGAN_BONUS
    if result.urgent:
        factors["urgent"] = URGENT_RESULT_BONUS
    return {f"{stage_id}.result.{name}": value for name, value in factors.items()}


def explain(session: SessionState) -> dict[str, float]:
    """Per-factor contributions, keyed ``<stage>.<factor>``."""
    contributions: dict[str, float] = {}
    for stage_id, payload in session.stage_payloads.items():
        contributions.update(_payload_factors(stage_id, payload))
    for stage_id, result in session.stage_results.items():
        contributions.update(_result_factors(stage_id, result))
    return dict(sorted(contributions.items()))


def score(session: SessionState) -> float:
    raw = sum(explain(session).values())
    return round(min(raw, MAX_RAW_SCORE) / MAX_RAW_SCORE, 4)


def urgency_flag(session: SessionState) -> bool:
    inquiry = session.stage_payloads.get("inquiry")
    if isinstance(inquiry, InquiryPayload) and inquiry.urgency in {"high", "urgent"}:
        return True
    return any(result.urgent for result in session.stage_results.values())
