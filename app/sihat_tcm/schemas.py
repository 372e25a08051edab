"""Pydantic schemas for diagnosis sessions, stage payloads and AI outputs."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


StageId = Literal[
    "basic_info",
    "inquiry",
    "tongue",
    "face",
    "audio",
    "pulse",
    "device_sync",
    "synthesis",
]
SessionStatus = Literal["active", "complete", "abandoned"]
UrgencyLevel = Literal["low", "normal", "high", "urgent"]
AttemptErrorKind = Literal["timeout", "provider_error", "malformed_response"]


class MedicalHistory(BaseModel):
    conditions: list[str] = Field(default_factory=list)
    medications: list[str] = Field(default_factory=list)
    allergies: list[str] = Field(default_factory=list)


class BasicInfoPayload(BaseModel):
    stage: Literal["basic_info"] = "basic_info"
    name: str = Field(min_length=1)
    age: int = Field(ge=0, le=130)
    gender: Literal["male", "female", "other"] | None = None
    height_cm: float | None = Field(default=None, gt=30, le=260)
    weight_kg: float | None = Field(default=None, gt=1, le=400)
    medical_history: MedicalHistory = Field(default_factory=MedicalHistory)

    @property
    def bmi(self) -> float | None:
        if not self.height_cm or not self.weight_kg:
            return None
        meters = self.height_cm / 100.0
        return round(self.weight_kg / (meters * meters), 1)


class InquiryPayload(BaseModel):
    stage: Literal["inquiry"] = "inquiry"
    symptoms: list[str] = Field(min_length=1)
    main_complaint: str | None = None
    duration: str | None = None
    chat_history: list[dict[str, Any]] = Field(default_factory=list)
    urgency: UrgencyLevel = "normal"


class TonguePayload(BaseModel):
    stage: Literal["tongue"] = "tongue"
    image_b64: str = Field(min_length=1)
    mime_type: str = "image/jpeg"
    notes: str | None = None


class FacePayload(BaseModel):
    stage: Literal["face"] = "face"
    image_b64: str = Field(min_length=1)
    mime_type: str = "image/jpeg"
    notes: str | None = None


class AudioPayload(BaseModel):
    stage: Literal["audio"] = "audio"
    audio_b64: str = Field(min_length=1)
    mime_type: str = "audio/wav"
    duration_sec: float | None = Field(default=None, gt=0, le=600)


class PulsePayload(BaseModel):
    stage: Literal["pulse"] = "pulse"
    bpm: int = Field(ge=20, le=250)
    qualities: list[str] = Field(default_factory=list)
    measured_by: Literal["manual", "camera"] = "manual"


class DeviceReading(BaseModel):
    metric: str = Field(min_length=1)
    value: float
    unit: str | None = None
    source: str | None = None
    recorded_at: datetime | None = None


class DeviceSyncPayload(BaseModel):
    stage: Literal["device_sync"] = "device_sync"
    # An empty list records that the patient skipped device connection.
    readings: list[DeviceReading]


class SynthesisPayload(BaseModel):
    stage: Literal["synthesis"] = "synthesis"
    notes: str | None = None


StagePayload = Annotated[
    Union[
        BasicInfoPayload,
        InquiryPayload,
        TonguePayload,
        FacePayload,
        AudioPayload,
        PulsePayload,
        DeviceSyncPayload,
        SynthesisPayload,
    ],
    Field(discriminator="stage"),
]


class ModelTier(BaseModel):
    model_config = ConfigDict(frozen=True)

    tier_id: str = Field(min_length=1)
    capability_rank: int = Field(ge=0)
    max_complexity_score: float = Field(ge=0.0, le=1.0)
    provider_endpoint_ref: str = Field(min_length=1)


class MediaAttachment(BaseModel):
    mime_type: str
    data_b64: str


class InferenceRequest(BaseModel):
    stage: StageId
    prompt: str
    media: list[MediaAttachment] = Field(default_factory=list)


class StageAnalysis(BaseModel):
    stage: StageId
    summary: str = Field(min_length=1)
    findings: list[str] = Field(default_factory=list)
    flags: list[str] = Field(default_factory=list)
    organs: list[str] = Field(default_factory=list)
    urgent: bool = False
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)

    # Populated by the synthesis stage.
    syndrome_pattern: str | None = None
    constitution: str | None = None
    recommendations: list[str] = Field(default_factory=list)

    tier_id: str | None = None
    endpoint_ref: str | None = None


class TierAttempt(BaseModel):
    tier_id: str
    endpoint_ref: str
    ok: bool
    error_kind: AttemptErrorKind | None = None
    detail: str | None = None
    latency_ms: int = 0


class SessionState(BaseModel):
    session_id: str
    owner_ref: str
    current_stage_ordinal: int = Field(default=0, ge=0)
    stage_payloads: dict[str, StagePayload] = Field(default_factory=dict)
    stage_results: dict[str, StageAnalysis] = Field(default_factory=dict)
    status: SessionStatus = "active"
    completion_percentage: float = Field(default=0.0, ge=0.0, le=100.0)

    # In-progress field values for the current stage (auto-save).
    draft: dict[str, Any] = Field(default_factory=dict)
    inference_trace: dict[str, list[TierAttempt]] = Field(default_factory=dict)

    created_at: datetime
    last_persisted_at: datetime | None = None
    version: int = Field(default=0, ge=0)


class StartSessionRequest(BaseModel):
    owner_ref: str = Field(min_length=1)


class DraftRequest(BaseModel):
    fields: dict[str, Any] = Field(default_factory=dict)


class RecoverableSession(BaseModel):
    session_id: str
    owner_ref: str
    current_stage: str
    current_stage_ordinal: int
    completion_percentage: float
    last_persisted_at: datetime | None


class StageFinding(BaseModel):
    stage: StageId
    summary: str
    findings: list[str]
    flags: list[str]
    tier_id: str | None = None


class DiagnosisReport(BaseModel):
    session_id: str
    owner_ref: str
    generated_at: datetime

    patient: dict[str, Any]
    summary: str
    syndrome_pattern: str | None
    constitution: str | None
    urgent: bool

    stage_findings: list[StageFinding]
    flags: list[str]
    organs: list[str]
    recommendations: list[str]
    tier_trace: dict[str, list[str]]
