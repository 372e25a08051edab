from sihat_tcm import complexity
from sihat_tcm.schemas import (
    BasicInfoPayload,
    DeviceReading,
    DeviceSyncPayload,
    InquiryPayload,
    PulsePayload,
    SessionState,
    StageAnalysis,
    TonguePayload,
)
from sihat_tcm.utils import utc_now


def _session(**kwargs) -> SessionState:
    return SessionState(session_id="s1", owner_ref="p1", created_at=utc_now(), **kwargs)


def test_empty_session_scores_zero():
    assert complexity.score(_session()) == 0.0
    assert complexity.urgency_flag(_session()) is False


def test_score_is_monotonic_as_evidence_accumulates():
    session = _session()
    steps = [
        ("basic_info", BasicInfoPayload(name="A", age=70, medical_history={"conditions": ["a", "b", "c", "d"]})),
        ("inquiry", InquiryPayload(symptoms=["fatigue", "insomnia", "night sweats"], urgency="high")),
        ("tongue", TonguePayload(image_b64="eA==")),
        ("pulse", PulsePayload(bpm=120)),
        (
            "device_sync",
            DeviceSyncPayload(
                readings=[
                    DeviceReading(metric="SpO2", value=90),
                    DeviceReading(metric="heart-rate", value=130),
                    DeviceReading(metric="steps", value=2000),
                ]
            ),
        ),
    ]
    previous = complexity.score(session)
    for stage_id, payload in steps:
        session.stage_payloads[stage_id] = payload
        current = complexity.score(session)
        assert current >= previous
        assert 0.0 <= current <= 1.0
        previous = current

    session.stage_results["tongue"] = StageAnalysis(
        stage="tongue",
        summary="Red body with yellow coating",
        flags=["heat sign", "dampness"],
        organs=["liver", "stomach"],
        urgent=True,
    )
    assert complexity.score(session) >= previous


def test_score_is_deterministic_and_capped():
    session = _session(
        stage_payloads={
            "inquiry": InquiryPayload(
                symptoms=[f"symptom {i}" for i in range(30)],
                chat_history=[{"role": "user", "content": "x"}] * 20,
                urgency="urgent",
            )
        },
        stage_results={
            stage: StageAnalysis(stage=stage, summary="x", flags=["a", "b", "c", "d"], organs=["liver", "heart"], urgent=True)
            for stage in ("inquiry", "tongue", "face", "audio")
        },
    )
    first = complexity.score(session)

    assert first == complexity.score(session)
    assert first == 1.0


def test_explain_lists_contributing_factors():
    session = _session(stage_payloads={"pulse": PulsePayload(bpm=40), "tongue": TonguePayload(image_b64="eA==")})
    factors = complexity.explain(session)

    assert factors == {
        "pulse.abnormal_pulse": complexity.ABNORMAL_PULSE_BONUS,
        "tongue.image": complexity.IMAGE_WEIGHT,
    }


def test_urgency_flag_from_inquiry_or_results():
    assert complexity.urgency_flag(_session(stage_payloads={"inquiry": InquiryPayload(symptoms=["chest pain"], urgency="urgent")}))
    assert complexity.urgency_flag(
        _session(stage_results={"face": StageAnalysis(stage="face", summary="Cyanotic lips", urgent=True)})
    )
    assert not complexity.urgency_flag(_session(stage_payloads={"inquiry": InquiryPayload(symptoms=["cough"])}))


def test_unknown_device_metrics_are_not_abnormal():
    assert not complexity.reading_is_abnormal(DeviceReading(metric="steps", value=1))
    assert complexity.reading_is_abnormal(DeviceReading(metric="Blood Glucose", value=11.2))
