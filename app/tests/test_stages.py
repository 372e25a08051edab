import pytest

from sihat_tcm.errors import ConfigurationError, StageNotFound
from sihat_tcm.schemas import BasicInfoPayload, SynthesisPayload
from sihat_tcm.stages import Stage, StageRegistry, default_registry


def test_default_registry_order_is_fixed():
    registry = default_registry()
    ids = [s.stage_id for s in registry.stages()]

    assert ids == [
        "basic_info",
        "inquiry",
        "tongue",
        "face",
        "audio",
        "pulse",
        "device_sync",
        "synthesis",
    ]
    assert [s.stage_id for s in registry.stages()] == ids
    assert sum(s.weight for s in registry.stages()) == pytest.approx(100.0)


def test_required_inputs_come_from_payload_schema():
    registry = default_registry()

    assert registry.stage_at(0).required_inputs == frozenset({"name", "age"})
    assert registry.by_id("inquiry").required_inputs == frozenset({"symptoms"})
    assert registry.by_id("device_sync").required_inputs == frozenset({"readings"})
    assert registry.by_id("synthesis").required_inputs == frozenset()
    assert "stage" not in registry.stage_at(0).input_fields


def test_ai_bearing_stages():
    registry = default_registry()
    ai_stages = {s.stage_id for s in registry.stages() if s.produces_ai_output}

    assert ai_stages == {"inquiry", "tongue", "face", "audio", "synthesis"}


def test_stage_at_out_of_range_is_not_found():
    registry = default_registry()

    with pytest.raises(StageNotFound):
        registry.stage_at(len(registry))
    with pytest.raises(StageNotFound):
        registry.stage_at(-1)


def test_next_ordinal_stops_at_terminal():
    registry = default_registry()

    assert registry.next_ordinal(0) == 1
    assert registry.next_ordinal(len(registry) - 1) is None
    assert registry.terminal.stage_id == "synthesis"


def test_base_progress_sums_previous_weights():
    registry = default_registry()

    assert registry.base_progress(0) == 0
    assert registry.base_progress(1) == 14
    assert registry.base_progress(3) == 42


def test_registry_rejects_weights_not_summing_to_100():
    with pytest.raises(ConfigurationError):
        StageRegistry(
            [
                Stage("basic_info", 0, BasicInfoPayload, produces_ai_output=False, weight=50),
                Stage("synthesis", 1, SynthesisPayload, produces_ai_output=True, weight=40),
            ]
        )


def test_registry_rejects_gaps_and_empty_tables():
    with pytest.raises(ConfigurationError):
        StageRegistry([])
    with pytest.raises(ConfigurationError):
        StageRegistry(
            [
                Stage("basic_info", 0, BasicInfoPayload, produces_ai_output=False, weight=50),
                Stage("synthesis", 2, SynthesisPayload, produces_ai_output=True, weight=50),
            ]
        )
