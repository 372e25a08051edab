import asyncio

import pytest

from fakes import (
    STAGE_INPUTS,
    FlakyStore,
    GatedClient,
    ScriptedClient,
    make_machine,
    make_settings,
    run_to_completion,
)
from sihat_tcm import complexity
from sihat_tcm.errors import (
    AIUnavailable,
    ConcurrentModification,
    PersistenceError,
    SessionClosed,
    SessionNotFound,
    ValidationError,
)
from sihat_tcm.storage import SessionStore


def test_first_stage_advances_and_persists(tmp_path):
    machine, store = make_machine(tmp_path)
    events = []

    async def emit(name, payload):
        events.append(name)

    async def scenario():
        session = await machine.start("patient-1", emit)
        advanced = await machine.advance(session.session_id, STAGE_INPUTS["basic_info"], emit)
        return session, advanced, await store.load(session.session_id)

    session, advanced, stored = asyncio.run(scenario())

    assert session.current_stage_ordinal == 0
    assert session.completion_percentage == 0.0
    assert advanced.current_stage_ordinal == 1
    assert advanced.completion_percentage == 14.0
    assert stored == advanced
    assert stored.stage_payloads["basic_info"].name == "Test"
    assert "basic_info" not in stored.stage_results
    assert events == [
        "session.persisted",
        "session.started",
        "stage.accepted",
        "session.persisted",
    ]


def test_start_returns_existing_active_session(tmp_path):
    machine, _ = make_machine(tmp_path)

    async def scenario():
        first = await machine.start("patient-1")
        await machine.advance(first.session_id, STAGE_INPUTS["basic_info"])
        again = await machine.start("patient-1")
        return first, again

    first, again = asyncio.run(scenario())

    assert again.session_id == first.session_id
    assert again.current_stage_ordinal == 1


def test_ai_stage_falls_back_and_records_trace(tmp_path):
    client = ScriptedClient({"gemini-2.0-flash": "error"})
    machine, _ = make_machine(tmp_path, client=client)

    async def scenario():
        session = await machine.start("patient-1")
        session = await machine.advance(session.session_id, STAGE_INPUTS["basic_info"])
        return await machine.advance(session.session_id, STAGE_INPUTS["inquiry"])

    session = asyncio.run(scenario())

    assert session.current_stage_ordinal == 2
    assert session.stage_results["inquiry"].tier_id == "pro"
    trace = session.inference_trace["inquiry"]
    assert [(a.tier_id, a.ok) for a in trace] == [("flash", False), ("pro", True)]
    assert client.calls == ["gemini-2.0-flash", "gemini-2.5-pro"]


def test_all_tiers_failing_leaves_session_untouched(tmp_path):
    machine, store = make_machine(tmp_path, client=ScriptedClient(default="error"))
    events = []

    async def emit(name, payload):
        events.append(name)

    async def scenario():
        session = await machine.start("patient-1")
        before = await machine.advance(session.session_id, STAGE_INPUTS["basic_info"])
        with pytest.raises(AIUnavailable) as exc_info:
            await machine.advance(session.session_id, STAGE_INPUTS["inquiry"], emit)
        return before, exc_info.value, await store.load(session.session_id)

    before, error, after = asyncio.run(scenario())

    assert after == before
    assert "inquiry" not in after.stage_payloads
    assert after.current_stage_ordinal == 1
    assert error.http_status == 503
    assert [f["tier_id"] for f in error.details["failures"]] == ["flash", "pro", "advanced"]
    assert "inference.exhausted" in events
    assert "session.persisted" not in events


def test_missing_inputs_are_rejected_without_mutation(tmp_path):
    machine, store = make_machine(tmp_path)

    async def scenario():
        session = await machine.start("patient-1")
        with pytest.raises(ValidationError) as exc_info:
            await machine.advance(session.session_id, {"name": "No Age"})
        return session, exc_info.value, await store.load(session.session_id)

    session, error, stored = asyncio.run(scenario())

    assert error.fields == ["age"]
    assert error.http_status == 400
    assert stored == session


def test_invalid_values_report_field_paths(tmp_path):
    machine, _ = make_machine(tmp_path)

    async def scenario():
        session = await machine.start("patient-1")
        with pytest.raises(ValidationError) as exc_info:
            await machine.advance(session.session_id, {"name": "Old", "age": 400})
        return exc_info.value

    assert asyncio.run(scenario()).fields == ["age"]


def test_completed_stage_cannot_be_edited(tmp_path):
    machine, _ = make_machine(tmp_path)

    async def scenario():
        session = await machine.start("patient-1")
        await machine.advance(session.session_id, STAGE_INPUTS["basic_info"])
        with pytest.raises(ValidationError) as exc_info:
            await machine.advance(session.session_id, {"stage": "basic_info", "name": "Edited", "age": 36})
        return exc_info.value

    error = asyncio.run(scenario())
    assert error.fields == ["stage"]
    assert "cannot be edited" in error.message


def test_full_run_is_monotonic_and_completes(tmp_path):
    machine, _ = make_machine(tmp_path)
    history = asyncio.run(run_to_completion(machine))

    ordinals = [s.current_stage_ordinal for s in history]
    percentages = [s.completion_percentage for s in history]
    scores = [complexity.score(s) for s in history]

    assert ordinals == [0, 1, 2, 3, 4, 5, 6, 7, 7]
    assert percentages == sorted(percentages)
    assert scores == sorted(scores)
    assert history[-1].status == "complete"
    assert history[-1].completion_percentage == 100.0
    assert set(history[-1].stage_results) == {"inquiry", "tongue", "face", "audio", "synthesis"}
    assert [s.version for s in history] == list(range(1, 10))

    with pytest.raises(SessionClosed):
        asyncio.run(machine.advance(history[-1].session_id, STAGE_INPUTS["synthesis"]))
    with pytest.raises(SessionClosed):
        asyncio.run(machine.abandon(history[-1].session_id))


def test_abandon_then_start_creates_new_session(tmp_path):
    machine, store = make_machine(tmp_path)

    async def scenario():
        first = await machine.start("patient-1")
        await machine.advance(first.session_id, STAGE_INPUTS["basic_info"])
        abandoned = await machine.abandon(first.session_id)
        again = await machine.abandon(first.session_id)
        fresh = await machine.start("patient-1")
        old = await store.load(first.session_id)
        with pytest.raises(SessionClosed):
            await machine.advance(first.session_id, STAGE_INPUTS["inquiry"])
        return first, abandoned, again, fresh, old

    first, abandoned, again, fresh, old = asyncio.run(scenario())

    assert abandoned.status == "abandoned"
    assert again.version == abandoned.version
    assert fresh.session_id != first.session_id
    assert fresh.current_stage_ordinal == 0
    assert old.status == "abandoned"
    assert old.stage_payloads["basic_info"].age == 35


def test_concurrent_advances_commit_exactly_once(tmp_path):
    async def scenario():
        gate = asyncio.Event()
        client = GatedClient(gate)
        machine, store = make_machine(tmp_path, client=client)
        session = await machine.start("patient-1")
        await machine.advance(session.session_id, STAGE_INPUTS["basic_info"])

        first = asyncio.create_task(machine.advance(session.session_id, {"symptoms": ["fatigue"]}))
        second = asyncio.create_task(machine.advance(session.session_id, {"symptoms": ["headache", "dizziness"]}))
        while client.waiting < 2:
            await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(first, second, return_exceptions=True)
        return results, await store.load(session.session_id)

    results, stored = asyncio.run(scenario())

    winners = [r for r in results if not isinstance(r, BaseException)]
    losers = [r for r in results if isinstance(r, BaseException)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], ConcurrentModification)
    assert stored == winners[0]
    assert stored.current_stage_ordinal == 2


def test_cancelled_stage_persists_nothing(tmp_path):
    async def scenario():
        client = GatedClient(asyncio.Event())
        machine, store = make_machine(tmp_path, client=client)
        session = await machine.start("patient-1")
        before = await machine.advance(session.session_id, STAGE_INPUTS["basic_info"])

        task = asyncio.create_task(machine.advance(session.session_id, STAGE_INPUTS["inquiry"]))
        while client.waiting < 1:
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return before, await store.load(session.session_id)

    before, after = asyncio.run(scenario())
    assert after == before


def test_persistence_failures_are_retried(tmp_path):
    settings = make_settings(tmp_path)
    store = FlakyStore(settings, failures=2)
    machine, _ = make_machine(tmp_path, store=store)

    session = asyncio.run(machine.start("patient-1"))

    assert session.version == 1
    assert store.save_calls == 3


def test_persistence_failure_surfaces_after_retries(tmp_path):
    settings = make_settings(tmp_path)
    machine, _ = make_machine(tmp_path, store=SessionStore(settings))
    session = asyncio.run(machine.start("patient-1"))

    flaky = FlakyStore(settings, failures=10)
    machine, _ = make_machine(tmp_path, store=flaky, persist_max_retries=2)

    with pytest.raises(PersistenceError):
        asyncio.run(machine.advance(session.session_id, STAGE_INPUTS["basic_info"]))

    assert flaky.save_calls == 3
    assert asyncio.run(flaky.load(session.session_id)) == session


def test_draft_raises_completion_within_stage(tmp_path):
    machine, _ = make_machine(tmp_path)

    async def scenario():
        session = await machine.start("patient-1")
        drafted = await machine.save_draft(session.session_id, {"name": "Half Done"})
        with pytest.raises(ValidationError) as exc_info:
            await machine.save_draft(session.session_id, {"favourite_colour": "blue"})
        advanced = await machine.advance(session.session_id, STAGE_INPUTS["basic_info"])
        return drafted, exc_info.value, advanced

    drafted, error, advanced = asyncio.run(scenario())

    assert 0.0 < drafted.completion_percentage < 14.0
    assert drafted.draft == {"name": "Half Done"}
    assert drafted.current_stage_ordinal == 0
    assert error.fields == ["favourite_colour"]
    assert advanced.draft == {}
    assert advanced.completion_percentage == 14.0


def test_recoverable_lists_active_sessions_for_owner(tmp_path):
    machine, _ = make_machine(tmp_path)

    async def scenario():
        session = await machine.start("patient-1")
        await machine.advance(session.session_id, STAGE_INPUTS["basic_info"])
        listed = await machine.recoverable("patient-1")
        await machine.abandon(session.session_id)
        return session, listed, await machine.recoverable("patient-1")

    session, listed, after_abandon = asyncio.run(scenario())

    assert [(s.session_id, s.current_stage) for s in listed] == [(session.session_id, "inquiry")]
    assert listed[0].completion_percentage == 14.0
    assert after_abandon == []


def test_report_requires_complete_session(tmp_path):
    machine, _ = make_machine(tmp_path)
    history = asyncio.run(run_to_completion(machine))
    session_id = history[-1].session_id

    report = asyncio.run(machine.report(session_id))

    assert report.session_id == session_id
    assert report.syndrome_pattern
    assert report.patient["age"] == 35
    assert report.patient["pulse_bpm"] == 72
    assert [f.stage for f in report.stage_findings] == ["inquiry", "tongue", "face", "audio"]
    assert set(report.tier_trace) == {"inquiry", "tongue", "face", "audio", "synthesis"}
    assert report.recommendations

    other, _ = make_machine(tmp_path / "other")
    started = asyncio.run(other.start("patient-2"))
    with pytest.raises(ValidationError) as exc_info:
        asyncio.run(other.report(started.session_id))
    assert exc_info.value.fields == ["status"]


def test_unknown_session_is_not_found(tmp_path):
    machine, _ = make_machine(tmp_path)

    with pytest.raises(SessionNotFound):
        asyncio.run(machine.resume("nope"))
    with pytest.raises(SessionNotFound):
        asyncio.run(machine.advance("nope", STAGE_INPUTS["basic_info"]))


def test_unknown_stage_fields_are_rejected_without_mutation(tmp_path):
    machine, store = make_machine(tmp_path)

    async def scenario():
        session = await machine.start("patient-1")
        with pytest.raises(ValidationError) as exc_info:
            await machine.advance(session.session_id, {**STAGE_INPUTS["basic_info"], "favourite_colour": "blue"})
        return session, exc_info.value, await store.load(session.session_id)

    session, error, stored = asyncio.run(scenario())

    assert error.fields == ["favourite_colour"]
    assert stored == session
