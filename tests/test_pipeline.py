"""Tests for the post-call analysis pipeline."""

import pytest

from callops.models import CallResult, Outcome, StepStatus
from callops.pipeline import PostCallAnalysisPipeline, engagement_event_for


def _result(**overrides) -> CallResult:
    fields = dict(
        result_record_id=7,
        session_id="s1",
        target_id="T1",
        operator_id="op1",
        project_id="P1",
        outcome=Outcome.DECLINED,
        duration_seconds=95,
        notes="Too expensive for a company our size",
    )
    fields.update(overrides)
    return CallResult(**fields)


@pytest.mark.asyncio
async def test_all_steps_run_for_declined_call_with_project(pipeline, insights, pivots, engagement):
    run = await pipeline.run(_result())

    assert {name: s.status for name, s in run.steps.items()} == {
        "quality_score": StepStatus.SUCCESS,
        "engagement_update": StepStatus.SUCCESS,
        "rejection_insight": StepStatus.SUCCESS,
        "pivot_alert_check": StepStatus.SUCCESS,
    }
    assert run.steps["rejection_insight"].detail == "price"
    assert insights.insights[0]["result_id"] == 7
    assert insights.insights[0]["recorded_by"] == "op1"
    assert pivots.checked == ["P1"]
    assert engagement.events == [("T1", "connected")]


@pytest.mark.asyncio
async def test_failing_scorer_does_not_affect_other_steps(pipeline, scorer):
    scorer.error = RuntimeError("scoring service unavailable")

    run = await pipeline.run(_result())

    assert run.steps["quality_score"].status == StepStatus.FAILED
    assert "scoring service unavailable" in run.steps["quality_score"].error
    assert run.steps["engagement_update"].status == StepStatus.SUCCESS
    assert run.steps["rejection_insight"].status == StepStatus.SUCCESS
    assert run.steps["pivot_alert_check"].status == StepStatus.SUCCESS


@pytest.mark.asyncio
async def test_rejection_skipped_unless_declined_with_notes(pipeline, insights):
    run = await pipeline.run(_result(outcome=Outcome.DECLINED, notes="   "))
    assert run.steps["rejection_insight"].status == StepStatus.SKIPPED

    run = await pipeline.run(_result(outcome=Outcome.DO_NOT_CALL, notes="remove us"))
    assert run.steps["rejection_insight"].status == StepStatus.SKIPPED
    assert insights.insights == []


@pytest.mark.asyncio
async def test_pivot_check_skipped_without_project(pipeline, pivots):
    run = await pipeline.run(_result(project_id=None))

    assert run.steps["pivot_alert_check"].status == StepStatus.SKIPPED
    assert pivots.checked == []


@pytest.mark.asyncio
async def test_each_step_recorded_in_store(pipeline, store):
    await pipeline.run(_result())

    assert sorted(step for _, step, _ in store.steps) == [
        "engagement_update",
        "pivot_alert_check",
        "quality_score",
        "rejection_insight",
    ]
    assert {result_id for result_id, _, _ in store.steps} == {7}


@pytest.mark.asyncio
async def test_store_failure_is_not_raised(pipeline, store):
    store.fail_step_records = True

    run = await pipeline.run(_result())

    assert len(run.steps) == 4
    assert store.steps == []


@pytest.mark.asyncio
async def test_unsaved_result_rejected(pipeline):
    with pytest.raises(ValueError):
        await pipeline.run(_result(result_record_id=None))


@pytest.mark.asyncio
async def test_launch_works_on_a_copy(pipeline, insights):
    result = _result()
    task = pipeline.launch(result)
    result.notes = "changed after launch"

    await task
    assert insights.insights[0]["detail"] == "Too expensive for a company our size"


@pytest.mark.parametrize("outcome,event", [
    (Outcome.APPOINTMENT_WON, "appointment"),
    (Outcome.CONNECTED, "connected"),
    (Outcome.NOT_AVAILABLE, "connected"),
    (Outcome.DO_NOT_CALL, "connected"),
])
def test_engagement_event_mapping(outcome, event):
    assert engagement_event_for(outcome) == event
