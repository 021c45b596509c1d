"""Tests for database operations."""

import pytest
import pytest_asyncio
from datetime import datetime

from callops.database import Database
from callops.models import (
    CallResult,
    CoachingMessage,
    FloorStatus,
    Outcome,
    PivotAlert,
    StepOutcome,
    StepStatus,
)


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(tmp_path / "test.db")
    await database.connect()
    yield database
    await database.close()


def _result(**overrides):
    fields = dict(
        session_id="s1",
        target_id="T1",
        operator_id="op1",
        project_id="P1",
        outcome=Outcome.CONNECTED,
        duration_seconds=42,
        notes="Spoke to the office manager",
    )
    fields.update(overrides)
    return CallResult(**fields)


@pytest.mark.asyncio
async def test_save_and_get_call_result(db):
    result_id = await db.save_call_result(_result())

    fetched = await db.get_call_result(result_id)
    assert fetched is not None
    assert fetched.result_record_id == result_id
    assert fetched.outcome == Outcome.CONNECTED
    assert fetched.duration_seconds == 42
    assert fetched.project_id == "P1"


@pytest.mark.asyncio
async def test_update_call_result_in_place(db):
    result_id = await db.save_call_result(_result())

    await db.update_call_result(result_id, {"outcome": Outcome.DECLINED, "notes": "price"})

    fetched = await db.get_call_result(result_id)
    assert fetched.outcome == Outcome.DECLINED
    assert fetched.notes == "price"
    assert fetched.duration_seconds == 42
    assert await db.count_call_results() == 1


@pytest.mark.asyncio
async def test_update_unknown_result(db):
    with pytest.raises(LookupError):
        await db.update_call_result(123, {"notes": "x"})


@pytest.mark.asyncio
async def test_update_rejects_non_editable_fields(db):
    result_id = await db.save_call_result(_result())
    with pytest.raises(ValueError):
        await db.update_call_result(result_id, {"operator_id": "someone-else"})


@pytest.mark.asyncio
async def test_project_call_stats(db):
    await db.save_call_result(_result(outcome=Outcome.APPOINTMENT_WON))
    await db.save_call_result(_result(outcome=Outcome.DECLINED))
    await db.save_call_result(_result(outcome=Outcome.DO_NOT_CALL))
    await db.save_call_result(_result(outcome=Outcome.CONNECTED, project_id="P2"))

    stats = await db.get_project_call_stats("P1")
    assert stats == {"total": 3, "appointments": 1, "rejections": 2}
    assert await db.get_project_call_stats("empty") == {"total": 0, "appointments": 0, "rejections": 0}


@pytest.mark.asyncio
async def test_upsert_project(db):
    await db.upsert_project("P1", name="Spring push", min_appointment_rate=30.0)
    await db.upsert_project("P1", name="Spring push", min_appointment_rate=25.0)

    project = await db.get_project("P1")
    assert project["min_appointment_rate"] == 25.0
    assert await db.get_project("P2") is None


@pytest.mark.asyncio
async def test_analysis_steps_upsert_per_step(db):
    await db.record_analysis_step(1, "quality_score", StepOutcome(status=StepStatus.FAILED, error="timeout"))
    await db.record_analysis_step(1, "quality_score", StepOutcome(status=StepStatus.SUCCESS, detail="total=70"))
    await db.record_analysis_step(1, "pivot_alert_check", StepOutcome(status=StepStatus.SKIPPED))

    run = await db.get_analysis_run(1)
    assert run.result_record_id == 1
    assert run.steps["quality_score"].status == StepStatus.SUCCESS
    assert run.steps["quality_score"].error is None
    assert run.steps["pivot_alert_check"].status == StepStatus.SKIPPED
    assert await db.get_analysis_run(2) is None


@pytest.mark.asyncio
async def test_pivot_alerts_roundtrip(db):
    alert_id = await db.insert_pivot_alert(PivotAlert(
        project_id="P1",
        alert_type="low_rate",
        severity="critical",
        current_metrics={"appointment_rate": 10.0},
        threshold_metrics={"min_appointment_rate": 50.0},
    ))

    alerts = await db.get_active_pivot_alerts("P1")
    assert [a.id for a in alerts] == [alert_id]
    assert alerts[0].current_metrics == {"appointment_rate": 10.0}


@pytest.mark.asyncio
async def test_coaching_read_first_wins(db):
    message_id = await db.insert_coaching_message(CoachingMessage(operator_id="op1", body="Smile"))

    first = datetime(2026, 1, 5, 10, 0, 0)
    await db.mark_coaching_read(message_id, first)
    await db.mark_coaching_read(message_id, datetime(2026, 1, 5, 11, 0, 0))

    [message] = await db.get_coaching_messages("op1")
    assert message.read_at == first


@pytest.mark.asyncio
async def test_floor_status_counts(db):
    await db.update_floor_status("op1", FloorStatus.CALLING, target_id="T1")
    await db.update_floor_status("op1", FloorStatus.ON_CALL, target_id="T1")

    [row] = await db.get_floor_status()
    assert row["status"] == "on_call"
    assert row["call_start_time"] is not None

    await db.update_floor_status("op1", FloorStatus.IDLE, count_call=True, count_appointment=True)
    await db.update_floor_status("op1", FloorStatus.IDLE, count_call=True)

    [row] = await db.get_floor_status()
    assert row["status"] == "idle"
    assert row["current_target_id"] is None
    assert row["call_start_time"] is None
    assert row["calls_today"] == 2
    assert row["appointments_today"] == 1
