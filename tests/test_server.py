"""Tests for the HTTP API."""

import asyncio

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from callops.database import Database
from callops.server import create_app


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(tmp_path / "test.db")
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def app(settings, db):
    return create_app(settings, db)


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    for controller in app.state.controllers.values():
        controller.force_end()
        await controller.close()
        if controller.analysis_task:
            await controller.analysis_task


async def _start_manual(client, operator="op1", **extra):
    body = {"target_id": "T1", "target_number": "03-1234-5678", "backend": "manual", **extra}
    return await client.post(f"/operators/{operator}/calls", json=body)


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_manual_call_flow(client, app):
    resp = await _start_manual(client)
    assert resp.status_code == 200
    assert resp.json()["state"] == "ACTIVE"
    assert resp.json()["session"]["backend_kind"] == "MANUAL"

    resp = await client.post("/operators/op1/calls/end")
    assert resp.json()["ended"] is True
    assert resp.json()["state"] == "RESULT_PENDING"

    resp = await client.post("/operators/op1/calls/result", json={"outcome": "appointment_won"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["state"] == "SAVED"
    result_id = data["result"]["result_record_id"]

    await app.state.controllers["op1"].analysis_task
    resp = await client.get(f"/analysis/{result_id}")
    assert resp.status_code == 200
    steps = resp.json()["steps"]
    assert steps["quality_score"]["status"] == "SUCCESS"
    assert steps["engagement_update"]["status"] == "SUCCESS"
    assert steps["rejection_insight"]["status"] == "SKIPPED"
    assert steps["pivot_alert_check"]["status"] == "SKIPPED"
    assert len(resp.json()["quality_scores"]) == 1


@pytest.mark.asyncio
async def test_result_requires_valid_outcome(client):
    await _start_manual(client)
    await client.post("/operators/op1/calls/end")

    resp = await client.post("/operators/op1/calls/result", json={"notes": "forgot"})
    assert resp.status_code == 400

    resp = await client.post("/operators/op1/calls/result", json={"outcome": "MAYBE"})
    assert resp.status_code == 400

    resp = await client.get("/operators/op1/calls/current")
    assert resp.json()["state"] == "RESULT_PENDING"


@pytest.mark.asyncio
async def test_invalid_transitions_conflict(client):
    resp = await client.post("/operators/op1/calls/result", json={"outcome": "CONNECTED"})
    assert resp.status_code == 409

    await _start_manual(client)
    resp = await _start_manual(client)
    assert resp.status_code == 409

    resp = await client.post("/operators/op1/calls/discard")
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_end_and_force_end_when_idle(client):
    resp = await client.post("/operators/op1/calls/end")
    assert resp.status_code == 200
    assert resp.json()["ended"] is False

    resp = await client.post("/operators/op1/calls/force-end")
    assert resp.json()["force_ended"] is False
    assert resp.json()["state"] == "IDLE"


@pytest.mark.asyncio
async def test_force_end_active_call(client, db):
    await _start_manual(client)

    resp = await client.post("/operators/op1/calls/force-end")
    assert resp.json()["force_ended"] is True
    assert resp.json()["state"] == "IDLE"
    assert resp.json()["session"] is None
    assert await db.count_call_results() == 0


@pytest.mark.asyncio
async def test_provider_backend_needs_zoom(client):
    resp = await _start_manual(client, backend="provider")
    assert resp.status_code == 503

    resp = await _start_manual(client, backend="carrier-pigeon")
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_start_requires_target(client):
    resp = await client.post("/operators/op1/calls", json={"backend": "manual"})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_edit_flow_keeps_record(client, db):
    await _start_manual(client)
    await client.post("/operators/op1/calls/end")
    saved = (await client.post(
        "/operators/op1/calls/result", json={"outcome": "CONNECTED"}
    )).json()["result"]

    resp = await client.post("/operators/op1/calls/result/edit")
    assert resp.json()["state"] == "EDITING"

    resp = await client.put(
        "/operators/op1/calls/result",
        json={"outcome": "DECLINED", "notes": "Using a competitor"},
    )
    assert resp.status_code == 200
    edited = resp.json()["result"]
    assert edited["result_record_id"] == saved["result_record_id"]
    assert resp.json()["state"] == "SAVED"

    stored = await db.get_call_result(saved["result_record_id"])
    assert stored.notes == "Using a competitor"
    assert await db.count_call_results() == 1

    resp = await client.post("/operators/op1/calls/discard")
    assert resp.json()["state"] == "IDLE"


@pytest.mark.asyncio
async def test_cancel_edit(client):
    await _start_manual(client)
    await client.post("/operators/op1/calls/end")
    await client.post("/operators/op1/calls/result", json={"outcome": "CONNECTED"})
    await client.post("/operators/op1/calls/result/edit")

    resp = await client.delete("/operators/op1/calls/result/edit")
    assert resp.json()["state"] == "SAVED"


@pytest.mark.asyncio
async def test_coaching_during_call(client, app):
    await _start_manual(client)

    resp = await client.post(
        "/supervisor/coaching",
        json={"operator_id": "op1", "sender_id": "sv1", "body": "Ask about budget", "category": "instruction"},
    )
    assert resp.status_code == 200
    message = resp.json()
    assert message["session_scope"] == app.state.controllers["op1"].session.session_id

    channel = app.state.controllers["op1"].coaching
    for _ in range(100):
        if channel.unread_count:
            break
        await asyncio.sleep(0.005)

    resp = await client.get("/operators/op1/coaching")
    assert resp.json()["unread"] == 1
    assert resp.json()["messages"][0]["body"] == "Ask about budget"

    resp = await client.post(f"/operators/op1/coaching/{message['message_id']}/read")
    assert resp.json()["marked"] is True
    assert resp.json()["unread"] == 0

    resp = await client.post("/operators/op1/coaching/999/read")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_coaching_validation(client):
    resp = await client.post("/supervisor/coaching", json={"operator_id": "op1"})
    assert resp.status_code == 400

    resp = await client.post(
        "/supervisor/coaching", json={"operator_id": "op1", "body": "hi", "category": "shouting"}
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_projects_and_pivot_alerts(client):
    resp = await client.post("/projects", json={"project_id": "P1", "name": "Autumn", "min_appointment_rate": 15})
    assert resp.status_code == 200
    assert resp.json()["min_appointment_rate"] == 15

    resp = await client.get("/projects/P1/pivot-alerts")
    assert resp.json() == {"alerts": []}


@pytest.mark.asyncio
async def test_zoom_users_without_zoom(client):
    resp = await client.get("/zoom/users")
    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_analysis_not_found(client):
    resp = await client.get("/analysis/404")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_floor_board(client, app):
    await _start_manual(client)
    await client.post("/operators/op1/calls/end")
    await client.post("/operators/op1/calls/result", json={"outcome": "APPOINTMENT_WON"})
    await app.state.controllers["op1"].close()

    resp = await client.get("/floor")
    [row] = resp.json()["operators"]
    assert row["operator_id"] == "op1"
    assert row["status"] == "idle"
    assert row["calls_today"] == 1
    assert row["appointments_today"] == 1
