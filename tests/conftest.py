"""In-memory collaborators shared by the session, pipeline and coaching tests."""

import asyncio
from typing import Optional

import pytest

from callops.config import Settings
from callops.models import (
    BackendKind,
    CallResult,
    CoachingMessage,
    ProviderCallStatus,
    QualityScore,
)
from callops.pipeline import PostCallAnalysisPipeline
from callops.telephony import TelephonyBackend


class FakeStore:
    """ResultStore + CoachingStore kept in dicts. Set fail_* to inject errors."""

    def __init__(self):
        self.results: dict[int, CallResult] = {}
        self.steps: list[tuple] = []
        self.floor: list[tuple] = []
        self.coaching: dict[int, CoachingMessage] = {}
        self.fail_saves = 0
        self.fail_updates = 0
        self.fail_step_records = False

    async def save_call_result(self, result):
        if self.fail_saves:
            self.fail_saves -= 1
            raise RuntimeError("database is locked")
        result_id = len(self.results) + 1
        self.results[result_id] = result.model_copy(update={"result_record_id": result_id})
        return result_id

    async def update_call_result(self, result_id, fields):
        if self.fail_updates:
            self.fail_updates -= 1
            raise RuntimeError("database is locked")
        if result_id not in self.results:
            raise LookupError(result_id)
        self.results[result_id] = self.results[result_id].model_copy(update=fields)

    async def record_analysis_step(self, result_id, step, outcome):
        if self.fail_step_records:
            raise RuntimeError("disk full")
        self.steps.append((result_id, step, outcome.status))

    async def update_floor_status(self, operator_id, status, **kwargs):
        self.floor.append((operator_id, status, kwargs))

    async def insert_coaching_message(self, message):
        message_id = len(self.coaching) + 1
        self.coaching[message_id] = message.model_copy()
        return message_id

    async def mark_coaching_read(self, message_id, read_at):
        stored = self.coaching[message_id]
        if stored.read_at is None:
            stored.read_at = read_at


class FakeScorer:
    def __init__(self):
        self.calls: list[tuple] = []
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None

    async def score_call(self, result_id, operator_id):
        self.calls.append((result_id, operator_id))
        if self.gate:
            await self.gate.wait()
        if self.error:
            raise self.error
        return QualityScore(
            call_result_id=result_id,
            operator_id=operator_id,
            total_score=70,
            greeting_score=70,
            hearing_score=70,
            proposal_score=70,
            closing_score=70,
            speech_pace_score=70,
            tone_score=70,
        )


class FakeEngagement:
    def __init__(self):
        self.events: list[tuple] = []

    async def update_engagement(self, target_id, event_type):
        self.events.append((target_id, event_type))


class FakeInsights:
    def __init__(self):
        self.insights: list[dict] = []

    async def record_rejection_insight(self, **kwargs):
        self.insights.append(kwargs)


class FakePivots:
    def __init__(self):
        self.checked: list[str] = []

    async def check_pivot_alerts(self, project_id):
        self.checked.append(project_id)
        return []


class FakeBackend(TelephonyBackend):
    """
    Provider-style backend driven by the test.

    Gates (asyncio.Event) hold an operation open until the test sets them;
    `statuses` is consumed one item per poll and may contain exceptions.
    """

    kind = BackendKind.PROVIDER
    polls_status = True

    def __init__(self, ref: str = "call-1"):
        self.ref = ref
        self.originate_gate: Optional[asyncio.Event] = None
        self.originate_error: Optional[Exception] = None
        self.poll_gate: Optional[asyncio.Event] = None
        self.statuses: list = []
        self.polls = 0
        self.terminate_gate: Optional[asyncio.Event] = None
        self.terminate_error: Optional[Exception] = None
        self.terminated: list[str] = []

    async def originate(self, target_number):
        if self.originate_gate:
            await self.originate_gate.wait()
        if self.originate_error:
            raise self.originate_error
        return self.ref

    async def poll_status(self, provider_call_ref):
        self.polls += 1
        if self.poll_gate:
            await self.poll_gate.wait()
        item = self.statuses.pop(0) if self.statuses else ProviderCallStatus.IN_PROGRESS
        if isinstance(item, Exception):
            raise item
        return item

    async def terminate(self, provider_call_ref):
        self.terminated.append(provider_call_ref)
        if self.terminate_gate:
            await self.terminate_gate.wait()
        if self.terminate_error:
            raise self.terminate_error


@pytest.fixture
def settings(tmp_path):
    # Timers are driven by hand unless a test shortens them
    return Settings(
        tick_interval_seconds=3600,
        status_poll_interval_seconds=3600,
        database_path=tmp_path / "test.db",
        log_dir=tmp_path / "logs",
    )


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def scorer():
    return FakeScorer()


@pytest.fixture
def engagement():
    return FakeEngagement()


@pytest.fixture
def insights():
    return FakeInsights()


@pytest.fixture
def pivots():
    return FakePivots()


@pytest.fixture
def pipeline(store, scorer, engagement, insights, pivots):
    return PostCallAnalysisPipeline(store, scorer, engagement, insights, pivots)


@pytest.fixture
def backend():
    return FakeBackend()
