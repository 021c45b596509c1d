"""
Interfaces of the services the orchestrator calls out to.

`callops.database.Database` and the services in `callops.analysis` are the
default implementations; tests substitute in-memory fakes.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol

from callops.models import (
    CallResult,
    CoachingMessage,
    FloorStatus,
    PivotAlert,
    QualityScore,
    RejectionCategory,
    StepOutcome,
)


class ResultStore(Protocol):
    async def save_call_result(self, result: CallResult) -> int: ...

    async def update_call_result(self, result_id: int, fields: dict[str, Any]) -> None: ...

    async def record_analysis_step(self, result_id: int, step: str, outcome: StepOutcome) -> None: ...

    async def update_floor_status(
        self,
        operator_id: str,
        status: FloorStatus,
        target_id: Optional[str] = None,
        project_id: Optional[str] = None,
        count_call: bool = False,
        count_appointment: bool = False,
    ) -> None: ...


class CoachingStore(Protocol):
    async def insert_coaching_message(self, message: CoachingMessage) -> int: ...

    async def mark_coaching_read(self, message_id: int, read_at: Any) -> None: ...


class QualityScoring(Protocol):
    async def score_call(self, result_id: int, operator_id: str) -> QualityScore: ...


class EngagementTracking(Protocol):
    async def update_engagement(self, target_id: str, event_type: str) -> None: ...


class InsightRecording(Protocol):
    async def record_rejection_insight(
        self,
        project_id: Optional[str],
        target_id: str,
        result_id: int,
        category: RejectionCategory,
        detail: str,
        recorded_by: str,
    ) -> None: ...


class PivotAlerting(Protocol):
    async def check_pivot_alerts(self, project_id: str) -> list[PivotAlert]: ...
