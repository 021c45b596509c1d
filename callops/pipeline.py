"""
Post-call analysis pipeline. Launched once per confirmed call result; its
four steps run concurrently and each records its own outcome, so one
failing step never blocks or fails the others.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional

import structlog

from callops.analysis import categorise_rejection
from callops.collaborators import (
    EngagementTracking,
    InsightRecording,
    PivotAlerting,
    QualityScoring,
    ResultStore,
)
from callops.models import (
    CallResult,
    Outcome,
    PostCallAnalysisRun,
    StepOutcome,
    StepStatus,
)

log = structlog.get_logger(__name__)

STEP_QUALITY_SCORE = "quality_score"
STEP_ENGAGEMENT_UPDATE = "engagement_update"
STEP_REJECTION_INSIGHT = "rejection_insight"
STEP_PIVOT_ALERT_CHECK = "pivot_alert_check"


def engagement_event_for(outcome: Outcome) -> str:
    if outcome == Outcome.APPOINTMENT_WON:
        return "appointment"
    return "connected"


class PostCallAnalysisPipeline:
    def __init__(
        self,
        store: ResultStore,
        scorer: QualityScoring,
        engagement: EngagementTracking,
        insights: InsightRecording,
        pivots: PivotAlerting,
    ):
        self.store = store
        self.scorer = scorer
        self.engagement = engagement
        self.insights = insights
        self.pivots = pivots

    def launch(self, result: CallResult) -> asyncio.Task:
        """Start a run in the background and return its task without awaiting it."""
        return asyncio.create_task(
            self.run(result.model_copy(deep=True)),
            name=f"post-call-analysis-{result.result_record_id}",
        )

    async def run(self, result: CallResult) -> PostCallAnalysisRun:
        if result.result_record_id is None:
            raise ValueError("Analysis requires a saved call result")

        result_id = result.result_record_id
        run = PostCallAnalysisRun(result_record_id=result_id)
        log.info("analysis_started", result_id=result_id, outcome=result.outcome.value)

        await asyncio.gather(
            self._run_step(run, STEP_QUALITY_SCORE, self._score(result)),
            self._run_step(run, STEP_ENGAGEMENT_UPDATE, self._engagement(result)),
            self._run_step(run, STEP_REJECTION_INSIGHT, self._rejection(result)),
            self._run_step(run, STEP_PIVOT_ALERT_CHECK, self._pivot(result)),
        )

        log.info(
            "analysis_complete",
            result_id=result_id,
            **{name: step.status.value for name, step in run.steps.items()},
        )
        return run

    # ── Steps ───────────────────────────────────────────────────
    # Each returns a short detail string, or None when the step does not apply.

    async def _score(self, result: CallResult) -> Optional[str]:
        score = await self.scorer.score_call(result.result_record_id, result.operator_id)
        return f"total={score.total_score}"

    async def _engagement(self, result: CallResult) -> Optional[str]:
        event = engagement_event_for(result.outcome)
        await self.engagement.update_engagement(result.target_id, event)
        return event

    async def _rejection(self, result: CallResult) -> Optional[str]:
        if result.outcome != Outcome.DECLINED or not result.notes.strip():
            return None
        category = categorise_rejection(result.notes)
        await self.insights.record_rejection_insight(
            project_id=result.project_id,
            target_id=result.target_id,
            result_id=result.result_record_id,
            category=category,
            detail=result.notes,
            recorded_by=result.operator_id,
        )
        return category.value

    async def _pivot(self, result: CallResult) -> Optional[str]:
        if not result.project_id:
            return None
        alerts = await self.pivots.check_pivot_alerts(result.project_id)
        return f"alerts={len(alerts)}"

    async def _run_step(
        self,
        run: PostCallAnalysisRun,
        name: str,
        step: Awaitable[Optional[str]],
    ) -> None:
        try:
            detail = await step
        except Exception as e:
            log.warning(
                "analysis_step_failed",
                result_id=run.result_record_id,
                step=name,
                error=str(e),
            )
            outcome = StepOutcome(status=StepStatus.FAILED, error=str(e) or type(e).__name__)
        else:
            if detail is None:
                outcome = StepOutcome(status=StepStatus.SKIPPED)
            else:
                outcome = StepOutcome(status=StepStatus.SUCCESS, detail=detail)

        run.steps[name] = outcome
        try:
            await self.store.record_analysis_step(run.result_record_id, name, outcome)
        except Exception as e:
            log.warning(
                "analysis_step_record_failed",
                result_id=run.result_record_id,
                step=name,
                error=str(e),
            )
