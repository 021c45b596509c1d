"""
Default post-call analysis services: rule-based call quality scoring,
target engagement tracking, rejection insight capture and pivot alerts.
All of them read and write through `callops.database.Database`.
"""

from __future__ import annotations

from typing import Optional

import structlog

from callops.config import Settings
from callops.database import Database
from callops.models import Outcome, PivotAlert, QualityScore, RejectionCategory

log = structlog.get_logger(__name__)


# ── Call quality ────────────────────────────────────────────────

def _speech_pace_score(duration: int) -> int:
    if duration < 30:
        return 40
    if duration < 60:
        return 55
    if duration < 120:
        return 70
    if duration < 300:
        return 85
    if duration < 600:
        return 75
    return 60


_CLOSING_SCORES: dict[Outcome, int] = {
    Outcome.APPOINTMENT_WON: 95,
    Outcome.NOT_AVAILABLE: 50,
    Outcome.DECLINED: 45,
}


class QualityScorer:
    """Scores a saved call from its duration, outcome and notes."""

    def __init__(self, db: Database):
        self.db = db

    async def score_call(self, result_id: int, operator_id: str) -> QualityScore:
        result = await self.db.get_call_result(result_id)
        if result is None:
            raise LookupError(f"Call result {result_id} not found")

        duration = result.duration_seconds
        has_notes = bool(result.notes.strip())

        speech_pace = _speech_pace_score(duration)
        closing = _CLOSING_SCORES.get(result.outcome, 40)
        hearing = 80 if has_notes else 55
        greeting = 80 if duration > 15 else 50
        proposal = 78 if duration > 60 and result.outcome != Outcome.NOT_AVAILABLE else 50
        tone = 75 if duration > 30 else 55

        parts = [greeting, hearing, proposal, closing, speech_pace, tone]
        total = round(sum(parts) / len(parts))

        positive: list[str] = []
        improvement: list[str] = []
        if result.outcome == Outcome.APPOINTMENT_WON:
            positive.append("Closed the call with an appointment")
        if has_notes:
            positive.append("Recorded what the prospect said")
        else:
            improvement.append("Leave notes on what the prospect said")
        if duration < 30:
            improvement.append("Call ended quickly; work on the opening")
        elif 120 <= duration < 300:
            positive.append("Good conversation length")
        if result.outcome == Outcome.DECLINED:
            improvement.append("Prepare answers for common objections")

        score = QualityScore(
            call_result_id=result_id,
            operator_id=operator_id,
            total_score=total,
            greeting_score=greeting,
            hearing_score=hearing,
            proposal_score=proposal,
            closing_score=closing,
            speech_pace_score=speech_pace,
            tone_score=tone,
            improvement_points=improvement,
            positive_points=positive,
            coaching_tips=_coaching_tip(total),
        )
        score.id = await self.db.insert_quality_score(score)
        log.info("call_scored", result_id=result_id, operator_id=operator_id, total=total)
        return score


def _coaching_tip(total: int) -> str:
    if total >= 80:
        return "Strong call. Keep the same structure on the next one."
    if total >= 60:
        return "Solid call. Spend more time on hearing before proposing."
    return "Slow down the opening and ask an open question before pitching."


# ── Engagement ──────────────────────────────────────────────────

_ENGAGEMENT_POINTS: dict[str, int] = {
    "connected": 10,
    "appointment": 30,
}


def _alert_level(total: int) -> str:
    if total >= 80:
        return "critical"
    if total >= 60:
        return "high"
    if total >= 40:
        return "medium"
    if total >= 20:
        return "low"
    return "none"


class EngagementService:
    """Accumulates per-target engagement from call events."""

    def __init__(self, db: Database):
        self.db = db

    async def update_engagement(self, target_id: str, event_type: str) -> None:
        points = _ENGAGEMENT_POINTS.get(event_type)
        if points is None:
            log.debug("engagement_event_ignored", target_id=target_id, event_type=event_type)
            return

        current = await self.db.get_engagement(target_id)
        call_score = (current["call_score"] if current else 0) + points
        total = (current["total_score"] if current else 0) + points
        trend = "rising" if points >= 15 else "stable"

        await self.db.save_engagement(
            target_id,
            total_score=total,
            call_score=call_score,
            score_trend=trend,
            alert_level=_alert_level(total),
        )
        log.info("engagement_updated", target_id=target_id, event_type=event_type, total=total)


# ── Rejection insights ──────────────────────────────────────────

_REJECTION_KEYWORDS: list[tuple[RejectionCategory, list[str]]] = [
    (RejectionCategory.PRICE, ["price", "expensive", "cost", "too much", "高い", "価格"]),
    (RejectionCategory.BUDGET, ["budget", "no money", "予算"]),
    (RejectionCategory.TIMING, ["timing", "not now", "later", "next year", "busy", "時期", "忙しい"]),
    (RejectionCategory.COMPETITOR, ["competitor", "another vendor", "already use", "他社"]),
    (RejectionCategory.AUTHORITY, ["decision maker", "my boss", "manager", "not my call", "決裁", "上司"]),
    (RejectionCategory.SATISFACTION, ["happy with", "satisfied", "current solution", "満足"]),
    (RejectionCategory.NO_NEED, ["no need", "not interested", "don't need", "必要ない", "不要", "興味がない"]),
]


def categorise_rejection(notes: str) -> RejectionCategory:
    """Best-effort rejection category from the operator's free-text notes."""
    s = notes.lower()
    for category, keywords in _REJECTION_KEYWORDS:
        if any(kw in s for kw in keywords):
            return category
    return RejectionCategory.OTHER


class InsightService:
    def __init__(self, db: Database):
        self.db = db

    async def record_rejection_insight(
        self,
        project_id: Optional[str],
        target_id: str,
        result_id: int,
        category: RejectionCategory,
        detail: str,
        recorded_by: str,
    ) -> None:
        await self.db.insert_rejection_insight(
            result_id=result_id,
            project_id=project_id,
            target_id=target_id,
            category=category,
            detail=detail,
            recorded_by=recorded_by,
        )
        log.info(
            "rejection_insight_recorded",
            result_id=result_id,
            project_id=project_id,
            category=category.value,
        )


# ── Pivot alerts ────────────────────────────────────────────────

class PivotAlertService:
    """
    Raises project-level alerts when results suggest the script or target
    list needs to change:
      - low_rate: appointment rate under the project's minimum
      - high_rejection: declines + do-not-call over the allowed ratio
    An alert type that is already active for the project is not raised again.
    """

    def __init__(self, settings: Settings, db: Database):
        self.settings = settings
        self.db = db

    async def check_pivot_alerts(self, project_id: str) -> list[PivotAlert]:
        project = await self.db.get_project(project_id)
        if project is None:
            log.debug("pivot_check_unknown_project", project_id=project_id)
            return []

        stats = await self.db.get_project_call_stats(project_id)
        total = stats["total"]
        if total == 0:
            return []

        active = {a.alert_type for a in await self.db.get_active_pivot_alerts(project_id)}
        raised: list[PivotAlert] = []

        min_rate = project["min_appointment_rate"]
        if min_rate is None:
            min_rate = self.settings.default_min_appointment_rate
        rate = round(stats["appointments"] / total * 100, 1)

        if (
            total >= self.settings.pivot_min_calls
            and rate < min_rate
            and "low_rate" not in active
        ):
            raised.append(PivotAlert(
                project_id=project_id,
                alert_type="low_rate",
                severity="critical",
                current_metrics={"appointment_rate": rate, "total_calls": total},
                threshold_metrics={"min_appointment_rate": min_rate},
                recommended_action="Review the talk script and target list",
            ))

        ratio = round(stats["rejections"] / total, 3)
        if (
            total >= self.settings.rejection_min_calls
            and ratio > self.settings.max_rejection_ratio
            and "high_rejection" not in active
        ):
            raised.append(PivotAlert(
                project_id=project_id,
                alert_type="high_rejection",
                severity="warning",
                current_metrics={"rejection_ratio": ratio, "total_calls": total},
                threshold_metrics={"max_rejection_ratio": self.settings.max_rejection_ratio},
                recommended_action="Check rejection insights and adjust the pitch",
            ))

        for alert in raised:
            alert.id = await self.db.insert_pivot_alert(alert)
            log.warning(
                "pivot_alert_raised",
                project_id=project_id,
                alert_type=alert.alert_type,
                severity=alert.severity,
            )
        return raised
