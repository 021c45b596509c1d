"""
SQLite-backed persistence layer using aiosqlite.
Stores call results, post-call analysis bookkeeping, scoring output,
coaching messages and the live sales-floor board.
"""

from __future__ import annotations

import json
from datetime import date, datetime
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from callops.models import (
    CallResult,
    CoachingCategory,
    CoachingMessage,
    FloorStatus,
    Outcome,
    PivotAlert,
    PostCallAnalysisRun,
    QualityScore,
    RejectionCategory,
    StepOutcome,
    StepStatus,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    project_id           TEXT PRIMARY KEY,
    name                 TEXT DEFAULT '',
    min_appointment_rate REAL,
    created_at           TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS call_results (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id       TEXT DEFAULT '',
    target_id        TEXT NOT NULL,
    operator_id      TEXT NOT NULL,
    project_id       TEXT,
    outcome          TEXT NOT NULL,
    duration_seconds INTEGER DEFAULT 0,
    notes            TEXT DEFAULT '',
    created_at       TEXT NOT NULL,
    updated_at       TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS analysis_steps (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    call_result_id INTEGER NOT NULL,
    step           TEXT NOT NULL,
    status         TEXT NOT NULL,
    error          TEXT,
    detail         TEXT,
    finished_at    TEXT NOT NULL,
    UNIQUE(call_result_id, step)
);

CREATE TABLE IF NOT EXISTS quality_scores (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    call_result_id     INTEGER NOT NULL,
    operator_id        TEXT NOT NULL,
    total_score        INTEGER NOT NULL,
    greeting_score     INTEGER NOT NULL,
    hearing_score      INTEGER NOT NULL,
    proposal_score     INTEGER NOT NULL,
    closing_score      INTEGER NOT NULL,
    speech_pace_score  INTEGER NOT NULL,
    tone_score         INTEGER NOT NULL,
    improvement_points TEXT DEFAULT '[]',
    positive_points    TEXT DEFAULT '[]',
    coaching_tips      TEXT DEFAULT '',
    scored_at          TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS engagement_scores (
    target_id        TEXT PRIMARY KEY,
    total_score      INTEGER DEFAULT 0,
    call_score       INTEGER DEFAULT 0,
    score_trend      TEXT DEFAULT 'stable',
    alert_level      TEXT DEFAULT 'none',
    last_activity_at TEXT,
    calculated_at    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS rejection_insights (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    call_result_id     INTEGER,
    project_id         TEXT,
    target_id          TEXT,
    rejection_category TEXT NOT NULL,
    rejection_detail   TEXT DEFAULT '',
    recorded_by        TEXT,
    created_at         TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pivot_alerts (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id         TEXT NOT NULL,
    alert_type         TEXT NOT NULL,
    severity           TEXT NOT NULL,
    current_metrics    TEXT DEFAULT '{}',
    threshold_metrics  TEXT DEFAULT '{}',
    recommended_action TEXT DEFAULT '',
    status             TEXT DEFAULT 'active',
    created_at         TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS coaching_messages (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    operator_id   TEXT NOT NULL,
    sender_id     TEXT,
    project_id    TEXT,
    session_scope TEXT,
    body          TEXT NOT NULL,
    category      TEXT DEFAULT 'instruction',
    sent_at       TEXT NOT NULL,
    read_at       TEXT
);

CREATE TABLE IF NOT EXISTS floor_status (
    operator_id        TEXT PRIMARY KEY,
    status             TEXT DEFAULT 'idle',
    current_target_id  TEXT,
    current_project_id TEXT,
    call_start_time    TEXT,
    calls_today        INTEGER DEFAULT 0,
    appointments_today INTEGER DEFAULT 0,
    stats_date         TEXT NOT NULL,
    updated_at         TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_call_results_project ON call_results(project_id);
CREATE INDEX IF NOT EXISTS idx_coaching_operator ON coaching_messages(operator_id);
CREATE INDEX IF NOT EXISTS idx_pivot_alerts_project ON pivot_alerts(project_id, status);
"""

# Columns an operator may correct after a result is saved
_EDITABLE_RESULT_FIELDS = {"outcome", "notes", "duration_seconds"}


class Database:
    """Async SQLite wrapper for the call orchestrator."""

    def __init__(self, db_path: Path):
        self._path = db_path
        self._db: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._path))
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()

    # ── Projects ────────────────────────────────────────────────

    async def upsert_project(
        self,
        project_id: str,
        name: str = "",
        min_appointment_rate: Optional[float] = None,
    ) -> None:
        await self._db.execute(
            """
            INSERT INTO projects (project_id, name, min_appointment_rate, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(project_id) DO UPDATE SET
                name = excluded.name,
                min_appointment_rate = excluded.min_appointment_rate
            """,
            (project_id, name, min_appointment_rate, datetime.utcnow().isoformat()),
        )
        await self._db.commit()

    async def get_project(self, project_id: str) -> Optional[dict]:
        cursor = await self._db.execute(
            "SELECT * FROM projects WHERE project_id = ?", (project_id,)
        )
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def get_project_call_stats(self, project_id: str) -> dict:
        """Totals used by the pivot alert check."""
        cursor = await self._db.execute(
            """
            SELECT COUNT(*) AS total,
                   SUM(CASE WHEN outcome = ? THEN 1 ELSE 0 END) AS appointments,
                   SUM(CASE WHEN outcome IN (?, ?) THEN 1 ELSE 0 END) AS rejections
            FROM call_results
            WHERE project_id = ?
            """,
            (
                Outcome.APPOINTMENT_WON.value,
                Outcome.DECLINED.value,
                Outcome.DO_NOT_CALL.value,
                project_id,
            ),
        )
        row = await cursor.fetchone()
        return {
            "total": row["total"] or 0,
            "appointments": row["appointments"] or 0,
            "rejections": row["rejections"] or 0,
        }

    # ── Call results ────────────────────────────────────────────

    async def save_call_result(self, result: CallResult) -> int:
        """Insert a confirmed call result and return its record ID."""
        cursor = await self._db.execute(
            """
            INSERT INTO call_results
                (session_id, target_id, operator_id, project_id, outcome,
                 duration_seconds, notes, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                result.session_id,
                result.target_id,
                result.operator_id,
                result.project_id,
                result.outcome.value,
                result.duration_seconds,
                result.notes,
                result.created_at.isoformat(),
                result.updated_at.isoformat(),
            ),
        )
        await self._db.commit()
        return cursor.lastrowid

    async def update_call_result(self, result_id: int, fields: dict[str, Any]) -> None:
        """Correct a saved result in place. Raises LookupError for unknown IDs."""
        unknown = set(fields) - _EDITABLE_RESULT_FIELDS
        if unknown:
            raise ValueError(f"Fields not editable: {', '.join(sorted(unknown))}")
        if not fields:
            return

        values = {
            k: (v.value if isinstance(v, Outcome) else v) for k, v in fields.items()
        }
        assignments = ", ".join(f"{k} = ?" for k in values)
        cursor = await self._db.execute(
            f"UPDATE call_results SET {assignments}, updated_at = ? WHERE id = ?",
            (*values.values(), datetime.utcnow().isoformat(), result_id),
        )
        await self._db.commit()
        if cursor.rowcount == 0:
            raise LookupError(f"Call result {result_id} not found")

    async def get_call_result(self, result_id: int) -> Optional[CallResult]:
        cursor = await self._db.execute(
            "SELECT * FROM call_results WHERE id = ?", (result_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_result(row) if row else None

    async def count_call_results(self) -> int:
        cursor = await self._db.execute("SELECT COUNT(*) AS cnt FROM call_results")
        row = await cursor.fetchone()
        return row["cnt"]

    # ── Post-call analysis ──────────────────────────────────────

    async def record_analysis_step(
        self, result_id: int, step: str, outcome: StepOutcome
    ) -> None:
        await self._db.execute(
            """
            INSERT INTO analysis_steps
                (call_result_id, step, status, error, detail, finished_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(call_result_id, step) DO UPDATE SET
                status = excluded.status,
                error = excluded.error,
                detail = excluded.detail,
                finished_at = excluded.finished_at
            """,
            (
                result_id,
                step,
                outcome.status.value,
                outcome.error,
                outcome.detail,
                outcome.finished_at.isoformat(),
            ),
        )
        await self._db.commit()

    async def get_analysis_run(self, result_id: int) -> Optional[PostCallAnalysisRun]:
        cursor = await self._db.execute(
            "SELECT * FROM analysis_steps WHERE call_result_id = ? ORDER BY id ASC",
            (result_id,),
        )
        rows = await cursor.fetchall()
        if not rows:
            return None
        return PostCallAnalysisRun(
            result_record_id=result_id,
            steps={
                r["step"]: StepOutcome(
                    status=StepStatus(r["status"]),
                    error=r["error"],
                    detail=r["detail"],
                    finished_at=datetime.fromisoformat(r["finished_at"]),
                )
                for r in rows
            },
        )

    async def insert_quality_score(self, score: QualityScore) -> int:
        cursor = await self._db.execute(
            """
            INSERT INTO quality_scores
                (call_result_id, operator_id, total_score, greeting_score,
                 hearing_score, proposal_score, closing_score, speech_pace_score,
                 tone_score, improvement_points, positive_points, coaching_tips,
                 scored_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                score.call_result_id,
                score.operator_id,
                score.total_score,
                score.greeting_score,
                score.hearing_score,
                score.proposal_score,
                score.closing_score,
                score.speech_pace_score,
                score.tone_score,
                json.dumps(score.improvement_points, ensure_ascii=False),
                json.dumps(score.positive_points, ensure_ascii=False),
                score.coaching_tips,
                score.scored_at.isoformat(),
            ),
        )
        await self._db.commit()
        return cursor.lastrowid

    async def get_quality_scores(self, result_id: int) -> list[QualityScore]:
        cursor = await self._db.execute(
            "SELECT * FROM quality_scores WHERE call_result_id = ? ORDER BY id ASC",
            (result_id,),
        )
        rows = await cursor.fetchall()
        return [
            QualityScore(
                id=r["id"],
                call_result_id=r["call_result_id"],
                operator_id=r["operator_id"],
                total_score=r["total_score"],
                greeting_score=r["greeting_score"],
                hearing_score=r["hearing_score"],
                proposal_score=r["proposal_score"],
                closing_score=r["closing_score"],
                speech_pace_score=r["speech_pace_score"],
                tone_score=r["tone_score"],
                improvement_points=json.loads(r["improvement_points"]),
                positive_points=json.loads(r["positive_points"]),
                coaching_tips=r["coaching_tips"],
                scored_at=datetime.fromisoformat(r["scored_at"]),
            )
            for r in rows
        ]

    # ── Engagement ──────────────────────────────────────────────

    async def get_engagement(self, target_id: str) -> Optional[dict]:
        cursor = await self._db.execute(
            "SELECT * FROM engagement_scores WHERE target_id = ?", (target_id,)
        )
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def save_engagement(
        self,
        target_id: str,
        total_score: int,
        call_score: int,
        score_trend: str,
        alert_level: str,
    ) -> None:
        now = datetime.utcnow().isoformat()
        await self._db.execute(
            """
            INSERT INTO engagement_scores
                (target_id, total_score, call_score, score_trend, alert_level,
                 last_activity_at, calculated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(target_id) DO UPDATE SET
                total_score = excluded.total_score,
                call_score = excluded.call_score,
                score_trend = excluded.score_trend,
                alert_level = excluded.alert_level,
                last_activity_at = excluded.last_activity_at,
                calculated_at = excluded.calculated_at
            """,
            (target_id, total_score, call_score, score_trend, alert_level, now, now),
        )
        await self._db.commit()

    # ── Rejection insights ──────────────────────────────────────

    async def insert_rejection_insight(
        self,
        result_id: int,
        project_id: Optional[str],
        target_id: str,
        category: RejectionCategory,
        detail: str,
        recorded_by: str,
    ) -> int:
        cursor = await self._db.execute(
            """
            INSERT INTO rejection_insights
                (call_result_id, project_id, target_id, rejection_category,
                 rejection_detail, recorded_by, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                result_id,
                project_id,
                target_id,
                category.value,
                detail,
                recorded_by,
                datetime.utcnow().isoformat(),
            ),
        )
        await self._db.commit()
        return cursor.lastrowid

    async def get_rejection_insights(self, project_id: str) -> list[dict]:
        cursor = await self._db.execute(
            "SELECT * FROM rejection_insights WHERE project_id = ? ORDER BY id DESC",
            (project_id,),
        )
        return [dict(r) for r in await cursor.fetchall()]

    # ── Pivot alerts ────────────────────────────────────────────

    async def insert_pivot_alert(self, alert: PivotAlert) -> int:
        cursor = await self._db.execute(
            """
            INSERT INTO pivot_alerts
                (project_id, alert_type, severity, current_metrics,
                 threshold_metrics, recommended_action, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                alert.project_id,
                alert.alert_type,
                alert.severity,
                json.dumps(alert.current_metrics),
                json.dumps(alert.threshold_metrics),
                alert.recommended_action,
                alert.status,
                alert.created_at.isoformat(),
            ),
        )
        await self._db.commit()
        return cursor.lastrowid

    async def get_active_pivot_alerts(self, project_id: str) -> list[PivotAlert]:
        cursor = await self._db.execute(
            """
            SELECT * FROM pivot_alerts
            WHERE project_id = ? AND status = 'active'
            ORDER BY created_at DESC
            """,
            (project_id,),
        )
        rows = await cursor.fetchall()
        return [
            PivotAlert(
                id=r["id"],
                project_id=r["project_id"],
                alert_type=r["alert_type"],
                severity=r["severity"],
                current_metrics=json.loads(r["current_metrics"]),
                threshold_metrics=json.loads(r["threshold_metrics"]),
                recommended_action=r["recommended_action"],
                status=r["status"],
                created_at=datetime.fromisoformat(r["created_at"]),
            )
            for r in rows
        ]

    # ── Coaching messages ───────────────────────────────────────

    async def insert_coaching_message(self, message: CoachingMessage) -> int:
        cursor = await self._db.execute(
            """
            INSERT INTO coaching_messages
                (operator_id, sender_id, project_id, session_scope, body,
                 category, sent_at, read_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                message.operator_id,
                message.sender_id,
                message.project_id,
                message.session_scope,
                message.body,
                message.category.value,
                message.sent_at.isoformat(),
                message.read_at.isoformat() if message.read_at else None,
            ),
        )
        await self._db.commit()
        return cursor.lastrowid

    async def mark_coaching_read(self, message_id: int, read_at: datetime) -> None:
        # First read wins; re-marking never moves read_at
        await self._db.execute(
            "UPDATE coaching_messages SET read_at = ? WHERE id = ? AND read_at IS NULL",
            (read_at.isoformat(), message_id),
        )
        await self._db.commit()

    async def get_coaching_messages(self, operator_id: str, limit: int = 50) -> list[CoachingMessage]:
        cursor = await self._db.execute(
            """
            SELECT * FROM coaching_messages
            WHERE operator_id = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (operator_id, limit),
        )
        rows = await cursor.fetchall()
        return [
            CoachingMessage(
                message_id=r["id"],
                operator_id=r["operator_id"],
                sender_id=r["sender_id"],
                project_id=r["project_id"],
                session_scope=r["session_scope"],
                body=r["body"],
                category=CoachingCategory(r["category"]),
                sent_at=datetime.fromisoformat(r["sent_at"]),
                read_at=datetime.fromisoformat(r["read_at"]) if r["read_at"] else None,
            )
            for r in rows
        ]

    # ── Sales floor ─────────────────────────────────────────────

    async def update_floor_status(
        self,
        operator_id: str,
        status: FloorStatus,
        target_id: Optional[str] = None,
        project_id: Optional[str] = None,
        count_call: bool = False,
        count_appointment: bool = False,
    ) -> None:
        """Upsert an operator's board entry; daily counters reset on a new day."""
        now = datetime.utcnow()
        today = date.today().isoformat()
        call_start = now.isoformat() if status == FloorStatus.ON_CALL else None
        await self._db.execute(
            """
            INSERT INTO floor_status
                (operator_id, status, current_target_id, current_project_id,
                 call_start_time, calls_today, appointments_today, stats_date,
                 updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(operator_id) DO UPDATE SET
                status = excluded.status,
                current_target_id = excluded.current_target_id,
                current_project_id = excluded.current_project_id,
                call_start_time = COALESCE(excluded.call_start_time,
                    CASE WHEN excluded.status = 'idle' THEN NULL
                         ELSE floor_status.call_start_time END),
                calls_today = CASE WHEN floor_status.stats_date = excluded.stats_date
                    THEN floor_status.calls_today ELSE 0 END + excluded.calls_today,
                appointments_today = CASE WHEN floor_status.stats_date = excluded.stats_date
                    THEN floor_status.appointments_today ELSE 0 END + excluded.appointments_today,
                stats_date = excluded.stats_date,
                updated_at = excluded.updated_at
            """,
            (
                operator_id,
                status.value,
                target_id,
                project_id,
                call_start,
                1 if count_call else 0,
                1 if count_appointment else 0,
                today,
                now.isoformat(),
            ),
        )
        await self._db.commit()

    async def get_floor_status(self) -> list[dict]:
        cursor = await self._db.execute(
            "SELECT * FROM floor_status ORDER BY updated_at DESC"
        )
        return [dict(r) for r in await cursor.fetchall()]

    # ── Helpers ─────────────────────────────────────────────────

    @staticmethod
    def _row_to_result(row) -> CallResult:
        return CallResult(
            result_record_id=row["id"],
            session_id=row["session_id"],
            target_id=row["target_id"],
            operator_id=row["operator_id"],
            project_id=row["project_id"],
            outcome=Outcome(row["outcome"]),
            duration_seconds=row["duration_seconds"],
            notes=row["notes"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
