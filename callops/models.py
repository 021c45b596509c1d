"""
Shared data models used across the orchestrator.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


# ── Call outcome enum ───────────────────────────────────────────
class Outcome(str, enum.Enum):
    CONNECTED = "CONNECTED"
    APPOINTMENT_WON = "APPOINTMENT_WON"
    NOT_AVAILABLE = "NOT_AVAILABLE"
    CONTACT_UNAVAILABLE = "CONTACT_UNAVAILABLE"
    DECLINED = "DECLINED"
    DO_NOT_CALL = "DO_NOT_CALL"


class BackendKind(str, enum.Enum):
    MANUAL = "MANUAL"
    PROVIDER = "PROVIDER"


class SessionState(str, enum.Enum):
    IDLE = "IDLE"
    DIALING = "DIALING"
    ACTIVE = "ACTIVE"
    RESULT_PENDING = "RESULT_PENDING"
    SAVED = "SAVED"
    EDITING = "EDITING"
    FORCE_ENDED = "FORCE_ENDED"


class ProviderCallStatus(str, enum.Enum):
    """Call status values reported by Zoom Phone."""
    RINGING = "ringing"
    IN_PROGRESS = "in_progress"
    ENDED = "ended"
    FAILED = "failed"
    NO_ANSWER = "no_answer"
    BUSY = "busy"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_PROVIDER_STATUSES


_TERMINAL_PROVIDER_STATUSES = frozenset({
    ProviderCallStatus.ENDED,
    ProviderCallStatus.FAILED,
    ProviderCallStatus.NO_ANSWER,
    ProviderCallStatus.BUSY,
})


class FloorStatus(str, enum.Enum):
    IDLE = "idle"
    CALLING = "calling"
    ON_CALL = "on_call"
    WRAPPING_UP = "wrapping_up"


# ── Call result (persisted in DB) ───────────────────────────────
class CallResult(BaseModel):
    result_record_id: Optional[int] = None
    session_id: str = ""
    target_id: str
    operator_id: str
    project_id: Optional[str] = None
    outcome: Outcome
    duration_seconds: int = 0
    notes: str = ""
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


# ── Live call session (in memory only) ──────────────────────────
class CallSession(BaseModel):
    session_id: str
    generation: int
    operator_id: str
    target_id: str
    target_number: str = ""
    project_id: Optional[str] = None
    backend_kind: BackendKind
    state: SessionState = SessionState.DIALING
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    elapsed_seconds: int = 0
    provider_call_ref: Optional[str] = None
    warning_emitted: bool = False
    poll_failures: int = 0
    poll_warning: bool = False
    result: Optional[CallResult] = None


class SessionEvent(BaseModel):
    """Notification emitted by the session controller to its listeners."""
    name: str
    session_id: str
    generation: int
    data: dict[str, Any] = Field(default_factory=dict)


# ── Post-call analysis bookkeeping ──────────────────────────────
class StepStatus(str, enum.Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class StepOutcome(BaseModel):
    status: StepStatus
    error: Optional[str] = None
    detail: Optional[str] = None
    finished_at: datetime = Field(default_factory=datetime.utcnow)


class PostCallAnalysisRun(BaseModel):
    result_record_id: int
    steps: dict[str, StepOutcome] = Field(default_factory=dict)


class QualityScore(BaseModel):
    id: Optional[int] = None
    call_result_id: int
    operator_id: str
    total_score: int
    greeting_score: int
    hearing_score: int
    proposal_score: int
    closing_score: int
    speech_pace_score: int
    tone_score: int
    improvement_points: list[str] = Field(default_factory=list)
    positive_points: list[str] = Field(default_factory=list)
    coaching_tips: str = ""
    scored_at: datetime = Field(default_factory=datetime.utcnow)


class RejectionCategory(str, enum.Enum):
    PRICE = "price"
    TIMING = "timing"
    NO_NEED = "no_need"
    COMPETITOR = "competitor"
    AUTHORITY = "authority"
    BUDGET = "budget"
    SATISFACTION = "satisfaction"
    OTHER = "other"


class PivotAlert(BaseModel):
    id: Optional[int] = None
    project_id: str
    alert_type: str
    severity: str
    current_metrics: dict[str, Any] = Field(default_factory=dict)
    threshold_metrics: dict[str, Any] = Field(default_factory=dict)
    recommended_action: str = ""
    status: str = "active"
    created_at: datetime = Field(default_factory=datetime.utcnow)


# ── Coaching messages ───────────────────────────────────────────
class CoachingCategory(str, enum.Enum):
    ENCOURAGEMENT = "encouragement"
    INSTRUCTION = "instruction"
    WARNING = "warning"


class CoachingMessage(BaseModel):
    message_id: Optional[int] = None
    operator_id: str
    sender_id: Optional[str] = None
    project_id: Optional[str] = None
    session_scope: Optional[str] = None
    body: str
    category: CoachingCategory = CoachingCategory.INSTRUCTION
    sent_at: datetime = Field(default_factory=datetime.utcnow)
    read_at: Optional[datetime] = None

    @property
    def is_read(self) -> bool:
        return self.read_at is not None
