"""
Call session state machine: owns one operator's outbound call from dialing
to a confirmed (and possibly edited) result.

    Idle/Saved --start--> Dialing --originated--> Active
    Active --end | provider ended--> ResultPending --confirm--> Saved
    Saved <--> Editing,  Saved --discard--> Idle
    Dialing/Active --force_end--> Idle  (session stamped FORCE_ENDED)

While Active a 1 s ticker, a 2 s status poller (provider calls only) and the
coaching channel run as separate tasks. Every background callback carries the
generation of the session that started it; callbacks for an older generation
are ignored, so a finished call can never be brought back to life.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from typing import Callable, Coroutine, Optional

import structlog

from callops.coaching import CoachingChannel, CoachingHub
from callops.collaborators import ResultStore
from callops.config import Settings
from callops.logging_config import call_log_context
from callops.models import (
    CallResult,
    CallSession,
    CoachingMessage,
    FloorStatus,
    Outcome,
    ProviderCallStatus,
    SessionEvent,
    SessionState,
)
from callops.pipeline import PostCallAnalysisPipeline
from callops.telephony import OriginationError, TelephonyBackend, TelephonyError

log = structlog.get_logger(__name__)

_LIVE_STATES = (SessionState.DIALING, SessionState.ACTIVE)


class SessionStateError(Exception):
    """The requested operation is not valid in the session's current state."""


class SaveError(Exception):
    """The call result could not be persisted. The operation can be retried."""


class CallSessionController:
    """
    One controller per operator.

    Listeners registered with `add_listener` receive a `SessionEvent` for
    every transition and advisory: active, result_pending, force_ended,
    saved, edited, discarded, long_call_warning, poll_warning,
    coaching_received.
    """

    def __init__(
        self,
        settings: Settings,
        operator_id: str,
        store: ResultStore,
        pipeline: PostCallAnalysisPipeline,
        hub: Optional[CoachingHub] = None,
    ):
        self.settings = settings
        self.operator_id = operator_id
        self.store = store
        self.pipeline = pipeline
        self.hub = hub
        self.analysis_task: Optional[asyncio.Task] = None

        self._session: Optional[CallSession] = None
        self._backend: Optional[TelephonyBackend] = None
        self._generation = 0
        self._ticker: Optional[asyncio.Task] = None
        self._poller: Optional[asyncio.Task] = None
        self._coaching: Optional[CoachingChannel] = None
        self._listeners: list[Callable[[SessionEvent], None]] = []
        self._background: set[asyncio.Task] = set()
        self._save_lock = asyncio.Lock()

    # ── Read-only view ──────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._session.state if self._session else SessionState.IDLE

    @property
    def session(self) -> Optional[CallSession]:
        return self._session

    @property
    def coaching(self) -> Optional[CoachingChannel]:
        return self._coaching

    def add_listener(self, listener: Callable[[SessionEvent], None]) -> None:
        self._listeners.append(listener)

    # ── Dialing ─────────────────────────────────────────────────

    async def start(
        self,
        target_id: str,
        target_number: str,
        backend: TelephonyBackend,
        project_id: Optional[str] = None,
    ) -> CallSession:
        """
        Begin a new call and wait for the backend to originate it.

        Raises OriginationError if the call could not be placed; the
        controller is then back to Idle with nothing running.
        """
        if self.state not in (SessionState.IDLE, SessionState.SAVED):
            raise SessionStateError(f"Cannot start a call while {self.state.value}")

        self._drop_session()
        self._generation += 1
        session = CallSession(
            session_id=uuid.uuid4().hex[:12],
            generation=self._generation,
            operator_id=self.operator_id,
            target_id=target_id,
            target_number=target_number,
            project_id=project_id,
            backend_kind=backend.kind,
            state=SessionState.DIALING,
        )
        self._session = session
        self._backend = backend
        self._report_floor(FloorStatus.CALLING, target_id=target_id, project_id=project_id)
        log.info(
            "call_dialing",
            operator_id=self.operator_id,
            session_id=session.session_id,
            target_id=target_id,
            backend=backend.kind.value,
        )

        try:
            ref = await backend.originate(target_number)
        except Exception as e:
            if not self._is_current(session, SessionState.DIALING):
                log.info("origination_failed_after_force_end", session_id=session.session_id)
                return session
            self._session = None
            self._backend = None
            self._report_floor(FloorStatus.IDLE)
            log.warning(
                "call_origination_failed",
                operator_id=self.operator_id,
                session_id=session.session_id,
                error=str(e),
            )
            if isinstance(e, OriginationError):
                raise
            if isinstance(e, TelephonyError):
                raise OriginationError(str(e)) from e
            raise OriginationError(f"Call could not be placed: {e}") from e

        if not self._is_current(session, SessionState.DIALING):
            # Force-ended while the provider was placing the call
            if ref:
                self._spawn(self._terminate_quietly(backend, ref, session.session_id))
            return session

        session.provider_call_ref = ref
        session.state = SessionState.ACTIVE
        session.started_at = datetime.utcnow()

        gen = session.generation
        self._ticker = asyncio.create_task(
            self._tick_loop(gen, session.session_id), name=f"ticker-{session.session_id}"
        )
        if backend.polls_status:
            self._poller = asyncio.create_task(
                self._poll_loop(gen, backend, session.session_id), name=f"poller-{session.session_id}"
            )
        if self.hub is not None:
            self._coaching = CoachingChannel(
                self.hub, self.operator_id, session.session_id, on_cue=self._coaching_cue
            )
            self._coaching.open()

        self._report_floor(FloorStatus.ON_CALL, target_id=target_id, project_id=project_id)
        log.info(
            "call_active",
            operator_id=self.operator_id,
            session_id=session.session_id,
            provider_call_ref=ref,
        )
        self._emit("active", session, provider_call_ref=ref)
        return session

    # ── Background callbacks ────────────────────────────────────

    def tick(self, generation: int) -> bool:
        """Advance the call timer by one second. Returns False once stale."""
        session = self._session
        if session is None or session.generation != generation or session.state not in _LIVE_STATES:
            return False

        session.elapsed_seconds += 1
        if (
            session.elapsed_seconds >= self.settings.long_call_warning_seconds
            and not session.warning_emitted
        ):
            session.warning_emitted = True
            log.warning(
                "long_call_warning",
                operator_id=self.operator_id,
                session_id=session.session_id,
                elapsed_seconds=session.elapsed_seconds,
            )
            self._emit("long_call_warning", session, elapsed_seconds=session.elapsed_seconds)
        return True

    def on_provider_status(self, generation: int, status: ProviderCallStatus) -> bool:
        """Apply a status reported by the provider. Returns True if the call ended."""
        session = self._session
        if session is None or session.generation != generation:
            return False
        if session.state != SessionState.ACTIVE or not status.is_terminal:
            return False

        self._finish_active(session, reason=f"provider_{status.value}")
        return True

    async def _tick_loop(self, generation: int, session_id: str) -> None:
        with call_log_context(self.operator_id, session_id, generation):
            while True:
                await asyncio.sleep(self.settings.tick_interval_seconds)
                if not self.tick(generation):
                    log.debug("call_timer_stopped")
                    return

    async def _poll_loop(self, generation: int, backend: TelephonyBackend, session_id: str) -> None:
        with call_log_context(self.operator_id, session_id, generation):
            await self._poll_until_stale(generation, backend)

    async def _poll_until_stale(self, generation: int, backend: TelephonyBackend) -> None:
        while True:
            await asyncio.sleep(self.settings.status_poll_interval_seconds)
            session = self._session
            if session is None or session.generation != generation or session.state != SessionState.ACTIVE:
                return

            try:
                status = await backend.poll_status(session.provider_call_ref)
            except Exception as e:
                if session.generation == generation and session.state == SessionState.ACTIVE:
                    self._record_poll_failure(session, e)
                continue

            if session.poll_failures or session.poll_warning:
                log.info("call_status_poll_recovered", session_id=session.session_id)
                session.poll_failures = 0
                session.poll_warning = False
            self.on_provider_status(generation, status)

    def _record_poll_failure(self, session: CallSession, error: Exception) -> None:
        session.poll_failures += 1
        log.warning(
            "call_status_poll_failed",
            session_id=session.session_id,
            consecutive_failures=session.poll_failures,
            error=str(error),
            error_type=type(error).__name__,
        )
        if (
            session.poll_failures >= self.settings.poll_failure_warning_threshold
            and not session.poll_warning
        ):
            session.poll_warning = True
            self._emit("poll_warning", session, consecutive_failures=session.poll_failures)

    # ── Ending the call ─────────────────────────────────────────

    async def end(self) -> bool:
        """
        Operator hangs up. Returns False when the call had already ended
        by another route (provider report or force-end).
        """
        session = self._session
        if session is None or session.state != SessionState.ACTIVE:
            if session is not None and session.state == SessionState.DIALING:
                raise SessionStateError("Call is still dialing; use force end")
            return False

        backend = self._backend
        if backend.polls_status:
            try:
                await backend.terminate(session.provider_call_ref)
            except TelephonyError as e:
                if not self._is_current(session, SessionState.ACTIVE):
                    return False
                log.warning("call_terminate_failed", session_id=session.session_id, error=str(e))
                raise

        if not self._is_current(session, SessionState.ACTIVE):
            return False
        self._finish_active(session, reason="operator")
        return True

    def force_end(self) -> bool:
        """
        Abandon the current call immediately, without a result.

        Works while dialing or active. Everything stops before this returns;
        the provider hang-up runs in the background and its outcome is only
        logged.
        """
        session = self._session
        if session is None or session.state not in _LIVE_STATES:
            return False

        backend = self._backend
        was_active = session.state == SessionState.ACTIVE
        self._cancel_activities()
        session.state = SessionState.FORCE_ENDED
        session.ended_at = datetime.utcnow()
        self._session = None
        self._backend = None
        self._coaching = None

        log.warning(
            "call_force_ended",
            operator_id=self.operator_id,
            session_id=session.session_id,
            elapsed_seconds=session.elapsed_seconds,
        )
        self._emit("force_ended", session)
        self._report_floor(FloorStatus.IDLE)
        # A call still dialing is hung up by start() once originate returns
        if was_active and session.provider_call_ref:
            self._spawn(self._terminate_quietly(backend, session.provider_call_ref, session.session_id))
        return True

    def _finish_active(self, session: CallSession, reason: str) -> None:
        self._cancel_activities()
        session.state = SessionState.RESULT_PENDING
        session.ended_at = datetime.utcnow()
        log.info(
            "call_ended",
            operator_id=self.operator_id,
            session_id=session.session_id,
            reason=reason,
            elapsed_seconds=session.elapsed_seconds,
        )
        self._emit("result_pending", session, reason=reason, elapsed_seconds=session.elapsed_seconds)
        self._report_floor(
            FloorStatus.WRAPPING_UP, target_id=session.target_id, project_id=session.project_id
        )

    async def _terminate_quietly(
        self, backend: TelephonyBackend, ref: str, session_id: str
    ) -> None:
        try:
            await backend.terminate(ref)
        except Exception as e:
            log.warning("force_end_terminate_failed", session_id=session_id, error=str(e))
        else:
            log.info("force_end_terminated", session_id=session_id)

    # ── Result ──────────────────────────────────────────────────

    async def confirm(self, outcome: Optional[Outcome], notes: str = "") -> CallResult:
        """
        Save the result of the ended call and start post-call analysis.

        Raises SaveError if persistence fails; the session stays pending so
        the operator can retry.
        """
        async with self._save_lock:
            session = self._require(SessionState.RESULT_PENDING)
            if outcome is None:
                raise ValueError("An outcome must be selected before saving")

            result = CallResult(
                session_id=session.session_id,
                target_id=session.target_id,
                operator_id=self.operator_id,
                project_id=session.project_id,
                outcome=Outcome(outcome),
                duration_seconds=session.elapsed_seconds,
                notes=notes,
            )
            try:
                result.result_record_id = await self.store.save_call_result(result)
            except Exception as e:
                log.error("call_result_save_failed", session_id=session.session_id, error=str(e))
                raise SaveError(f"Could not save call result: {e}") from e

            session.result = result
            session.state = SessionState.SAVED
            log.info(
                "call_result_saved",
                operator_id=self.operator_id,
                session_id=session.session_id,
                result_id=result.result_record_id,
                outcome=result.outcome.value,
                duration=result.duration_seconds,
            )
            self._emit("saved", session, result_id=result.result_record_id)
            self._report_floor(
                FloorStatus.IDLE,
                count_call=True,
                count_appointment=result.outcome == Outcome.APPOINTMENT_WON,
            )
            self.analysis_task = self._track(self.pipeline.launch(result))
            return result

    def begin_edit(self) -> None:
        session = self._require(SessionState.SAVED)
        session.state = SessionState.EDITING

    def cancel_edit(self) -> None:
        session = self._require(SessionState.EDITING)
        session.state = SessionState.SAVED

    async def confirm_edit(
        self,
        outcome: Optional[Outcome] = None,
        notes: Optional[str] = None,
    ) -> CallResult:
        """Correct the saved result in place. Analysis is not re-run."""
        fields: dict = {}
        if outcome is not None:
            fields["outcome"] = Outcome(outcome)
        if notes is not None:
            fields["notes"] = notes

        async with self._save_lock:
            session = self._require(SessionState.EDITING)
            result = session.result
            if fields:
                try:
                    await self.store.update_call_result(result.result_record_id, fields)
                except Exception as e:
                    log.error(
                        "call_result_update_failed",
                        result_id=result.result_record_id,
                        error=str(e),
                    )
                    raise SaveError(f"Could not update call result: {e}") from e

            session.result = result.model_copy(update={**fields, "updated_at": datetime.utcnow()})
            session.state = SessionState.SAVED
            log.info("call_result_edited", result_id=result.result_record_id, fields=sorted(fields))
            self._emit("edited", session, result_id=result.result_record_id)
            return session.result

    def discard(self) -> None:
        """Leave a saved call behind and return to Idle."""
        session = self._require(SessionState.SAVED)
        self._drop_session()
        self._emit("discarded", session)

    async def close(self) -> None:
        """Stop everything this controller runs. Used on shutdown."""
        self._cancel_activities()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ── Helpers ─────────────────────────────────────────────────

    def _require(self, state: SessionState) -> CallSession:
        if self._session is None or self._session.state != state:
            raise SessionStateError(
                f"Expected {state.value} but session is {self.state.value}"
            )
        return self._session

    def _is_current(self, session: CallSession, state: SessionState) -> bool:
        return (
            self._session is session
            and session.generation == self._generation
            and session.state == state
        )

    def _cancel_activities(self) -> None:
        # No awaits here: ticker, poller and coaching stop together
        current = asyncio.current_task()
        for task in (self._ticker, self._poller):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._ticker = None
        self._poller = None
        if self._coaching is not None:
            self._coaching.close()

    def _drop_session(self) -> None:
        self._cancel_activities()
        self._session = None
        self._backend = None
        self._coaching = None

    def _coaching_cue(self, message: CoachingMessage) -> None:
        session = self._session
        if session is None:
            return
        self._emit("coaching_received", session, message_id=message.message_id)

    def _emit(self, name: str, session: CallSession, **data) -> None:
        event = SessionEvent(
            name=name,
            session_id=session.session_id,
            generation=session.generation,
            data=data,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                log.exception("session_listener_failed", event=name)

    def _report_floor(self, status: FloorStatus, **kwargs) -> None:
        self._spawn(self._update_floor(status, **kwargs))

    async def _update_floor(self, status: FloorStatus, **kwargs) -> None:
        try:
            await self.store.update_floor_status(self.operator_id, status, **kwargs)
        except Exception as e:
            log.warning("floor_status_update_failed", operator_id=self.operator_id, error=str(e))

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        return self._track(asyncio.create_task(coro))

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
