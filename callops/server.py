"""
HTTP surface over the call session orchestrator.

Usage:
    callops server
    # or
    uvicorn callops.server:serve_app --factory --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from callops.analysis import (
    EngagementService,
    InsightService,
    PivotAlertService,
    QualityScorer,
)
from callops.coaching import CoachingHub
from callops.config import Settings, get_settings
from callops.database import Database
from callops.logging_config import setup_logging
from callops.models import CoachingCategory, CoachingMessage, Outcome
from callops.pipeline import PostCallAnalysisPipeline
from callops.session import CallSessionController, SaveError, SessionStateError
from callops.telephony import ManualBackend, TelephonyBackend, TelephonyError, ZoomPhoneBackend
from callops.zoom_client import ZoomAPIError, ZoomClient

log = structlog.get_logger(__name__)


def _parse_outcome(raw: Optional[str], required: bool = True) -> Optional[Outcome]:
    if not raw:
        if required:
            raise HTTPException(400, "outcome is required")
        return None
    try:
        return Outcome(raw.strip().upper())
    except ValueError:
        raise HTTPException(400, f"Unknown outcome: {raw}")


def _session_view(controller: CallSessionController) -> dict:
    session = controller.session
    coaching = controller.coaching
    return {
        "operator_id": controller.operator_id,
        "state": controller.state.value,
        "session": session.model_dump(mode="json") if session else None,
        "unread_coaching": coaching.unread_count if coaching else 0,
    }


def create_app(
    settings: Settings,
    db: Database,
    zoom: Optional[ZoomClient] = None,
    manage_resources: bool = False,
) -> FastAPI:
    """
    Create the FastAPI app.

    With ``manage_resources`` the app connects ``db`` on startup and closes
    ``db`` and ``zoom`` on shutdown; otherwise the caller owns them.
    """
    hub = CoachingHub(db, buffer_size=settings.coaching_buffer_size)
    pipeline = PostCallAnalysisPipeline(
        store=db,
        scorer=QualityScorer(db),
        engagement=EngagementService(db),
        insights=InsightService(db),
        pivots=PivotAlertService(settings, db),
    )
    controllers: dict[str, CallSessionController] = {}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_resources:
            await db.connect()
        log.info("server_started", db=str(settings.database_path), zoom=zoom is not None)
        yield
        for controller in controllers.values():
            await controller.close()
        if manage_resources:
            if zoom:
                await zoom.close()
            await db.close()
        log.info("server_stopped")

    app = FastAPI(
        title="Call Session Orchestrator",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.controllers = controllers
    app.state.hub = hub

    def _controller(operator_id: str) -> CallSessionController:
        controller = controllers.get(operator_id)
        if controller is None:
            controller = CallSessionController(settings, operator_id, db, pipeline, hub)
            controllers[operator_id] = controller
        return controller

    def _backend(body: dict) -> TelephonyBackend:
        kind = (body.get("backend") or "manual").strip().lower()
        if kind == "manual":
            return ManualBackend()
        if kind in ("provider", "zoom"):
            if zoom is None:
                raise HTTPException(503, "Zoom Phone is not configured")
            return ZoomPhoneBackend(
                zoom,
                user_id=body.get("provider_user_id") or settings.zoom_default_user_id,
                caller_number=settings.zoom_caller_number,
                region=settings.default_phone_region,
            )
        raise HTTPException(400, f"Unknown backend: {kind}")

    # ── Error mapping ───────────────────────────────────────────
    @app.exception_handler(SessionStateError)
    async def _state_error(request: Request, exc: SessionStateError):
        return JSONResponse({"detail": str(exc)}, status_code=409)

    @app.exception_handler(SaveError)
    async def _save_error(request: Request, exc: SaveError):
        return JSONResponse({"detail": str(exc)}, status_code=503)

    @app.exception_handler(TelephonyError)
    async def _telephony_error(request: Request, exc: TelephonyError):
        return JSONResponse({"detail": str(exc)}, status_code=502)

    # ── Health check ────────────────────────────────────────────
    @app.get("/health")
    async def health():
        return {"status": "ok"}

    # ─────────────────────────────────────────────────────────
    #   Call session
    # ─────────────────────────────────────────────────────────
    @app.post("/operators/{operator_id}/calls")
    async def start_call(operator_id: str, request: Request):
        body = await request.json()
        target_id = (body.get("target_id") or "").strip()
        target_number = (body.get("target_number") or "").strip()
        if not target_id or not target_number:
            raise HTTPException(400, "target_id and target_number are required")

        controller = _controller(operator_id)
        await controller.start(
            target_id=target_id,
            target_number=target_number,
            backend=_backend(body),
            project_id=body.get("project_id") or None,
        )
        return _session_view(controller)

    @app.get("/operators/{operator_id}/calls/current")
    async def current_call(operator_id: str):
        return _session_view(_controller(operator_id))

    @app.post("/operators/{operator_id}/calls/end")
    async def end_call(operator_id: str):
        controller = _controller(operator_id)
        ended = await controller.end()
        return {"ended": ended, **_session_view(controller)}

    @app.post("/operators/{operator_id}/calls/force-end")
    async def force_end_call(operator_id: str):
        controller = _controller(operator_id)
        ended = controller.force_end()
        return {"force_ended": ended, **_session_view(controller)}

    @app.post("/operators/{operator_id}/calls/result")
    async def confirm_result(operator_id: str, request: Request):
        body = await request.json()
        outcome = _parse_outcome(body.get("outcome"))
        controller = _controller(operator_id)
        result = await controller.confirm(outcome, notes=body.get("notes") or "")
        return {"result": result.model_dump(mode="json"), **_session_view(controller)}

    @app.post("/operators/{operator_id}/calls/result/edit")
    async def begin_edit(operator_id: str):
        controller = _controller(operator_id)
        controller.begin_edit()
        return _session_view(controller)

    @app.delete("/operators/{operator_id}/calls/result/edit")
    async def cancel_edit(operator_id: str):
        controller = _controller(operator_id)
        controller.cancel_edit()
        return _session_view(controller)

    @app.put("/operators/{operator_id}/calls/result")
    async def confirm_edit(operator_id: str, request: Request):
        body = await request.json()
        controller = _controller(operator_id)
        result = await controller.confirm_edit(
            outcome=_parse_outcome(body.get("outcome"), required=False),
            notes=body.get("notes"),
        )
        return {"result": result.model_dump(mode="json"), **_session_view(controller)}

    @app.post("/operators/{operator_id}/calls/discard")
    async def discard_call(operator_id: str):
        controller = _controller(operator_id)
        controller.discard()
        return _session_view(controller)

    # ─────────────────────────────────────────────────────────
    #   Coaching
    # ─────────────────────────────────────────────────────────
    @app.get("/operators/{operator_id}/coaching")
    async def operator_coaching(operator_id: str):
        channel = _controller(operator_id).coaching
        if channel is None:
            return {"messages": [], "unread": 0}
        return {
            "messages": [m.model_dump(mode="json") for m in channel.messages],
            "unread": channel.unread_count,
        }

    @app.post("/operators/{operator_id}/coaching/{message_id}/read")
    async def mark_coaching_read(operator_id: str, message_id: int):
        channel = _controller(operator_id).coaching
        if channel is None:
            raise HTTPException(404, "No coaching messages for this session")
        try:
            changed = await channel.mark_read(message_id)
        except LookupError as e:
            raise HTTPException(404, str(e))
        return {"message_id": message_id, "marked": changed, "unread": channel.unread_count}

    @app.post("/supervisor/coaching")
    async def send_coaching(request: Request):
        body = await request.json()
        operator_id = (body.get("operator_id") or "").strip()
        text = (body.get("body") or "").strip()
        if not operator_id or not text:
            raise HTTPException(400, "operator_id and body are required")
        try:
            category = CoachingCategory((body.get("category") or "instruction").lower())
        except ValueError:
            raise HTTPException(400, f"Unknown category: {body.get('category')}")

        message = await hub.publish(CoachingMessage(
            operator_id=operator_id,
            sender_id=body.get("sender_id"),
            project_id=body.get("project_id"),
            body=text,
            category=category,
        ))
        return message.model_dump(mode="json")

    # ─────────────────────────────────────────────────────────
    #   Zoom Phone
    # ─────────────────────────────────────────────────────────
    @app.get("/zoom/users")
    async def zoom_users():
        if zoom is None:
            raise HTTPException(503, "Zoom Phone is not configured")
        try:
            users = await zoom.list_phone_users()
        except ZoomAPIError as e:
            raise HTTPException(502, str(e))
        return {"users": users}

    # ─────────────────────────────────────────────────────────
    #   Analysis, projects & sales floor
    # ─────────────────────────────────────────────────────────
    @app.get("/analysis/{result_id}")
    async def analysis(result_id: int):
        run = await db.get_analysis_run(result_id)
        if run is None:
            raise HTTPException(404, "No analysis recorded for this result")
        scores = await db.get_quality_scores(result_id)
        return {
            **run.model_dump(mode="json"),
            "quality_scores": [s.model_dump(mode="json") for s in scores],
        }

    @app.post("/projects")
    async def upsert_project(request: Request):
        body = await request.json()
        project_id = (body.get("project_id") or "").strip()
        if not project_id:
            raise HTTPException(400, "project_id is required")
        await db.upsert_project(
            project_id,
            name=body.get("name", ""),
            min_appointment_rate=body.get("min_appointment_rate"),
        )
        return await db.get_project(project_id)

    @app.get("/projects/{project_id}/pivot-alerts")
    async def pivot_alerts(project_id: str):
        alerts = await db.get_active_pivot_alerts(project_id)
        return {"alerts": [a.model_dump(mode="json") for a in alerts]}

    @app.get("/floor")
    async def floor():
        return {"operators": await db.get_floor_status()}

    return app


def serve_app() -> FastAPI:
    """App factory for uvicorn: builds settings, database and Zoom client."""
    settings = get_settings()
    settings.ensure_dirs()
    setup_logging(settings.log_dir)
    zoom = ZoomClient(settings) if settings.zoom_configured else None
    return create_app(
        settings,
        Database(settings.database_path),
        zoom=zoom,
        manage_resources=True,
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "callops.server:serve_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=False,
        log_level="info",
    )
