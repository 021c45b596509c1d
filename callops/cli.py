"""
CLI interface for the call session orchestrator.
Runs the HTTP server and inspects Zoom Phone, analysis results, pivot
alerts and the sales floor.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from callops.config import get_settings
from callops.logging_config import setup_logging

app = typer.Typer(
    name="callops",
    help="Outbound call session orchestrator",
    add_completion=False,
)
console = Console()


def _run(coro):
    """Helper to run async code from sync CLI."""
    return asyncio.run(coro)


@app.command()
def server():
    """Run the orchestrator HTTP server."""
    settings = get_settings()
    settings.ensure_dirs()
    setup_logging(settings.log_dir, json_logs=True)

    async def _do():
        import uvicorn
        from callops.database import Database
        from callops.server import create_app
        from callops.zoom_client import ZoomClient

        db = Database(settings.database_path)
        await db.connect()
        zoom = ZoomClient(settings) if settings.zoom_configured else None

        config = uvicorn.Config(
            create_app(settings, db, zoom=zoom),
            host=settings.host,
            port=settings.port,
            log_level="info",
        )
        server = uvicorn.Server(config)
        console.print(
            f"\n[green]Call orchestrator running on {settings.host}:{settings.port}[/green]"
        )
        if zoom is None:
            console.print("[yellow]Zoom Phone not configured: manual dialing only[/yellow]")
        try:
            await server.serve()
        finally:
            if zoom:
                await zoom.close()
            await db.close()

    _run(_do())


@app.command("zoom-users")
def zoom_users():
    """List Zoom Phone users that can place calls."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=False)

    async def _do():
        from callops.zoom_client import ZoomAPIError, ZoomClient

        zoom = ZoomClient(settings)
        try:
            users = await zoom.list_phone_users()
        except ZoomAPIError as e:
            console.print(f"[red]✗ {e}[/red]")
            raise typer.Exit(code=1)
        finally:
            await zoom.close()

        table = Table(title="Zoom Phone Users")
        table.add_column("ID", style="cyan")
        table.add_column("Name")
        table.add_column("Email")
        table.add_column("Extension", style="green")
        for u in users:
            table.add_row(
                u.get("id", ""),
                u.get("name", ""),
                u.get("email", ""),
                str(u.get("extension_number", "")),
            )
        console.print(table)

    _run(_do())


@app.command("zoom-history")
def zoom_history(
    user_id: Optional[str] = typer.Option(None, help="Zoom user (default: ZOOM_DEFAULT_USER_ID)"),
    date_from: str = typer.Option("", "--from", help="Start date YYYY-MM-DD"),
    date_to: str = typer.Option("", "--to", help="End date YYYY-MM-DD"),
    page_size: int = typer.Option(30, help="Number of calls to fetch"),
):
    """Show recent Zoom Phone call logs for a user."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=False)
    user = user_id or settings.zoom_default_user_id
    if not user:
        console.print("[red]✗ No Zoom user given and ZOOM_DEFAULT_USER_ID is not set[/red]")
        raise typer.Exit(code=1)

    async def _do():
        from callops.phone_utils import format_for_display
        from callops.zoom_client import ZoomAPIError, ZoomClient

        zoom = ZoomClient(settings)
        try:
            logs = await zoom.get_call_history(user, date_from, date_to, page_size)
        except ZoomAPIError as e:
            console.print(f"[red]✗ {e}[/red]")
            raise typer.Exit(code=1)
        finally:
            await zoom.close()

        table = Table(title=f"Call History: {user}")
        table.add_column("Time", style="cyan")
        table.add_column("Callee")
        table.add_column("Result", style="green")
        table.add_column("Duration (s)", justify="right")
        for c in logs:
            table.add_row(
                c.get("date_time", ""),
                format_for_display(c.get("callee_number", ""), settings.default_phone_region),
                c.get("result", ""),
                str(c.get("duration", "")),
            )
        console.print(table)

    _run(_do())


@app.command()
def analysis(result_id: int = typer.Argument(..., help="Call result ID")):
    """Show the post-call analysis steps and quality score for a result."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=False)

    async def _do():
        from callops.database import Database

        db = Database(settings.database_path)
        await db.connect()
        try:
            run = await db.get_analysis_run(result_id)
            scores = await db.get_quality_scores(result_id)
        finally:
            await db.close()

        if run is None:
            console.print(f"[yellow]No analysis recorded for result {result_id}[/yellow]")
            raise typer.Exit(code=1)

        table = Table(title=f"Post-Call Analysis #{result_id}")
        table.add_column("Step", style="cyan")
        table.add_column("Status")
        table.add_column("Detail / Error")
        for name, step in run.steps.items():
            colour = {"SUCCESS": "green", "FAILED": "red"}.get(step.status.value, "yellow")
            table.add_row(name, f"[{colour}]{step.status.value}[/{colour}]", step.error or step.detail or "")
        console.print(table)

        for s in scores:
            console.print(f"\n[bold]Quality score: {s.total_score}[/bold]")
            console.print(
                f"  greeting {s.greeting_score} · hearing {s.hearing_score} · "
                f"proposal {s.proposal_score} · closing {s.closing_score} · "
                f"pace {s.speech_pace_score} · tone {s.tone_score}"
            )
            for p in s.positive_points:
                console.print(f"  [green]+[/green] {p}")
            for p in s.improvement_points:
                console.print(f"  [yellow]-[/yellow] {p}")
            if s.coaching_tips:
                console.print(f"  Tip: {s.coaching_tips}")

    _run(_do())


@app.command("pivot-alerts")
def pivot_alerts(project_id: str = typer.Argument(..., help="Project ID")):
    """List active pivot alerts for a project."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=False)

    async def _do():
        from callops.database import Database

        db = Database(settings.database_path)
        await db.connect()
        try:
            alerts = await db.get_active_pivot_alerts(project_id)
        finally:
            await db.close()

        if not alerts:
            console.print(f"[green]✓ No active alerts for {project_id}[/green]")
            return

        table = Table(title=f"Pivot Alerts: {project_id}")
        table.add_column("Type", style="cyan")
        table.add_column("Severity")
        table.add_column("Current")
        table.add_column("Threshold")
        table.add_column("Action")
        for a in alerts:
            table.add_row(
                a.alert_type,
                f"[red]{a.severity}[/red]" if a.severity == "critical" else a.severity,
                ", ".join(f"{k}={v}" for k, v in a.current_metrics.items()),
                ", ".join(f"{k}={v}" for k, v in a.threshold_metrics.items()),
                a.recommended_action,
            )
        console.print(table)

    _run(_do())


@app.command()
def floor():
    """Show every operator's live status and today's counts."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=False)

    async def _do():
        from callops.database import Database

        db = Database(settings.database_path)
        await db.connect()
        try:
            rows = await db.get_floor_status()
        finally:
            await db.close()

        table = Table(title="Sales Floor")
        table.add_column("Operator", style="cyan")
        table.add_column("Status", style="green")
        table.add_column("Target")
        table.add_column("Calls today", justify="right")
        table.add_column("Appointments today", justify="right")
        for r in rows:
            table.add_row(
                r["operator_id"],
                r["status"],
                r["current_target_id"] or "",
                str(r["calls_today"]),
                str(r["appointments_today"]),
            )
        console.print(table)

    _run(_do())


@app.command("add-project")
def add_project(
    project_id: str = typer.Argument(..., help="Project ID"),
    name: str = typer.Option("", help="Display name"),
    min_appointment_rate: Optional[float] = typer.Option(
        None, help="Minimum appointment rate (percent) before a low_rate alert"
    ),
):
    """Create or update a project and its alert threshold."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=False)

    async def _do():
        from callops.database import Database

        db = Database(settings.database_path)
        await db.connect()
        try:
            await db.upsert_project(project_id, name=name, min_appointment_rate=min_appointment_rate)
        finally:
            await db.close()
        console.print(f"\n[green]✓ Project saved:[/green] {project_id}")

    _run(_do())


if __name__ == "__main__":
    app()
