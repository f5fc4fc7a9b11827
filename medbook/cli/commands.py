"""CLI commands for MedBook."""

import asyncio
import uuid
from datetime import date
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from medbook.config import get_settings

app = typer.Typer(
    name="medbook",
    help="Capacity-based appointment booking",
    add_completion=False,
)
console = Console()


def get_service():
    """Get a booking service wired from settings."""
    from medbook.core.database import get_session_factory
    from medbook.observability import ObservabilityLogger
    from medbook.scheduling import SchedulingService

    settings = get_settings()
    ObservabilityLogger.configure(settings.observability_log_dir, enabled=settings.observability_enabled)
    return SchedulingService.from_settings(settings, get_session_factory())


def _parse_doctor(doctor_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(doctor_id)
    except ValueError:
        console.print(f"[red]Invalid doctor id: {doctor_id}[/red]")
        raise typer.Exit(1)


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host", "-h", help="Host to bind"),
    port: int = typer.Option(4000, "--port", "-p", help="Port to bind"),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload"),
):
    """Start the REST API server."""
    import uvicorn

    console.print(f"Starting MedBook API server on {host}:{port}")
    uvicorn.run(
        "medbook.api.app:create_app",
        host=host,
        port=port,
        reload=reload,
        factory=True,
    )


@app.command()
def version():
    """Show version information."""
    from medbook import __version__

    console.print(f"MedBook v{__version__}")


@app.command()
def init_db():
    """Create the booking tables (development databases only)."""
    from medbook.core.database import init_db as create_tables

    asyncio.run(create_tables())
    console.print("[green]Database schema created[/green]")


@app.command()
def availability(
    doctor_id: str = typer.Argument(..., help="Doctor UUID"),
    start: str = typer.Option(..., "--start", "-s", help="First date (YYYY-MM-DD)"),
    end: Optional[str] = typer.Option(None, "--end", "-e", help="Last date (YYYY-MM-DD)"),
):
    """Show a doctor's capacity windows and remaining units."""
    from medbook.scheduling import BookingError, DateRange

    did = _parse_doctor(doctor_id)
    try:
        span = DateRange(start=date.fromisoformat(start), end=date.fromisoformat(end or start))
    except ValueError as e:
        console.print(f"[red]Invalid date range: {e}[/red]")
        raise typer.Exit(1)

    service = get_service()
    try:
        windows = asyncio.run(service.resolve_availability(did, span))
    except BookingError as e:
        console.print(f"[red]{e.code}: {e.message}[/red]")
        raise typer.Exit(1)

    if not windows:
        console.print("[yellow]No windows offered in this range.[/yellow]")
        return

    table = Table(title=f"Availability {span.start} to {span.end}")
    table.add_column("Date")
    table.add_column("Window")
    table.add_column("Source")
    table.add_column("Booked", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Status")
    for w in windows:
        if w.degraded:
            status = "[yellow]UNKNOWN[/yellow]"
        elif w.is_closed:
            status = "[dim]CLOSED[/dim]"
        elif w.is_full:
            status = "[red]FULL[/red]"
        else:
            status = "[green]OPEN[/green]"
        table.add_row(
            w.date.isoformat(),
            f"{w.start_time}-{w.end_time}",
            w.source.value,
            f"{w.confirmed_count}/{w.max_patients}",
            str(w.remaining),
            status,
        )
    console.print(table)


@app.command()
def expire_stale():
    """Release PENDING_PAYMENT holds older than the reservation TTL."""
    service = get_service()
    expired = asyncio.run(service.expire_stale())
    console.print(f"Expired {expired} stale reservation(s)")


@app.command()
def materialize(
    doctor_id: str = typer.Argument(..., help="Doctor UUID"),
    start: str = typer.Option(..., "--start", "-s", help="First date (YYYY-MM-DD)"),
    end: Optional[str] = typer.Option(None, "--end", "-e", help="Last date (YYYY-MM-DD)"),
):
    """Create dated schedules for weekly and extra-hours windows in a range."""
    from medbook.scheduling import BookingError, DateRange

    did = _parse_doctor(doctor_id)
    try:
        span = DateRange(start=date.fromisoformat(start), end=date.fromisoformat(end or start))
    except ValueError as e:
        console.print(f"[red]Invalid date range: {e}[/red]")
        raise typer.Exit(1)

    service = get_service()

    async def _run():
        async with service.session_factory() as session:
            return await service.schedules.materialize_range(session, did, span)

    try:
        created = asyncio.run(_run())
    except BookingError as e:
        console.print(f"[red]{e.code}: {e.message}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Materialized {len(created)} window(s)[/green]")


@app.command()
def stats():
    """Summarize booking, payment and sweep telemetry."""
    from medbook.observability import ObservabilityLogger

    settings = get_settings()
    obs = ObservabilityLogger(log_dir=settings.observability_log_dir, enabled=settings.observability_enabled)

    console.print(Panel.fit("[bold]MedBook Telemetry[/bold]"))
    table = Table()
    table.add_column("Log")
    table.add_column("Events", justify="right")
    table.add_column("Errors", justify="right")
    for log_type in ("bookings", "payments", "transitions", "sweeps"):
        summary = obs.get_stats(log_type)
        table.add_row(log_type, str(summary.get("total", 0)), str(summary.get("errors", 0)))
    console.print(table)


if __name__ == "__main__":
    app()
