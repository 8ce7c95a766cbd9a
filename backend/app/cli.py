"""DepthSafe CLI — crowd-sourced depth data with safety corrections.

Commands:
  init-db        — create database tables
  submit         — submit (or queue offline) one depth reading
  area           — readings, grid aggregates and warnings for a bounding box
  nearest        — readings nearest to a position
  process        — run the correction pipeline for one reading (nothing stored)
  import-csv     — submit every reading in a CSV file
  sync-offline   — drain the offline submission queue
  cleanup        — delete stale low-confidence data
  monitor        — run the safety monitor for one vessel
  serve          — run the HTTP API
"""
from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from app.models.base import DepthSourceEnum

app = typer.Typer(
    name="depthsafe",
    help="Crowd-sourced marine depth data with tide and environmental safety corrections.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()

_RELIABILITY_COLOURS = {"high": "green", "medium": "cyan", "low": "yellow", "unreliable": "red"}


def _service(online: bool = True):
    from app.database import SessionLocal
    from app.modules.depth_service import build_depth_service
    return build_depth_service(SessionLocal, online=online)


def _reading(
    reading_id: Optional[str],
    lat: float,
    lon: float,
    depth: float,
    draft: float,
    confidence: float,
    source: DepthSourceEnum,
    method: Optional[str],
    timestamp: Optional[datetime],
):
    from app.modules.marine_data import DepthReadingData, to_naive_utc, utcnow
    return DepthReadingData(
        reading_id=reading_id or uuid.uuid4().hex,
        lat=lat,
        lon=lon,
        depth=depth,
        vessel_draft=draft,
        timestamp=to_naive_utc(timestamp) if timestamp else utcnow(),
        confidence=confidence,
        source=source,
        measurement_method=method,
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db_command():
    """Create all database tables."""
    from app.database import init_db

    with console.status("[bold]Creating database..."):
        init_db()
    console.print("[green]Database ready.[/green]")


@app.command("submit")
def submit(
    lat: float = typer.Option(..., "--lat", help="Latitude, decimal degrees"),
    lon: float = typer.Option(..., "--lon", help="Longitude, decimal degrees"),
    depth: float = typer.Option(..., "--depth", help="Measured depth in meters"),
    draft: float = typer.Option(..., "--draft", help="Vessel draft in meters"),
    confidence: float = typer.Option(0.8, "--confidence", min=0.0, max=1.0),
    source: DepthSourceEnum = typer.Option(DepthSourceEnum.CROWDSOURCE, "--source"),
    method: Optional[str] = typer.Option(None, "--method", help="sounder, lead_line, chart or visual"),
    reading_id: Optional[str] = typer.Option(None, "--id", help="Reading id (generated when omitted)"),
    timestamp: Optional[datetime] = typer.Option(None, "--timestamp", help="UTC capture time (default now)"),
    offline: bool = typer.Option(False, "--offline", help="Queue for later sync instead of submitting"),
    no_network: bool = typer.Option(False, "--no-network", help="Skip tide/weather lookups"),
):
    """Submit one depth reading."""
    from app.database import SessionLocal
    from app.modules.reading_validator import ReadingValidationError

    reading = _reading(reading_id, lat, lon, depth, draft, confidence, source, method, timestamp)

    if offline:
        from app.modules.offline_queue import OfflineQueue
        queue = OfflineQueue(SessionLocal, submitter=lambda r: None)
        if queue.enqueue(reading):
            console.print(f"[green]Queued[/green] {reading.reading_id} for sync")
        else:
            console.print(f"[dim]{reading.reading_id} is already queued.[/dim]")
        return

    service = _service(online=not no_network)
    db = SessionLocal()
    try:
        result = service.submit_depth_reading(db, reading)
    except ReadingValidationError as e:
        console.print(f"[red]Rejected: {e}[/red]")
        raise typer.Exit(1)
    finally:
        db.close()

    if result["duplicate"]:
        console.print(f"[dim]{result['id']} was already submitted at {result['submitted_at']}.[/dim]")
        return
    colour = _RELIABILITY_COLOURS.get(result["reliability"], "white")
    console.print(
        f"[green]Stored[/green] {result['id']} — reliability [{colour}]{result['reliability']}[/{colour}], "
        f"confidence {result['confidence']:.2f}"
    )
    for warning in result["quality_warnings"]:
        console.print(f"  [yellow]![/yellow] {warning}")
    if result["alert_id"]:
        console.print(f"  [red]Shallow-water alert raised ({result['alert_id']})[/red]")


@app.command("area")
def area(
    south: float = typer.Option(..., "--south"),
    west: float = typer.Option(..., "--west"),
    north: float = typer.Option(..., "--north"),
    east: float = typer.Option(..., "--east"),
    draft: Optional[float] = typer.Option(None, "--draft", help="Vessel draft for shallow warnings"),
    confidence_level: Optional[str] = typer.Option(None, "--confidence-level", help="low, medium, high or verified"),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
):
    """Show depth data for a bounding box."""
    from app.database import SessionLocal
    from app.modules.reading_validator import ReadingValidationError

    service = _service(online=False)
    db = SessionLocal()
    try:
        data = service.get_depth_data_for_area(
            db, south, west, north, east, vessel_draft=draft, confidence_level=confidence_level,
        )
    except ReadingValidationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    finally:
        db.close()

    if as_json:
        console.print_json(json.dumps(data, default=str))
        return

    console.print(
        f"[bold]{len(data['readings'])}[/bold] readings, "
        f"[bold]{len(data['aggregated_data'])}[/bold] grid cells, "
        f"data quality {data['data_quality_score']}/100"
    )
    if data["aggregated_data"]:
        table = Table(title="Grid cells")
        table.add_column("Center", style="cyan")
        table.add_column("Readings", justify="right")
        table.add_column("Avg (m)", justify="right")
        table.add_column("Min (m)", justify="right")
        table.add_column("Max (m)", justify="right")
        for cell in data["aggregated_data"]:
            table.add_row(
                f"{cell['center_lat']:.4f}, {cell['center_lon']:.4f}",
                str(cell["reading_count"]),
                f"{cell['avg_depth']:.1f}",
                f"{cell['min_depth']:.1f}",
                f"{cell['max_depth']:.1f}",
            )
        console.print(table)
    for w in data["safety_warnings"]:
        console.print(f"  [red]severity {w['severity']}[/red] {w['message']} at {w['lat']:.5f}, {w['lon']:.5f}")


@app.command("nearest")
def nearest(
    lat: float = typer.Option(..., "--lat"),
    lon: float = typer.Option(..., "--lon"),
    radius: float = typer.Option(1000.0, "--radius", help="Search radius in meters"),
    limit: int = typer.Option(10, "--limit"),
):
    """List readings nearest to a position."""
    from app.database import SessionLocal
    from app.modules.reading_validator import ReadingValidationError

    service = _service(online=False)
    db = SessionLocal()
    try:
        items = service.get_nearest_depth_readings(db, lat, lon, radius, limit)
    except ReadingValidationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    finally:
        db.close()

    if not items:
        console.print("[yellow]No readings within range.[/yellow]")
        return
    table = Table(title=f"Nearest readings ({len(items)})")
    table.add_column("ID", style="cyan")
    table.add_column("Distance (m)", justify="right")
    table.add_column("Depth (m)", justify="right")
    table.add_column("Confidence", justify="right")
    table.add_column("Source")
    table.add_column("Time")
    for item in items:
        table.add_row(
            item["id"],
            f"{item['distance_m']:.0f}",
            f"{item['depth']:.1f}",
            f"{item['confidence']:.2f}",
            item["source"],
            item["timestamp"][:19],
        )
    console.print(table)


@app.command("process")
def process(
    lat: float = typer.Option(..., "--lat"),
    lon: float = typer.Option(..., "--lon"),
    depth: float = typer.Option(..., "--depth"),
    draft: float = typer.Option(..., "--draft"),
    confidence: float = typer.Option(0.8, "--confidence", min=0.0, max=1.0),
    source: DepthSourceEnum = typer.Option(DepthSourceEnum.CROWDSOURCE, "--source"),
    timestamp: Optional[datetime] = typer.Option(None, "--timestamp"),
    no_network: bool = typer.Option(False, "--no-network", help="Skip tide/weather lookups"),
):
    """Run tide/environmental correction for a reading without storing it."""
    from app.modules.reading_validator import ReadingValidationError

    reading = _reading(None, lat, lon, depth, draft, confidence, source, None, timestamp)
    try:
        result = _service(online=not no_network).process_reading(reading)
    except ReadingValidationError as e:
        console.print(f"[red]Rejected: {e}[/red]")
        raise typer.Exit(1)

    colour = _RELIABILITY_COLOURS.get(result.reliability.value, "white")
    console.print(f"  Tide:          {result.tide.method.value} ({result.tide.tide_height:+.2f} m, "
                  f"confidence {result.tide.confidence:.2f})")
    console.print(f"  Corrected:     {result.corrected_depth:.2f} m")
    console.print(f"  Environmental: {result.environmental.total:+.3f} m")
    console.print(f"  Final depth:   {result.final_depth:.2f} m")
    console.print(f"  Safety margin: {result.safety_margin:+.2f} m")
    console.print(f"  Quality:       {result.quality.overall:.0f}/100")
    console.print(f"  Reliability:   [{colour}]{result.reliability.value}[/{colour}] (confidence {result.confidence:.2f})")
    for warning in result.warnings:
        console.print(f"  [yellow]![/yellow] {warning}")


@app.command("import-csv")
def import_csv(
    path: str = typer.Argument(..., help="CSV with id, timestamp, lat, lon, depth, vessel_draft, ... columns"),
    no_network: bool = typer.Option(False, "--no-network", help="Skip tide/weather lookups"),
):
    """Submit every row of a depth-reading CSV (see backend/scripts/generate_sample_data.py)."""
    import csv
    from pathlib import Path

    from pydantic import ValidationError

    from app.database import SessionLocal
    from app.modules.reading_validator import ReadingValidationError
    from app.schemas.depth import DepthReadingSubmit

    csv_path = Path(path)
    if not csv_path.exists():
        console.print(f"[red]File not found: {path}[/red]")
        raise typer.Exit(1)

    service = _service(online=not no_network)
    stored = duplicates = rejected = 0
    db = SessionLocal()
    try:
        with open(csv_path, newline="") as f:
            for line_no, row in enumerate(csv.DictReader(f), start=2):
                fields = {k: v for k, v in row.items() if k and v not in (None, "")}
                try:
                    result = service.submit_depth_reading(db, DepthReadingSubmit(**fields).to_reading())
                except (ValidationError, ReadingValidationError) as e:
                    rejected += 1
                    console.print(f"  [yellow]line {line_no}[/yellow] rejected: {e}")
                    continue
                if result["duplicate"]:
                    duplicates += 1
                else:
                    stored += 1
    finally:
        db.close()
    console.print(
        f"Stored [green]{stored}[/green], duplicates [dim]{duplicates}[/dim], rejected [red]{rejected}[/red]"
    )


@app.command("sync-offline")
def sync_offline(
    no_network: bool = typer.Option(False, "--no-network", help="Skip tide/weather lookups"),
):
    """Submit queued offline readings and purge old synced entries."""
    from app.database import SessionLocal
    from app.modules.offline_queue import OfflineQueue

    service = _service(online=not no_network)

    def _submit(reading):
        db = SessionLocal()
        try:
            return service.submit_depth_reading(db, reading)
        finally:
            db.close()

    queue = OfflineQueue(SessionLocal, submitter=_submit)
    with console.status("[bold]Syncing offline readings..."):
        totals = queue.sync_all()
        purged = queue.purge_synced()
    stats = queue.statistics()
    console.print(
        f"Synced [green]{totals['synced']}[/green], retrying [yellow]{totals['retrying']}[/yellow], "
        f"failed [red]{totals['failed']}[/red]; purged {purged}"
    )
    console.print(f"[dim]Queue: {stats['by_status']}[/dim]")


@app.command("cleanup")
def cleanup(
    days: int = typer.Option(365, "--days", help="Delete data older than this many days"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete stale low-confidence crowd-sourced readings and stale aggregates."""
    from app.database import SessionLocal

    if not yes:
        typer.confirm(f"Delete low-confidence data older than {days} days?", abort=True)
    service = _service(online=False)
    db = SessionLocal()
    try:
        result = service.cleanup_old_depth_data(db, days)
    finally:
        db.close()
    console.print(
        f"Removed [bold]{result['readings_deleted']}[/bold] readings and "
        f"[bold]{result['aggregates_deleted']}[/bold] aggregates."
    )


_STATUS_COLOURS = {"safe": "green", "caution": "cyan", "warning": "yellow", "critical": "red", "emergency": "bold red"}


def _route(points: list[str], speed: float):
    from app.modules.route_navigation import PlannedRoute, Waypoint

    waypoints = []
    for point in points:
        try:
            lat, lon = (float(v) for v in point.split(","))
        except ValueError:
            raise typer.BadParameter(f"waypoint must be LAT,LON: {point!r}", param_hint="--waypoint")
        waypoints.append(Waypoint(lat, lon))
    try:
        return PlannedRoute(route_id="cli-route", waypoints=waypoints, planned_speed_kn=speed or 6.0)
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint="--waypoint")


def _print_metrics(metrics, recommendations) -> None:
    colour = _STATUS_COLOURS.get(metrics.safety_status, "white")
    depth = f"{metrics.current_depth:.1f} m" if metrics.current_depth is not None else "no depth data"
    margin = f", margin {metrics.safety_margin:+.2f} m" if metrics.safety_margin is not None else ""
    console.print(
        f"{metrics.timestamp:%H:%M:%S} [{colour}]{metrics.safety_status.upper()}[/{colour}] "
        f"{depth}{margin} — {metrics.vessel_status.value}, {metrics.alert_counts.get('active', 0)} active alerts"
    )
    if metrics.route_deviation_m is not None:
        eta = f", ETA {metrics.eta:%H:%M}" if metrics.eta else ""
        console.print(f"  Route deviation {metrics.route_deviation_m:.0f} m{eta}")
    for trigger in metrics.triggers:
        console.print(f"  [bold red]{trigger.replace('_', ' ')}[/bold red]")
    for rec in recommendations:
        console.print(f"  [yellow]{rec.priority.value}[/yellow] {rec.title}")


@app.command("monitor")
def monitor(
    lat: float = typer.Option(..., "--lat", help="Vessel latitude"),
    lon: float = typer.Option(..., "--lon", help="Vessel longitude"),
    draft: float = typer.Option(..., "--draft", help="Vessel draft in meters"),
    speed: float = typer.Option(0.0, "--speed", help="Speed over ground, knots"),
    heading: float = typer.Option(0.0, "--heading", help="Heading, degrees true"),
    vessel_id: str = typer.Option("cli-vessel", "--vessel-id"),
    vessel_name: Optional[str] = typer.Option(None, "--vessel-name"),
    waypoint: Optional[list[str]] = typer.Option(None, "--waypoint", help="Planned route point LAT,LON (repeat, two or more)"),
    ticks: int = typer.Option(0, "--ticks", min=0, help="Stop after this many passes (0 runs until Ctrl+C)"),
    interval: Optional[float] = typer.Option(None, "--interval", help="Seconds between passes"),
    no_network: bool = typer.Option(False, "--no-network", help="Skip tide/weather lookups"),
):
    """Run the safety monitor for one vessel at a fixed position."""
    import queue
    import time

    from app.config import settings
    from app.modules.alert_hierarchy import SafetyAlertHierarchy
    from app.modules.emergency_protocol import EmergencyProtocolManager
    from app.modules.marine_data import VesselState, utcnow
    from app.modules.route_navigation import SafeRouteNavigator
    from app.modules.safety_monitor import SafetyMonitoringService

    navigator = SafeRouteNavigator(_route(waypoint, speed)) if waypoint else None
    interval = settings.MONITOR_INTERVAL_SECONDS if interval is None else interval
    service = _service(online=not no_network)
    hierarchy = service.hierarchy or SafetyAlertHierarchy()
    sink = hierarchy.broadcast_sink
    emergency = sink if isinstance(sink, EmergencyProtocolManager) else None

    def _vessel():
        return VesselState(
            vessel_id=vessel_id, lat=lat, lon=lon, speed_kn=speed, heading_deg=heading,
            draft_m=draft, timestamp=utcnow(), vessel_name=vessel_name,
        )

    service_monitor = SafetyMonitoringService(
        vessel_provider=_vessel,
        depth_provider=service.depth_provider(),
        engine=service.engine,
        hierarchy=hierarchy,
        emergency=emergency,
        navigator=navigator,
        weather_source=service.engine.weather_source,
        interval_seconds=interval,
    )
    metrics_q = service_monitor.metrics_feed.subscribe()
    recommendations_q = service_monitor.recommendations_feed.subscribe()

    def _show(metrics):
        recommendations = []
        while True:
            try:
                recommendations = recommendations_q.get_nowait()
            except queue.Empty:
                break
        _print_metrics(metrics, recommendations)

    console.print(f"Monitoring [cyan]{vessel_name or vessel_id}[/cyan] every {interval:.0f}s — press Ctrl+C to stop")
    try:
        if ticks:
            for n in range(ticks):
                metrics = service_monitor.tick()
                if metrics is not None:
                    _show(metrics)
                if n < ticks - 1:
                    time.sleep(interval)
        else:
            service_monitor.start()
            while True:
                _show(metrics_q.get())
    except KeyboardInterrupt:
        console.print("[dim]Monitoring stopped.[/dim]")
    finally:
        service_monitor.stop()
        if emergency is not None:
            emergency.shutdown()


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port"),
):
    """Run the HTTP API."""
    import uvicorn

    console.print(f"API running at [cyan]http://{host}:{port}/api/v1[/cyan] — press Ctrl+C to stop")
    uvicorn.run("app.main:app", host=host, port=port)
