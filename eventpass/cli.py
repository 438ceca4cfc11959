"""Typer CLI for EventPass."""

from __future__ import annotations

import json
import os
import shutil
import subprocess
import sys
from pathlib import Path

from sqlalchemy.exc import OperationalError
import typer
import uvicorn

from .config import (
    load_settings,
    settings,
    settings_as_dict,
    update_config_file,
)
from .crud import get_user, get_user_by_email
from .database import get_session
from .errors import EventPassError, NotFoundError
from .events import count_active_guests, get_event_by_short_code
from .scheduler import start_scheduler, stop_scheduler
from .seed import seed_fake_data
from .storage import init_db, upgrade_database
from .visibility import Identity

app = typer.Typer(help="EventPass command-line interface")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command("upgrade-db")
def upgrade_db(
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip creating a .bak copy of the database before upgrading",
    ),
) -> None:
    """Upgrade the SQLite database schema if needed."""
    try:
        actions = upgrade_database(make_backup=not no_backup)
    except OperationalError as exc:
        message = str(getattr(exc, "orig", exc)).lower()
        if "readonly" in message or "read-only" in message:
            typer.secho(
                "Unable to upgrade because the database is read-only. "
                f"Ensure write access to {settings.database_path}.",
                err=True,
                fg=typer.colors.RED,
            )
            raise typer.Exit(code=1)
        raise

    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start FastAPI with APScheduler."""
    init_db()
    if settings.enable_scheduler:
        start_scheduler()
    config = uvicorn.Config(
        "eventpass.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    try:
        typer.echo(f"Starting EventPass on {host}:{port}")
        server.run()
    finally:
        stop_scheduler()


@app.command("seed-data")
def seed_data(
    events: int = typer.Option(
        settings.seed_events, "--events", min=0, help="Number of events to create"
    ),
    max_guests: int = typer.Option(
        settings.seed_guests_per_event,
        "--max-guests",
        min=0,
        help="Maximum guests to attach to each event",
    ),
    private_percent: int = typer.Option(
        settings.seed_private_percent,
        "--private-percent",
        min=0,
        max=100,
        help="Percentage of events that should be private (0-100)",
    ),
):
    """Populate the database with fake events and guests for testing."""
    stats = seed_fake_data(
        event_count=events,
        max_guests_per_event=max_guests,
        private_percentage=private_percent,
    )
    typer.echo(
        f"Seed complete: {stats['events']} events, {stats['guests']} guests, "
        f"{stats['schedule_items']} schedule items, {stats['users']} users created."
    )


@app.command("lookup-code")
def lookup_code(
    short_code: str = typer.Argument(..., help="Event short code"),
    as_user: str | None = typer.Option(
        None,
        "--as-user",
        help="Look up as this user (id or email); private events need an owner or guest",
    ),
) -> None:
    """Show the event behind a short code.

    Private events are refused unless ``--as-user`` names their owner or a guest.
    """
    init_db()
    try:
        with get_session() as session:
            identity = None
            if as_user:
                user = get_user(session, as_user) or get_user_by_email(session, as_user)
                if user is None:
                    raise NotFoundError(f"User {as_user} not found")
                identity = Identity.from_user(user)
            event = get_event_by_short_code(session, short_code, identity)
            summary = {
                "id": event.id,
                "short_code": event.short_code,
                "name": event.name,
                "visibility": event.visibility,
                "start_date": event.start_date.isoformat(),
                "end_date": event.end_date.isoformat(),
                "guests": count_active_guests(session, event.id),
            }
    except EventPassError as exc:
        typer.secho(f"{exc.error}: {exc.message}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(json.dumps(summary, indent=2))


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Show the current effective configuration"
    ),
    short_code_length: int | None = typer.Option(
        None, "--short-code-length", min=4, help="Characters per event short code"
    ),
    short_code_max_attempts: int | None = typer.Option(
        None,
        "--short-code-max-attempts",
        min=1,
        help="Collision retries before short-code allocation fails",
    ),
    event_create_max_attempts: int | None = typer.Option(
        None,
        "--event-create-max-attempts",
        min=1,
        help="Insert retries when a short code is taken concurrently",
    ),
    events_per_page: int | None = typer.Option(
        None, "--events-per-page", min=1, help="Default listing page size"
    ),
    max_events_per_page: int | None = typer.Option(
        None, "--max-events-per-page", min=1, help="Largest page size clients may ask for"
    ),
    recent_announcements_limit: int | None = typer.Option(
        None,
        "--recent-announcements-limit",
        min=0,
        help="Announcements returned with event details (0 for all)",
    ),
    happening_soon_days: int | None = typer.Option(
        None, "--happening-soon-days", min=1, help="Window for happening-now listings"
    ),
    calendar_window_days: int | None = typer.Option(
        None, "--calendar-window-days", min=1, help="Default calendar range"
    ),
    notification_log_retention_days: int | None = typer.Option(
        None,
        "--notification-log-retention-days",
        min=1,
        help="Days to keep push notification logs",
    ),
    notification_prune_hours: int | None = typer.Option(
        None, "--notification-prune-hours", min=1, help="Hours between log pruning runs"
    ),
    enable_scheduler: bool | None = typer.Option(
        None,
        "--enable-scheduler/--disable-scheduler",
        help="Toggle background scheduler (log pruning, push dispatch)",
    ),
    seed_events: int | None = typer.Option(
        None, "--seed-events", min=0, help="Default seed-data events"
    ),
    seed_guests_per_event: int | None = typer.Option(
        None, "--seed-guests-per-event", min=0, help="Default seed-data guests per event"
    ),
    seed_private_percent: int | None = typer.Option(
        None,
        "--seed-private-percent",
        min=0,
        max=100,
        help="Default percent of private events for seed-data",
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to eventpass.toml (default: ./eventpass.toml)"
    ),
):
    """View or update the persistent configuration file."""

    updates = {
        "short_code_length": short_code_length,
        "short_code_max_attempts": short_code_max_attempts,
        "event_create_max_attempts": event_create_max_attempts,
        "events_per_page": events_per_page,
        "max_events_per_page": max_events_per_page,
        "recent_announcements_limit": recent_announcements_limit,
        "happening_soon_days": happening_soon_days,
        "calendar_window_days": calendar_window_days,
        "notification_log_retention_days": notification_log_retention_days,
        "notification_prune_hours": notification_prune_hours,
        "enable_scheduler": enable_scheduler,
        "seed_events": seed_events,
        "seed_guests_per_event": seed_guests_per_event,
        "seed_private_percent": seed_private_percent,
        "app_host": host,
        "app_port": port,
    }
    clean_updates = {k: v for k, v in updates.items() if v is not None}

    settings_ref = settings
    target_path = config_path or settings.config_path
    if clean_updates:
        settings_ref = update_config_file(clean_updates, path=target_path)
        typer.echo(f"Updated configuration in {target_path}")
    else:
        settings_ref = load_settings(target_path)
    if show or not clean_updates:
        effective = settings_as_dict(settings_ref)
        effective["config_path"] = str(target_path)
        typer.echo(json.dumps(effective, indent=2))


@app.command("test")
def run_tests(pytest_args: list[str] = typer.Argument(None, help="Extra pytest args")):
    """Run the test suite with helpful defaults."""
    env = os.environ.copy()
    env.setdefault("PYTHONPATH", ".")
    env.setdefault("UV_CACHE_DIR", ".uv-cache")
    uv_path = shutil.which("uv")
    if uv_path:
        cmd = [uv_path, "run", "pytest"]
    else:
        typer.echo("uv not found, falling back to python -m pytest")
        cmd = [sys.executable, "-m", "pytest"]
    if pytest_args:
        cmd.extend(pytest_args)
    typer.echo(f"Running tests: {' '.join(cmd)}")
    result = subprocess.run(cmd, env=env)
    raise typer.Exit(code=result.returncode)


if __name__ == "__main__":
    app()
