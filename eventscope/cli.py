"""Typer CLI for EventScope."""

from __future__ import annotations

import json
from pathlib import Path

import typer
import uvicorn
from sqlalchemy.exc import OperationalError

from .access import evaluate_permission, permission_summary, ranked_feed
from .config import DEFAULTS, settings, settings_as_dict, update_config_file
from .database import get_session
from .errors import AccessDenied, NotFound
from .guest import issue_guest_pass
from .scheduler import run_guest_pass_sweep, start_scheduler, stop_scheduler
from .seed import seed_fake_data
from .storage import init_db

app = typer.Typer(help="EventScope command-line interface")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command("init-db")
def init_db_command() -> None:
    """Create the database schema."""
    try:
        init_db()
    except OperationalError as exc:
        message = str(getattr(exc, "orig", exc)).lower()
        if "readonly" in message or "read-only" in message:
            typer.secho(
                "Unable to initialize the database because it is read-only. "
                f"Ensure the process can write to {settings.database_path}.",
                fg=typer.colors.RED,
                err=True,
            )
            raise typer.Exit(code=1) from exc
        raise
    typer.echo(f"Database ready at {settings.database_path}")


@app.command("config")
def show_config() -> None:
    """Print the effective configuration as JSON."""
    typer.echo(json.dumps(settings_as_dict(settings), indent=2, sort_keys=True))


@app.command("set-config")
def set_config(
    key: str = typer.Argument(..., help="Setting name, e.g. weight_friend_host"),
    value: str = typer.Argument(..., help="New value"),
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to eventscope.toml (default: ./eventscope.toml)"
    ),
) -> None:
    """Persist one setting to the TOML config file."""
    normalized = key.strip().lower().replace("-", "_")
    if normalized not in DEFAULTS:
        typer.secho(f"Unknown setting {key!r}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    try:
        updated = update_config_file({normalized: value}, path=config_path)
    except ValueError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(f"{normalized} = {getattr(updated, normalized)!r} ({updated.config_path})")


@app.command("seed-data")
def seed_data(
    users: int = typer.Option(settings.seed_users, "--users", min=2, help="Users to create"),
    events: int = typer.Option(
        settings.seed_events, "--events", min=0, help="Events to create"
    ),
    max_attendees: int = typer.Option(
        settings.seed_attendees_per_event,
        "--max-attendees",
        min=0,
        help="Maximum attendees to attach to each event",
    ),
) -> None:
    """Populate the database with fake users, friendships and events."""
    stats = seed_fake_data(
        user_count=users, event_count=events, max_attendees=max_attendees
    )
    typer.echo(
        f"Seed complete: {stats['users']} users, {stats['friendships']} friendships, "
        f"{stats['follows']} follows, {stats['events']} events, "
        f"{stats['members']} memberships created."
    )


@app.command("check-access")
def check_access(
    event_id: str = typer.Argument(..., help="Event id"),
    user_id: str = typer.Argument(..., help="User id (use '-' for anonymous)"),
    action: str = typer.Argument(
        "all", help="view, join, invite, share, or all for a summary"
    ),
    guest_token: str | None = typer.Option(None, "--guest-token", help="Guest token"),
) -> None:
    """Evaluate permissions for one user on one event."""
    init_db()
    actor = None if user_id == "-" else user_id
    with get_session() as session:
        if action == "all":
            try:
                summary = permission_summary(
                    session, event_id, actor, guest_token=guest_token
                )
            except NotFound as exc:
                typer.secho(str(exc), fg=typer.colors.RED, err=True)
                raise typer.Exit(code=1) from exc
            typer.echo(json.dumps(summary, indent=2))
            return
        allowed = evaluate_permission(
            session, event_id, actor, action, guest_token=guest_token
        )
    typer.echo(f"{action}: {'allowed' if allowed else 'denied'}")
    if not allowed:
        raise typer.Exit(code=2)


@app.command("feed")
def feed(
    user_id: str = typer.Argument(..., help="User id (use '-' for anonymous)"),
    page: int = typer.Option(1, "--page", min=1),
    per_page: int = typer.Option(settings.feed_per_page, "--per-page", min=1),
) -> None:
    """Print a ranked feed page."""
    init_db()
    actor = None if user_id == "-" else user_id
    with get_session() as session:
        items, pagination = ranked_feed(session, actor, page=page, per_page=per_page)
        for item in items:
            start = item.event.start_time.strftime("%Y-%m-%d %H:%M")
            typer.echo(
                f"{item.score:7.1f}  {start}  {item.event.privacy_tier:<8} "
                f"{item.event.title} ({item.event.id})"
            )
    typer.echo(
        f"Page {pagination['page']}/{pagination['total_pages']} "
        f"({pagination['total_events']} events)"
    )


@app.command("issue-guest-pass")
def issue_guest_pass_command(
    event_id: str = typer.Argument(..., help="Event id"),
    issuer_id: str = typer.Argument(..., help="User issuing the pass"),
    guest_name: str = typer.Argument(..., help="Name of the guest"),
    ttl_hours: int = typer.Option(
        settings.guest_pass_ttl_hours, "--ttl-hours", min=1, help="Pass lifetime"
    ),
) -> None:
    """Issue a guest pass and print its token."""
    init_db()
    try:
        with get_session() as session:
            guest_pass, token = issue_guest_pass(
                session, event_id, issuer_id, guest_name, ttl_hours=ttl_hours
            )
            expires_at = guest_pass.expires_at
    except (AccessDenied, NotFound, ValueError) as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(token)
    typer.echo(f"Expires at {expires_at.isoformat()} UTC", err=True)


@app.command("expire-guest-passes")
def expire_guest_passes_command() -> None:
    """Run the guest pass expiry sweep once."""
    init_db()
    expired = run_guest_pass_sweep()
    typer.echo(f"Expired {expired} guest passes.")


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
        "eventscope.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    try:
        typer.echo(f"Starting EventScope on {host}:{port}")
        server.run()
    finally:
        stop_scheduler()


if __name__ == "__main__":
    app()
