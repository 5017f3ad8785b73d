"""
face-attendance CLI: manage the local store and sync queue from the command line.

Usage:
    face-attendance init
    face-attendance status
    face-attendance sync
    face-attendance enroll KEY --vector probe.npy [--name NAME]
    face-attendance match PROBE.npy [--mode best|list]
    face-attendance queue list [--status STATUS]
    face-attendance queue clear --synced | --failed
    face-attendance queue requeue
    face-attendance queue purge ITEM_ID
    face-attendance version
"""

from __future__ import annotations

import asyncio
import json

import click
import numpy as np

from face_attendance import __version__


def _load_app(ctx: click.Context):
    """Build the AttendanceApp for this invocation, configuring logging once."""
    if ctx.obj.get("app") is None:
        from face_attendance.app import AttendanceApp
        from face_attendance.config import get_config
        from face_attendance.logging_config import configure_from_config

        config = get_config(ctx.obj.get("config_path"))
        if ctx.obj.get("verbose"):
            config["logging"]["level"] = "DEBUG"
        configure_from_config(config)

        ctx.obj["app"] = AttendanceApp(config)
        ctx.call_on_close(ctx.obj["app"].db.dispose)
    return ctx.obj["app"]


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.option("--config", "config_path", default=None, type=click.Path(dir_okay=False),
              help="Path to config.json (default: ~/.face-attendance/config.json)")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """Face Attendance: offline-first face matching and attendance sync."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose


@cli.command()
def version() -> None:
    """Print the installed version."""
    click.echo(f"face-attendance {__version__}")


@cli.command()
def init() -> None:
    """Create ~/.face-attendance/ with a default configuration."""
    from face_attendance.config import get_default_config
    from face_attendance.paths import ensure_data_home, get_data_home

    data_home = ensure_data_home()
    click.echo(f"Data directory: {data_home}")

    config_path = get_data_home() / "config.json"
    if config_path.exists():
        click.echo(f"Config already exists: {config_path}")
    else:
        config_path.write_text(json.dumps(get_default_config(), indent=2), encoding="utf-8")
        click.echo(f"Config created: {config_path}")

    click.echo("Initialization complete.")


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show store size, queue counts and the last sync session."""
    app = _load_app(ctx)
    _echo_json(app.status())


@cli.command()
@click.option("--offline", is_flag=True, default=False,
              help="Treat the network as offline (the request is deferred)")
@click.pass_context
def sync(ctx: click.Context, offline: bool) -> None:
    """Drain the sync queue to the configured remote store."""
    app = _load_app(ctx)
    if not app.config["remote"].get("base_url"):
        click.echo("Error: remote.base_url is not configured.", err=True)
        raise SystemExit(1)

    if offline:
        app.monitor.set_online(False)

    async def _run():
        try:
            return await app.coordinator.request_sync()
        finally:
            await app.remote.close()

    session = asyncio.run(_run())

    click.echo(
        f"Synced {session.synced}, failed {session.failed}, "
        f"deferred {session.deferred}, not yet due {session.skipped}"
    )
    for error in session.errors:
        click.echo(f"  ! {error}")

    if session.failed:
        raise SystemExit(1)


@cli.command()
@click.argument("identity_key")
@click.option("--vector", "vector_path", required=True, type=click.Path(exists=True, dir_okay=False),
              help="Feature vector saved with numpy.save (.npy)")
@click.option("--name", default="", help="Display name")
@click.option("--quality", default=1.0, type=float, help="Capture quality (0-1)")
@click.pass_context
def enroll(ctx: click.Context, identity_key: str, vector_path: str, name: str, quality: float) -> None:
    """Enroll IDENTITY_KEY with a precomputed feature vector."""
    app = _load_app(ctx)
    vector = np.load(vector_path)

    result = app.enroller.enroll(identity_key, name=name, vector=vector, quality=quality)
    if result.error is not None:
        click.echo(f"Error: {result.error}", err=True)
        raise SystemExit(1)

    click.echo(f"Enrolled {result.identity.identity_key} ({result.identity.identity_id})")
    click.echo(f"Queued {len(result.queue_items)} mutation(s) for sync")


@cli.command()
@click.argument("probe_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--mode", type=click.Choice(["best", "list"]), default="best",
              help="best: single accepted identity; list: all candidates above the list threshold")
@click.option("--max-matches", default=None, type=int, help="Maximum candidates in list mode")
@click.pass_context
def match(ctx: click.Context, probe_path: str, mode: str, max_matches: int | None) -> None:
    """Match a probe vector (.npy) against the enrolled identities."""
    from face_attendance.matching import format_candidates_simple

    app = _load_app(ctx)
    probe = np.load(probe_path)

    if mode == "best":
        best = app.engine.best_match(probe, app.store)
        candidates = [best] if best else []
    else:
        candidates = app.engine.list_candidates(probe, app.store, max_matches=max_matches)

    if not candidates:
        click.echo("No match")
        raise SystemExit(1)
    _echo_json(format_candidates_simple(candidates))


@cli.group()
def queue() -> None:
    """Inspect and manage the sync queue."""


@queue.command("list")
@click.option("--status", "status_filter", default=None,
              type=click.Choice(["pending", "in_flight", "synced", "failed_permanent"]),
              help="Only show items with this status")
@click.pass_context
def queue_list(ctx: click.Context, status_filter: str | None) -> None:
    """List queue items in FIFO order."""
    app = _load_app(ctx)
    items = app.queue.items(status_filter)
    if not items:
        click.echo("Queue is empty")
        return

    for item in items:
        line = (
            f"{item.seq:>5}  {item.item_id}  {item.status.value:<16} "
            f"{item.operation.value:<6} {item.collection}/{item.record_id}  "
            f"attempts={item.attempt_count}"
        )
        if item.last_error:
            line += f"  last_error={item.last_error}"
        click.echo(line)


@queue.command("clear")
@click.option("--synced", is_flag=True, default=False, help="Remove synced items")
@click.option("--failed", is_flag=True, default=False, help="Remove permanently failed items")
@click.pass_context
def queue_clear(ctx: click.Context, synced: bool, failed: bool) -> None:
    """Remove terminal items from the queue."""
    if not (synced or failed):
        raise click.UsageError("Pass --synced and/or --failed")

    app = _load_app(ctx)
    if synced:
        click.echo(f"Removed {app.queue.clear_synced()} synced item(s)")
    if failed:
        click.echo(f"Removed {app.queue.clear_failed()} failed item(s)")


@queue.command("requeue")
@click.pass_context
def queue_requeue(ctx: click.Context) -> None:
    """Give permanently failed items a fresh attempt budget."""
    app = _load_app(ctx)
    click.echo(f"Requeued {app.queue.requeue_failed()} item(s)")


@queue.command("purge")
@click.argument("item_id")
@click.pass_context
def queue_purge(ctx: click.Context, item_id: str) -> None:
    """Remove one synced or failed item."""
    app = _load_app(ctx)
    if not app.queue.purge(item_id):
        click.echo(f"Error: {item_id} not found or not in a terminal state", err=True)
        raise SystemExit(1)
    click.echo(f"Purged {item_id}")


if __name__ == "__main__":
    cli()
