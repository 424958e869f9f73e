"""CLI entry point for vaulty-usage."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click
from pydantic import ValidationError

from vaulty_usage.config import Settings
from vaulty_usage.errors import UsageError
from vaulty_usage.models import ProviderEvent
from vaulty_usage.providers import CommandProvider, parse_jsonl
from vaulty_usage.service import UsageService
from vaulty_usage.timeutil import now_ms, parse_date


def format_relative_time(ts_ms: int, *, now: int | None = None) -> str:
    """Format an epoch-millisecond timestamp as relative time (e.g., '5 minutes ago').

    Args:
        ts_ms: Timestamp in epoch milliseconds.
        now: Optional current time for testing (defaults to now).
    """
    if now is None:
        now = now_ms()

    seconds = (now - ts_ms) / 1000
    if seconds < 60:
        # Includes future timestamps from device clock skew
        return "just now"
    elif seconds < 3600:
        minutes = int(seconds / 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    elif seconds < 86400:
        hours = int(seconds / 3600)
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    else:
        days = int(seconds / 86400)
        return f"{days} day{'s' if days != 1 else ''} ago"


def format_duration(ms: int) -> str:
    """Render a duration as '1h 30m', '45m', '<1m' or '0m'."""
    if ms <= 0:
        return "0m"
    if ms < 60_000:
        return "<1m"
    hours, minutes = divmod(ms // 60_000, 60)
    return f"{hours}h {minutes:2d}m" if hours else f"{minutes}m"


def make_progress_bar(value: int, max_value: int, width: int = 16) -> str:
    """Bar of ``width`` cells; any non-zero value fills at least one."""
    filled = 0
    if value > 0 and max_value > 0:
        filled = min(width, max(1, round(width * value / max_value)))
    return "█" * filled + "░" * (width - filled)


def _validate_date(ctx: click.Context, param: click.Parameter, value):
    values = value if isinstance(value, tuple) else (value,)
    for item in values:
        try:
            parse_date(item)
        except ValueError:
            raise click.BadParameter(f"Invalid date: {item}. Use YYYY-MM-DD.")
    return value


def _settings(ctx: click.Context, db: Path | None, **overrides) -> Settings:
    try:
        overrides.update(db_path=db, timezone=ctx.obj.get("timezone"))
        return Settings(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as e:
        click.echo(f"Invalid configuration: {e}", err=True)
        sys.exit(1)


def _open_existing(settings: Settings) -> UsageService:
    if settings.backend == "sqlite" and not settings.db_path.exists():
        click.echo("No database found", err=True)
        sys.exit(1)
    return UsageService.open(settings)


db_option = click.option(
    "--db",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to SQLite database [env: VAULTY_USAGE_DB_PATH]",
)


@click.group()
@click.option("-v", "--verbose", count=True, help="Log progress (-vv for debug output)")
@click.option("--timezone", "tz_name", default=None, help="IANA time zone for local dates")
@click.pass_context
def main(ctx: click.Context, verbose: int, tz_name: str | None):
    """App usage ingestion and hourly statistics."""
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        stream=sys.stderr,
    )
    ctx.ensure_object(dict)
    ctx.obj["timezone"] = tz_name


@main.command("sync")
@db_option
@click.option("--command", "provider_command", help="Provider exporter command line")
@click.option("--timeout", type=int, default=None, help="Provider timeout in seconds")
@click.pass_context
def sync_command(
    ctx: click.Context, db: Path | None, provider_command: str | None, timeout: int | None
) -> None:
    """Run one sync cycle against the provider command.

    Fetches events since the last checkpoint, stores them, and refreshes
    usage records and hourly aggregates of the touched days.

    Example:
        vaulty-usage sync --command "adb shell usage-export"
    """
    settings = _settings(
        ctx, db, provider_command=provider_command, provider_timeout=timeout
    )
    if not settings.provider_command:
        click.echo("No provider command configured (use --command)", err=True)
        sys.exit(1)

    provider = CommandProvider(settings.provider_command, settings.provider_timeout)
    with UsageService.open(settings, event_provider=provider, app_provider=provider) as service:
        result = service.sync_now()

    if not result.success:
        stage = result.failed_stage.value if result.failed_stage else "setup"
        click.echo(f"Sync failed at {stage}: {result.error}", err=True)
        sys.exit(1)

    click.echo(
        f"Synced {result.events_fetched} events ({result.raw_inserted} new), "
        f"{result.sessions} sessions"
    )
    if result.directory is not None:
        d = result.directory
        click.echo(
            f"Apps: {d.inserted} new, {d.updated} updated, "
            f"{d.resurrected} reinstalled, {d.tombstoned} removed"
        )
    if result.dates_aggregated:
        click.echo(f"Aggregated: {', '.join(result.dates_aggregated)}")


@main.command("import")
@db_option
@click.pass_context
def import_events(ctx: click.Context, db: Path | None):
    """Import raw events from stdin (JSONL format).

    Each line is an event object with packageName, timestamp and eventType.
    Duplicate events are silently skipped. The days touched are re-aggregated.

    Example usage:
        adb shell usage-export events --start 0 --end 9999999999999 | vaulty-usage import
    """
    settings = _settings(ctx, db)

    def warn(message: str) -> None:
        click.echo(f"Warning: {message}", err=True)

    events, seen = parse_jsonl(sys.stdin, ProviderEvent, warn)

    with UsageService.open(settings) as service:
        inserted, dates = service.ingest_events(events)

    click.echo(f"Imported {inserted} events")
    if dates:
        click.echo(f"Aggregated: {', '.join(dates)}")

    # Exit code 1 if we had input but no valid events (all lines were errors)
    if seen and not events:
        sys.exit(1)


@main.command("hourly")
@click.argument("date", callback=_validate_date)
@db_option
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def hourly_command(ctx: click.Context, date: str, db: Path | None, output_json: bool) -> None:
    """Show usage per hour of DATE (YYYY-MM-DD)."""
    with _open_existing(_settings(ctx, db)) as service:
        stats = service.get_hourly_usage_stats(date)

    if output_json:
        click.echo(json.dumps([s.model_dump(by_alias=True) for s in stats], indent=2))
        return

    total = sum(s.total_duration for s in stats)
    click.echo(f"Hourly usage: {date}")
    click.echo()
    if total == 0:
        click.echo("No usage recorded for this day.")
        return

    click.echo(f"Total: {format_duration(total)}")
    click.echo()
    max_hour = max(s.total_duration for s in stats)
    for stat in stats:
        top = stat.apps[0].app_name if stat.apps else ""
        bar = make_progress_bar(stat.total_duration, max_hour)
        click.echo(f"  {stat.hour:02d}:00 {bar} {format_duration(stat.total_duration):>7}  {top}")


@main.command("top")
@click.argument("date", callback=_validate_date)
@db_option
@click.option("--limit", type=int, default=10, show_default=True, help="Number of apps")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def top_command(
    ctx: click.Context, date: str, db: Path | None, limit: int, output_json: bool
) -> None:
    """Show the most used apps of DATE (YYYY-MM-DD)."""
    with _open_existing(_settings(ctx, db)) as service:
        apps = service.get_daily_top_apps(date, limit)

    if output_json:
        click.echo(json.dumps([a.model_dump(by_alias=True) for a in apps], indent=2))
        return

    click.echo(f"Top apps: {date}")
    click.echo()
    if not apps:
        click.echo("No usage recorded for this day.")
        return

    max_total = apps[0].total_duration
    for rank, app in enumerate(apps, 1):
        name = app.app_name
        if len(name) > 24:
            name = name[:21] + "..."
        bar = make_progress_bar(app.total_duration, max_total)
        click.echo(
            f"  {rank:>2}. {name:<24} {format_duration(app.total_duration):>7} "
            f"{bar}  ({app.usage_count} uses)"
        )


@main.command("aggregate")
@click.argument("dates", nargs=-1, required=True, callback=_validate_date)
@db_option
@click.pass_context
def aggregate_command(ctx: click.Context, dates: tuple[str, ...], db: Path | None) -> None:
    """Recompute hourly aggregates of one or more DATES from raw events."""
    with _open_existing(_settings(ctx, db)) as service:
        try:
            written = service.aggregate_dates(dates)
        except UsageError as e:
            click.echo(f"Aggregation failed: {e}", err=True)
            sys.exit(1)

    for date, rows in written.items():
        if rows:
            click.echo(f"{date}: {rows} hourly rows")
        else:
            click.echo(f"{date}: no raw events, left unchanged")


@main.command("status")
@db_option
@click.pass_context
def status_command(ctx: click.Context, db: Path | None) -> None:
    """Show sync checkpoint, stored row counts and installed-app statistics."""
    settings = _settings(ctx, db)
    with _open_existing(settings) as service:
        checkpoint = service.backend.get_checkpoint()
        raw_count = service.backend.count_raw_events()
        record_count = service.get_total_records_count()
        unique_apps = service.get_unique_apps_count()
        date_range = service.get_date_range()
        app_stats = service.get_installed_app_stats()

    if settings.backend == "sqlite":
        click.echo(f"Database: {settings.db_path}")
        click.echo()

    if checkpoint is None:
        click.echo("Last sync: never")
    else:
        click.echo(f"Last sync: {format_relative_time(checkpoint)}")
    click.echo(f"Raw events: {raw_count}")
    click.echo(f"Usage records: {record_count} ({unique_apps} apps)")
    if date_range is not None:
        click.echo(f"Date range: {date_range[0]} to {date_range[1]}")
    click.echo(
        f"Installed apps: {app_stats.total_apps} "
        f"({app_stats.user_apps} user, {app_stats.system_apps} system, "
        f"{app_stats.deleted_apps} removed)"
    )


@main.command("cleanup")
@db_option
@click.pass_context
def cleanup_command(ctx: click.Context, db: Path | None) -> None:
    """Delete data past its retention window."""
    with _open_existing(_settings(ctx, db)) as service:
        result = service.run_maintenance()

    click.echo(f"Raw events deleted: {result.raw_events_deleted}")
    click.echo(f"Usage records deleted: {result.usage_records_deleted}")
    click.echo(f"Hourly rows deleted: {result.hourly_aggregates_deleted}")
    click.echo(f"Removed apps purged: {result.apps_purged}")


if __name__ == "__main__":
    main()
