"""CLI for the backlog planner."""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import date, datetime
from pathlib import Path
from zoneinfo import ZoneInfo

import click
from pydantic import ValidationError

from backlog_planner.config import ConfigError, PlannerConfig, ScheduleDefaults, load_config
from backlog_planner.core.logging import configure_logging
from backlog_planner.db import Database
from backlog_planner.models import BacklogItem, GeneratedSession, SchedulingPreferences
from backlog_planner.scheduling.generator import generate
from backlog_planner.scheduling.ical import ICalSession, generate_icalendar

DEFAULT_CONFIG_PATH = Path("planner.toml")


def _load_backlog(path: Path) -> list[BacklogItem]:
    try:
        raw = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"{path} is not valid JSON: {exc.msg}") from exc
    if isinstance(raw, dict):
        raw = raw.get("items")
    if not isinstance(raw, list):
        raise click.BadParameter(f"{path} must contain a JSON list of backlog items")
    try:
        return [BacklogItem.model_validate(entry) for entry in raw]
    except ValidationError as exc:
        raise click.BadParameter(f"{path} has an invalid backlog item: {exc}") from exc


def _render_text(
    sessions: list[GeneratedSession], names: dict[int, str], timezone: str
) -> list[str]:
    tz = ZoneInfo(timezone)
    lines = []
    for session in sessions:
        local = session.start_at.astimezone(tz)
        lines.append(
            f"{local:%a %Y-%m-%d %H:%M} ({session.start_at:%H:%M} UTC)  "
            f"{int(session.duration.total_seconds() // 60)}m  {names[session.item_id]}"
        )
    return lines


@click.group()
@click.version_option(version="0.1.0")
@click.option("--log-level", default="WARNING", show_default=True, help="Root log level")
def cli(log_level: str) -> None:
    """Backlog planner: schedule a prioritized backlog and sync it to a calendar."""
    configure_logging(level=log_level)


@cli.command()
@click.argument("backlog_json", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--start",
    "start",
    required=True,
    type=click.DateTime(formats=["%Y-%m-%d"]),
    help="Reference date; scheduling starts on the Monday of its week",
)
@click.option("--weeks", type=int, default=1, show_default=True)
@click.option(
    "--budget",
    type=int,
    default=ScheduleDefaults().default_weekly_budget_minutes,
    show_default=True,
    help="Weekly budget in minutes",
)
@click.option(
    "--session-length",
    type=int,
    default=ScheduleDefaults().default_session_length_minutes,
    show_default=True,
    help="Session length in minutes",
)
@click.option("--timezone", default="UTC", show_default=True, help="IANA timezone name")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "json", "ical"]),
    default="text",
    show_default=True,
)
def schedule(
    backlog_json: Path,
    start: datetime,
    weeks: int,
    budget: int,
    session_length: int,
    timezone: str,
    output_format: str,
) -> None:
    """Print a schedule for the backlog in BACKLOG_JSON (highest priority first)."""
    items = _load_backlog(backlog_json)
    try:
        preferences = SchedulingPreferences(
            weekly_budget_minutes=budget,
            session_length_minutes=session_length,
            timezone=timezone,
        )
    except ValidationError as exc:
        raise click.BadParameter(str(exc.errors()[0]["msg"]), param_hint="--timezone") from exc

    start_date: date = start.date()
    sessions = generate(start_date, weeks, preferences, items)
    names = {item.id: item.display_name for item in items}

    if output_format == "json":
        click.echo(
            json.dumps(
                [
                    {
                        "item_id": s.item_id,
                        "item_name": names[s.item_id],
                        "start_at": s.start_at.isoformat(),
                        "end_at": s.end_at.isoformat(),
                    }
                    for s in sessions
                ],
                indent=2,
            )
        )
    elif output_format == "ical":
        click.echo(
            generate_icalendar(
                ICalSession(
                    session_id=f"{start_date.isoformat()}-{index}",
                    title=names[s.item_id],
                    start_at=s.start_at,
                    end_at=s.end_at,
                )
                for index, s in enumerate(sessions)
            ),
            nl=False,
        )
    else:
        if not sessions:
            click.echo("No sessions scheduled.")
            return
        for line in _render_text(sessions, names, preferences.timezone):
            click.echo(line)


@cli.command("init-db")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    help="Path to planner.toml or the directory containing it",
)
def init_db(config_path: Path) -> None:
    """Create the planner tables in the configured database."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)
    asyncio.run(_init_db(config))
    click.echo("Schema ready.")


async def _init_db(config: PlannerConfig) -> None:
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=Path(config.logging.log_root) if config.logging.log_root else None,
    )
    db = Database.from_config(config.database)
    await db.connect()
    try:
        await db.provision_schema()
    finally:
        await db.close()


if __name__ == "__main__":
    cli()
