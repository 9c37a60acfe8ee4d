"""Backlog-to-calendar schedule generator.

Pure, deterministic function: a prioritized backlog plus a weekly budget
becomes a list of sessions in absolute UTC time. No I/O, no persistence.

Placement rules:
- one slot per day, at most ``weekly_budget // session_length`` slots per week
- weeks start on the Monday of the reference date's week
- weekday slots start at 19:00 local, Saturday/Sunday slots at 14:00 local
- each day goes to the first item that still needs sessions (strict priority)
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from backlog_planner.models import BacklogItem, GeneratedSession, SchedulingPreferences

logger = logging.getLogger(__name__)

WEEKDAY_START_HOUR = 19
WEEKEND_START_HOUR = 14
UNKNOWN_LENGTH_SESSIONS = 3
DAYS_PER_WEEK = 7


@dataclass
class _QueueEntry:
    item_id: int
    sessions_remaining: int


def estimate_sessions_needed(item: BacklogItem, session_length_minutes: int) -> int:
    """Number of sessions *item* still needs.

    Unknown-length items get a fixed ``UNKNOWN_LENGTH_SESSIONS``. Known-length
    items get ``ceil(remaining / session_length)`` with the remainder clamped at
    zero, so an item that is fully consumed needs no sessions at all.
    """
    if item.estimated_total_minutes is None:
        return UNKNOWN_LENGTH_SESSIONS
    remaining = max(0, item.estimated_total_minutes - item.consumed_minutes)
    if remaining == 0:
        return 0
    return max(1, math.ceil(remaining / session_length_minutes))


def slot_start_hour(day: date) -> int:
    """Local wall-clock hour for the slot on *day* (Saturday=5, Sunday=6)."""
    return WEEKEND_START_HOUR if day.weekday() >= 5 else WEEKDAY_START_HOUR


def local_slot_to_utc(day: date, hour: int, tz: ZoneInfo) -> datetime:
    """Convert a local wall-clock slot to a UTC instant using *tz*'s offset on *day*."""
    return datetime.combine(day, time(hour=hour), tzinfo=tz).astimezone(UTC)


def week_start(reference: date) -> date:
    """Monday of the week containing *reference*."""
    return reference - timedelta(days=reference.weekday())


def _reference_date(start: date | datetime, tz: ZoneInfo) -> date:
    if isinstance(start, datetime):
        if start.tzinfo is None or start.utcoffset() is None:
            return start.date()
        return start.astimezone(tz).date()
    return start


def generate(
    start_date: date | datetime,
    num_weeks: int,
    preferences: SchedulingPreferences,
    backlog_items: Sequence[BacklogItem],
) -> list[GeneratedSession]:
    """Turn a prioritized backlog into a multi-week schedule.

    *backlog_items* must already be in priority order (highest first); they are
    never re-sorted. The returned sessions are chronologically ordered, and each
    lasts exactly ``session_length_minutes``.

    An aware *start_date* datetime is first converted into the preference
    timezone; a naive datetime is read as local wall-clock time.
    """
    if not backlog_items or num_weeks <= 0:
        return []
    if preferences.weekly_budget_minutes <= 0 or preferences.session_length_minutes <= 0:
        return []

    sessions_per_week = preferences.sessions_per_week
    if sessions_per_week == 0:
        return []

    length = timedelta(minutes=preferences.session_length_minutes)
    tz = ZoneInfo(preferences.timezone)
    queue = [
        _QueueEntry(
            item_id=item.id,
            sessions_remaining=estimate_sessions_needed(item, preferences.session_length_minutes),
        )
        for item in backlog_items
    ]

    first_monday = week_start(_reference_date(start_date, tz))
    sessions: list[GeneratedSession] = []

    for week in range(num_weeks):
        monday = first_monday + timedelta(weeks=week)
        placed_this_week = 0

        for day_offset in range(DAYS_PER_WEEK):
            if placed_this_week >= sessions_per_week:
                break

            entry = next((e for e in queue if e.sessions_remaining > 0), None)
            if entry is None:
                logger.debug(
                    "Backlog exhausted after %d session(s) in week %d", len(sessions), week
                )
                return sessions

            day = monday + timedelta(days=day_offset)
            start_at = local_slot_to_utc(day, slot_start_hour(day), tz)
            sessions.append(
                GeneratedSession(item_id=entry.item_id, start_at=start_at, end_at=start_at + length)
            )
            entry.sessions_remaining -= 1
            placed_this_week += 1

    return sessions
