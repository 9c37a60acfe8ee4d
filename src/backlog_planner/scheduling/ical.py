"""iCalendar (RFC 5545) export of scheduled sessions."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from icalendar import Calendar, Event

from backlog_planner.models import ensure_utc

PRODID = "-//Backlog Planner//EN"
UID_DOMAIN = "backlog-planner"


@dataclass(frozen=True)
class ICalSession:
    session_id: str
    title: str
    start_at: datetime
    end_at: datetime
    notes: str | None = None


def build_event(session: ICalSession, *, stamp: datetime) -> Event:
    event = Event()
    event.add("uid", f"{session.session_id}@{UID_DOMAIN}")
    event.add("dtstamp", stamp)
    event.add("dtstart", ensure_utc(session.start_at))
    event.add("dtend", ensure_utc(session.end_at))
    event.add("summary", session.title)
    if session.notes:
        event.add("description", session.notes)
    return event


def generate_icalendar(sessions: Iterable[ICalSession], *, stamp: datetime | None = None) -> str:
    """Render *sessions* as a published VCALENDAR.

    Every VEVENT carries the same DTSTAMP, *stamp* or the current UTC time.
    """
    stamp = ensure_utc(stamp) if stamp is not None else datetime.now(UTC).replace(microsecond=0)

    calendar = Calendar()
    calendar.add("prodid", PRODID)
    calendar.add("version", "2.0")
    calendar.add("calscale", "GREGORIAN")
    calendar.add("method", "PUBLISH")
    for session in sessions:
        calendar.add_component(build_event(session, stamp=stamp))
    return calendar.to_ical().decode("utf-8")
