"""Domain models shared by the scheduler and the calendar sync engine.

- ``BacklogItem`` / ``SchedulingPreferences``: generator inputs
- ``GeneratedSession``: immutable generator output
- ``ScheduledSession``: persisted session row
- ``SessionUpdate``: a partial edit of a session
- ``SessionDetails``: the fields mirrored onto an external calendar event
- ``CalendarCredentials`` / ``CalendarConnection``: stored vs. resolved sync state
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def ensure_valid_timezone(value: str) -> str:
    """Return *value* stripped, raising ``ValueError`` when it is not an IANA zone."""
    normalized = value.strip()
    if not normalized:
        raise ValueError("timezone must be a non-empty IANA timezone name")
    try:
        ZoneInfo(normalized)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"timezone must be a valid IANA timezone: {value}") from exc
    return normalized


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalise aware ones to UTC."""
    if value.tzinfo is None or value.utcoffset() is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class BacklogItem(BaseModel):
    """One prioritized backlog entry. ``estimated_total_minutes=None`` means unknown length."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str = ""
    estimated_total_minutes: int | None = None
    consumed_minutes: int = Field(default=0, ge=0)

    @property
    def display_name(self) -> str:
        return self.name.strip() or f"Item {self.id}"


class SchedulingPreferences(BaseModel):
    """Weekly time budget, slot length and the user's local timezone.

    Non-positive minute values are accepted here; the generator turns them into
    an empty schedule rather than an error.
    """

    model_config = ConfigDict(frozen=True)

    weekly_budget_minutes: int
    session_length_minutes: int
    timezone: str = "UTC"

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        return ensure_valid_timezone(value)

    @property
    def sessions_per_week(self) -> int:
        if self.weekly_budget_minutes <= 0 or self.session_length_minutes <= 0:
            return 0
        return self.weekly_budget_minutes // self.session_length_minutes


class GeneratedSession(BaseModel):
    """A slot produced by the generator, expressed in absolute UTC instants."""

    model_config = ConfigDict(frozen=True)

    item_id: int
    start_at: datetime
    end_at: datetime

    @property
    def duration(self) -> timedelta:
        return self.end_at - self.start_at


class ScheduledSession(BaseModel):
    """A persisted session. ``external_event_id`` is the only sync state kept per session."""

    id: str
    user_id: str
    item_id: int
    start_at: datetime
    end_at: datetime
    notes: str | None = None
    completed: bool = False
    external_event_id: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> ScheduledSession:
        return cls(
            id=str(row["id"]),
            user_id=row["user_id"],
            item_id=row["item_id"],
            start_at=ensure_utc(row["start_at"]),
            end_at=ensure_utc(row["end_at"]),
            notes=row["notes"],
            completed=row["completed"],
            external_event_id=row["external_event_id"],
        )


NOTES_MAX_LENGTH = 2000


class SessionUpdate(BaseModel):
    """Partial edit of a session.

    Only fields passed explicitly are written; omitted fields keep their stored
    values. ``notes=None`` clears the notes, while leaving ``notes`` out keeps them.
    """

    start_at: datetime | None = None
    end_at: datetime | None = None
    notes: str | None = Field(default=None, max_length=NOTES_MAX_LENGTH)
    completed: bool | None = None

    @field_validator("start_at", "end_at")
    @classmethod
    def _normalize_instant(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    @model_validator(mode="after")
    def _reject_explicit_nulls(self) -> SessionUpdate:
        for name in ("start_at", "end_at", "completed"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self

    def changes(self) -> dict[str, Any]:
        """Column name to new value, for the fields that were supplied."""
        return {
            name: getattr(self, name)
            for name in type(self).model_fields
            if name in self.model_fields_set
        }

    @property
    def touches_event(self) -> bool:
        """True when the edit changes something mirrored onto the calendar event."""
        return bool(self.model_fields_set & {"start_at", "end_at", "notes"})


class SessionDetails(BaseModel):
    """Desired state of a session as mirrored onto an external calendar event."""

    session_id: str
    item_name: str = Field(min_length=1)
    start_at: datetime
    end_at: datetime
    notes: str | None = None

    @field_validator("start_at", "end_at")
    @classmethod
    def _normalize_instant(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @field_validator("notes")
    @classmethod
    def _normalize_notes(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @model_validator(mode="after")
    def _validate_window(self) -> SessionDetails:
        if self.end_at <= self.start_at:
            raise ValueError("end_at must be after start_at")
        return self


class CalendarCredentials(BaseModel):
    """Stored per-user calendar credentials, as read from persistence."""

    user_id: str
    sync_enabled: bool = False
    access_token: str | None = None
    refresh_token: str | None = None
    token_expiry: datetime | None = None
    calendar_id: str | None = None
    timezone: str | None = None

    @property
    def is_configured(self) -> bool:
        return bool(
            self.sync_enabled and self.access_token and self.refresh_token and self.calendar_id
        )

    def expires_within(self, margin: timedelta, *, now: datetime) -> bool:
        """True when the stored access token expires within *margin* of *now*.

        An unknown expiry is treated as still valid; a rejected token then
        surfaces as a provider error on the next request.
        """
        if self.token_expiry is None:
            return False
        return ensure_utc(self.token_expiry) <= now + margin


class CalendarConnection(BaseModel):
    """Resolved, ready-to-use connection. Never persisted."""

    model_config = ConfigDict(frozen=True)

    access_token: str = Field(repr=False)
    calendar_id: str
    timezone: str = "UTC"
