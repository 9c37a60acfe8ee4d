"""Shared in-memory fakes for the planner test suite."""

from __future__ import annotations

import copy
import logging
import uuid
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from backlog_planner.models import (
    BacklogItem,
    CalendarCredentials,
    GeneratedSession,
    ScheduledSession,
    SchedulingPreferences,
    SessionUpdate,
)
from backlog_planner.storage.cache import CacheUnavailableError

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


class ManualClock:
    """Mutable clock shared by fakes and components under test."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeCacheStore:
    """In-memory ``CacheStore`` with TTLs driven by a :class:`ManualClock`.

    Set ``unavailable = True`` to make every call raise ``CacheUnavailableError``,
    or add method names to ``failing`` to break individual operations.
    """

    def __init__(self, clock: ManualClock) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[Any, datetime]] = {}
        self.unavailable = False
        self.failing: set[str] = set()

    def _check(self, method: str) -> None:
        if self.unavailable or method in self.failing:
            raise CacheUnavailableError(f"{method}: connection refused")

    def _live(self, key: str) -> tuple[Any, datetime] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            del self._entries[key]
            return None
        return entry

    def peek(self, key: str) -> Any | None:
        entry = self._live(key)
        return entry[0] if entry else None

    async def get(self, key: str) -> Any | None:
        self._check("get")
        return self.peek(key)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        self._check("set")
        self._entries[key] = (value, self._clock() + timedelta(seconds=ttl_seconds))

    async def delete(self, key: str) -> None:
        self._check("delete")
        self._entries.pop(key, None)

    async def set_if_absent(self, key: str, value: Any, ttl_seconds: int) -> bool:
        self._check("set_if_absent")
        if self._live(key) is not None:
            return False
        self._entries[key] = (value, self._clock() + timedelta(seconds=ttl_seconds))
        return True

    async def increment(self, key: str, ttl_seconds: int) -> int:
        self._check("increment")
        entry = self._live(key)
        if entry is None:
            self._entries[key] = (1, self._clock() + timedelta(seconds=ttl_seconds))
            return 1
        value = int(entry[0]) + 1
        self._entries[key] = (value, entry[1])
        return value


class FakeRepository:
    """In-memory ``PlannerRepository``."""

    def __init__(self) -> None:
        self.credentials: dict[str, CalendarCredentials] = {}
        self.preferences: dict[str, SchedulingPreferences] = {}
        self.backlog: dict[str, list[BacklogItem]] = {}
        self.sessions: dict[str, ScheduledSession] = {}
        self.disable_calls: list[str] = []
        self.refreshed_tokens: list[tuple[str, str, datetime]] = []

    # Calendar credentials

    async def get_calendar_credentials(self, user_id: str) -> CalendarCredentials | None:
        stored = self.credentials.get(user_id)
        return copy.deepcopy(stored) if stored is not None else None

    async def store_refreshed_token(
        self, user_id: str, access_token: str, expires_at: datetime
    ) -> None:
        self.refreshed_tokens.append((user_id, access_token, expires_at))
        current = self.credentials[user_id]
        self.credentials[user_id] = current.model_copy(
            update={"access_token": access_token, "token_expiry": expires_at}
        )

    async def disable_sync(self, user_id: str) -> None:
        self.disable_calls.append(user_id)
        current = self.credentials.get(user_id)
        if current is not None:
            self.credentials[user_id] = current.model_copy(update={"sync_enabled": False})

    async def save_calendar_connection(
        self,
        user_id: str,
        *,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        calendar_id: str,
    ) -> None:
        current = self.credentials.get(user_id) or CalendarCredentials(user_id=user_id)
        self.credentials[user_id] = current.model_copy(
            update={
                "sync_enabled": True,
                "access_token": access_token,
                "refresh_token": refresh_token,
                "token_expiry": expires_at,
                "calendar_id": calendar_id,
            }
        )

    async def clear_calendar_connection(self, user_id: str) -> None:
        current = self.credentials.get(user_id)
        if current is not None:
            self.credentials[user_id] = CalendarCredentials(
                user_id=user_id, timezone=current.timezone
            )
        for session_id, session in self.sessions.items():
            if session.user_id == user_id:
                self.sessions[session_id] = session.model_copy(
                    update={"external_event_id": None}
                )

    # External event ids

    async def get_session_event_id(self, session_id: str) -> str | None:
        session = self.sessions.get(session_id)
        return session.external_event_id if session else None

    async def set_session_event_id(self, session_id: str, event_id: str) -> None:
        session = self.sessions[session_id]
        self.sessions[session_id] = session.model_copy(update={"external_event_id": event_id})

    # Scheduling snapshot

    async def get_scheduling_preferences(self, user_id: str) -> SchedulingPreferences | None:
        return self.preferences.get(user_id)

    async def list_backlog(self, user_id: str) -> list[BacklogItem]:
        return list(self.backlog.get(user_id, []))

    async def get_item_name(self, user_id: str, item_id: int) -> str | None:
        for item in self.backlog.get(user_id, []):
            if item.id == item_id:
                return item.name
        return None

    # Sessions

    def add_session(self, user_id: str, **fields: Any) -> ScheduledSession:
        session = ScheduledSession(id=str(uuid.uuid4()), user_id=user_id, **fields)
        self.sessions[session.id] = session
        return session

    async def insert_sessions(
        self, user_id: str, sessions: Sequence[GeneratedSession]
    ) -> list[ScheduledSession]:
        return [
            self.add_session(
                user_id, item_id=s.item_id, start_at=s.start_at, end_at=s.end_at
            )
            for s in sessions
        ]

    async def delete_sessions_except(self, user_id: str, keep_ids: Sequence[str]) -> int:
        doomed = [
            sid
            for sid, session in self.sessions.items()
            if session.user_id == user_id and sid not in set(keep_ids)
        ]
        for sid in doomed:
            del self.sessions[sid]
        return len(doomed)

    async def create_session(
        self,
        user_id: str,
        *,
        item_id: int,
        start_at: datetime,
        end_at: datetime,
        notes: str | None = None,
    ) -> ScheduledSession:
        return self.add_session(
            user_id, item_id=item_id, start_at=start_at, end_at=end_at, notes=notes
        )

    async def get_session(self, user_id: str, session_id: str) -> ScheduledSession | None:
        session = self.sessions.get(session_id)
        if session is None or session.user_id != user_id:
            return None
        return session

    async def update_session(
        self, user_id: str, session_id: str, update: SessionUpdate
    ) -> ScheduledSession | None:
        session = await self.get_session(user_id, session_id)
        if session is None:
            return None
        updated = session.model_copy(update=update.changes())
        self.sessions[session_id] = updated
        return updated

    async def delete_session(self, user_id: str, session_id: str) -> ScheduledSession | None:
        if await self.get_session(user_id, session_id) is None:
            return None
        return self.sessions.pop(session_id)

    async def list_sessions(self, user_id: str) -> list[ScheduledSession]:
        return sorted(
            (s for s in self.sessions.values() if s.user_id == user_id),
            key=lambda s: s.start_at,
        )


def connected_credentials(
    user_id: str = "user-1",
    *,
    expires_at: datetime | None = None,
    timezone: str | None = "Europe/Berlin",
) -> CalendarCredentials:
    return CalendarCredentials(
        user_id=user_id,
        sync_enabled=True,
        access_token="stored-access-token",
        refresh_token="stored-refresh-token",
        token_expiry=expires_at if expires_at is not None else NOW + timedelta(hours=1),
        calendar_id="cal-123",
        timezone=timezone,
    )


@pytest.fixture(autouse=True)
def _restore_root_logging():
    """configure_logging() replaces root handlers; put the originals back afterwards."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def cache(clock: ManualClock) -> FakeCacheStore:
    return FakeCacheStore(clock)


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()
