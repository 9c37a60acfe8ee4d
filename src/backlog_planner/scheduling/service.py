"""Session lifecycle service: persist first, then hand sync off to the dispatcher.

Calendar sync never influences the result of these calls. The session rows
are the source of truth and external events follow asynchronously.
"""

from __future__ import annotations

import logging
from datetime import date, datetime

from backlog_planner.config import ScheduleDefaults
from backlog_planner.models import (
    BacklogItem,
    ScheduledSession,
    SchedulingPreferences,
    SessionDetails,
    SessionUpdate,
    ensure_utc,
)
from backlog_planner.scheduling.generator import generate
from backlog_planner.scheduling.ical import ICalSession, generate_icalendar
from backlog_planner.storage.repository import PlannerRepository
from backlog_planner.sync.dispatcher import SyncDispatcher

logger = logging.getLogger(__name__)


def _fallback_name(item_id: int) -> str:
    return f"Item {item_id}"


def _details(session: ScheduledSession, item_name: str) -> SessionDetails:
    return SessionDetails(
        session_id=session.id,
        item_name=item_name,
        start_at=session.start_at,
        end_at=session.end_at,
        notes=session.notes,
    )


def _validate_window(start_at: datetime, end_at: datetime) -> None:
    if ensure_utc(end_at) <= ensure_utc(start_at):
        raise ValueError("end_at must be after start_at")


class AutoScheduler:
    def __init__(
        self,
        *,
        repository: PlannerRepository,
        dispatcher: SyncDispatcher,
        defaults: ScheduleDefaults | None = None,
    ) -> None:
        self._repository = repository
        self._dispatcher = dispatcher
        self._defaults = defaults or ScheduleDefaults()

    async def load_preferences(self, user_id: str) -> SchedulingPreferences:
        preferences = await self._repository.get_scheduling_preferences(user_id)
        if preferences is not None:
            return preferences
        return SchedulingPreferences(
            weekly_budget_minutes=self._defaults.default_weekly_budget_minutes,
            session_length_minutes=self._defaults.default_session_length_minutes,
            timezone=self._defaults.default_timezone,
        )

    async def auto_schedule(
        self,
        user_id: str,
        start_date: date | datetime,
        weeks: int,
        *,
        clear_existing: bool = False,
    ) -> list[ScheduledSession]:
        """Generate, persist and queue calendar sync for a multi-week schedule.

        New sessions are inserted before old ones are cleared, so a failure
        midway never leaves the user with an empty calendar.
        """
        if weeks < 1 or weeks > self._defaults.max_weeks:
            raise ValueError(f"weeks must be between 1 and {self._defaults.max_weeks}")

        preferences = await self.load_preferences(user_id)
        backlog: list[BacklogItem] = await self._repository.list_backlog(user_id)
        generated = generate(start_date, weeks, preferences, backlog)
        if not generated:
            logger.info("No sessions generated for user %s (backlog=%d)", user_id, len(backlog))
            return []

        persisted = await self._repository.insert_sessions(user_id, generated)
        if clear_existing:
            removed = await self._repository.delete_sessions_except(
                user_id, [session.id for session in persisted]
            )
            logger.info("Cleared %d previous session(s) for user %s", removed, user_id)

        names = {item.id: item.display_name for item in backlog}
        self._dispatcher.submit_batch_generated(
            user_id,
            [
                _details(session, names.get(session.item_id, _fallback_name(session.item_id)))
                for session in persisted
            ],
        )
        logger.info("Scheduled %d session(s) over %d week(s)", len(persisted), weeks)
        return persisted

    async def _item_name(self, user_id: str, item_id: int) -> str:
        name = await self._repository.get_item_name(user_id, item_id)
        return (name or "").strip() or _fallback_name(item_id)

    async def create_session(
        self,
        user_id: str,
        *,
        item_id: int,
        start_at: datetime,
        end_at: datetime,
        notes: str | None = None,
    ) -> ScheduledSession:
        _validate_window(start_at, end_at)
        item_name = await self._item_name(user_id, item_id)
        session = await self._repository.create_session(
            user_id, item_id=item_id, start_at=start_at, end_at=end_at, notes=notes
        )
        self._dispatcher.submit_session_created(user_id, _details(session, item_name))
        return session

    async def update_session(
        self, user_id: str, session_id: str, update: SessionUpdate
    ) -> ScheduledSession | None:
        """Apply a partial edit to one of *user_id*'s sessions.

        Returns None when the user has no such session. Calendar sync is queued
        only when the edit changes the time window or the notes.
        """
        if not update.model_fields_set:
            raise ValueError("no fields to update")
        if update.start_at is not None or update.end_at is not None:
            existing = await self._repository.get_session(user_id, session_id)
            if existing is None:
                return None
            _validate_window(update.start_at or existing.start_at, update.end_at or existing.end_at)

        session = await self._repository.update_session(user_id, session_id, update)
        if session is None:
            return None
        if update.touches_event:
            self._dispatcher.submit_session_updated(
                user_id,
                session_id,
                _details(session, await self._item_name(user_id, session.item_id)),
            )
        return session

    async def delete_session(self, user_id: str, session_id: str) -> ScheduledSession | None:
        session = await self._repository.delete_session(user_id, session_id)
        if session is None:
            return None
        self._dispatcher.submit_session_deleted(user_id, session.external_event_id)
        return session

    async def export_icalendar(self, user_id: str) -> str:
        sessions = await self._repository.list_sessions(user_id)
        backlog = await self._repository.list_backlog(user_id)
        names = {item.id: item.display_name for item in backlog}
        return generate_icalendar(
            ICalSession(
                session_id=session.id,
                title=names.get(session.item_id, _fallback_name(session.item_id)),
                start_at=session.start_at,
                end_at=session.end_at,
                notes=session.notes,
            )
            for session in sessions
        )
