"""Mirror scheduled sessions onto the external calendar.

Every operation is best-effort: it returns a :class:`SyncOutcome` for logging
and never raises, so a sync problem cannot fail the session mutation that
triggered it. Retries only happen on the next natural trigger. For example,
a session whose create failed gets its event on the next update.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from enum import StrEnum

from backlog_planner.core.logging import user_context
from backlog_planner.google_calendar import CalendarEventData, GoogleCalendarClient
from backlog_planner.models import CalendarConnection, SessionDetails
from backlog_planner.storage.repository import PlannerRepository
from backlog_planner.sync.resolver import SyncConfigResolver

logger = logging.getLogger(__name__)


class SyncOutcome(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    SKIPPED = "skipped"
    FAILED = "failed"


def build_event_data(details: SessionDetails, connection: CalendarConnection) -> CalendarEventData:
    return CalendarEventData(
        summary=details.item_name,
        description=details.notes,
        start_at=details.start_at,
        end_at=details.end_at,
        timezone=connection.timezone,
    )


class EventReconciler:
    def __init__(
        self,
        *,
        resolver: SyncConfigResolver,
        repository: PlannerRepository,
        client: GoogleCalendarClient,
    ) -> None:
        self._resolver = resolver
        self._repository = repository
        self._client = client

    async def _resolve(self, user_id: str) -> CalendarConnection | None:
        try:
            return await self._resolver.resolve_connection(user_id)
        except Exception:
            logger.exception("Calendar connection resolution failed")
            return None

    async def _create(self, connection: CalendarConnection, details: SessionDetails) -> SyncOutcome:
        try:
            event_id = await self._client.create_event(
                connection.access_token,
                connection.calendar_id,
                build_event_data(details, connection),
            )
        except Exception as exc:
            logger.warning(
                "Calendar event create failed for session %s: %s", details.session_id, exc
            )
            return SyncOutcome.FAILED

        try:
            await self._repository.set_session_event_id(details.session_id, event_id)
        except Exception:
            logger.exception(
                "Created calendar event %s but could not store it on session %s",
                event_id,
                details.session_id,
            )
            return SyncOutcome.FAILED

        logger.debug("Session %s mirrored as calendar event %s", details.session_id, event_id)
        return SyncOutcome.CREATED

    async def on_session_created(self, user_id: str, details: SessionDetails) -> SyncOutcome:
        """Create the external event for a new session and remember its id."""
        with user_context(user_id):
            connection = await self._resolve(user_id)
            if connection is None:
                return SyncOutcome.SKIPPED
            return await self._create(connection, details)

    async def on_session_updated(
        self, user_id: str, session_id: str, details: SessionDetails
    ) -> SyncOutcome:
        """Push session edits; create the event instead when none exists yet."""
        with user_context(user_id):
            connection = await self._resolve(user_id)
            if connection is None:
                return SyncOutcome.SKIPPED

            if details.session_id != session_id:
                details = details.model_copy(update={"session_id": session_id})

            try:
                event_id = await self._repository.get_session_event_id(session_id)
            except Exception:
                logger.exception("Could not read external event id for session %s", session_id)
                return SyncOutcome.FAILED

            if event_id is None:
                logger.info("Session %s has no calendar event yet; creating it", session_id)
                return await self._create(connection, details)

            try:
                await self._client.update_event(
                    connection.access_token,
                    connection.calendar_id,
                    event_id,
                    build_event_data(details, connection),
                )
            except Exception as exc:
                logger.warning("Calendar event update failed for session %s: %s", session_id, exc)
                return SyncOutcome.FAILED
            return SyncOutcome.UPDATED

    async def on_session_deleted(self, user_id: str, external_event_id: str | None) -> SyncOutcome:
        """Delete the mirrored event. An event that is already gone counts as deleted."""
        if not external_event_id:
            return SyncOutcome.SKIPPED
        with user_context(user_id):
            connection = await self._resolve(user_id)
            if connection is None:
                return SyncOutcome.SKIPPED
            try:
                deleted = await self._client.delete_event(
                    connection.access_token, connection.calendar_id, external_event_id
                )
            except Exception as exc:
                logger.warning("Calendar event delete failed for %s: %s", external_event_id, exc)
                return SyncOutcome.FAILED
            if not deleted:
                logger.debug("Calendar event %s was already gone", external_event_id)
            return SyncOutcome.DELETED

    async def on_batch_generated(
        self, user_id: str, sessions: Sequence[SessionDetails]
    ) -> list[SyncOutcome]:
        """Create events for a generated batch, one session at a time.

        A failed session does not stop the batch; partial success is expected.
        """
        if not sessions:
            return []
        with user_context(user_id):
            connection = await self._resolve(user_id)
            if connection is None:
                return [SyncOutcome.SKIPPED] * len(sessions)

            outcomes = [await self._create(connection, details) for details in sessions]
            failed = outcomes.count(SyncOutcome.FAILED)
            if failed:
                logger.warning(
                    "Batch calendar sync finished with %d/%d failure(s)", failed, len(outcomes)
                )
            else:
                logger.info("Batch calendar sync created %d event(s)", len(outcomes))
            return outcomes
