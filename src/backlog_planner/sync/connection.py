"""Connecting and disconnecting a user's external calendar."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from backlog_planner.core.logging import user_context
from backlog_planner.google_calendar import (
    DEFAULT_CALENDAR_NAME,
    CalendarAuthError,
    GoogleCalendarClient,
)
from backlog_planner.models import CalendarCredentials
from backlog_planner.storage.repository import PlannerRepository
from backlog_planner.sync.resolver import SyncConfigResolver

logger = logging.getLogger(__name__)


class CalendarConnectionManager:
    def __init__(
        self,
        *,
        repository: PlannerRepository,
        client: GoogleCalendarClient,
        resolver: SyncConfigResolver,
        calendar_name: str = DEFAULT_CALENDAR_NAME,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._repository = repository
        self._client = client
        self._resolver = resolver
        self._calendar_name = calendar_name
        self._clock = clock

    async def connect_calendar(
        self, user_id: str, code: str, redirect_uri: str
    ) -> CalendarCredentials | None:
        """Finish the OAuth flow: exchange *code*, create a calendar, enable sync.

        Returns None (and stores nothing) when any provider step fails.
        """
        with user_context(user_id):
            try:
                tokens = await self._client.exchange_code(code, redirect_uri)
                calendar_id = await self._client.create_calendar(
                    tokens.access_token, summary=self._calendar_name
                )
            except CalendarAuthError as exc:
                logger.warning("Calendar connect failed: %s", exc)
                return None

            expires_at = self._clock() + timedelta(seconds=tokens.expires_in)
            await self._repository.save_calendar_connection(
                user_id,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                expires_at=expires_at,
                calendar_id=calendar_id,
            )
            # A previous connection's failure history must not count against this one.
            await self._resolver.reset(user_id)
            logger.info("Calendar connected: calendar_id=%s", calendar_id)
            return await self._repository.get_calendar_credentials(user_id)

    async def disconnect_calendar(self, user_id: str) -> None:
        """Revoke stored tokens (best effort) and forget every piece of sync state."""
        with user_context(user_id):
            credentials = await self._repository.get_calendar_credentials(user_id)
            if credentials is not None:
                for token in (credentials.access_token, credentials.refresh_token):
                    if token and not await self._client.revoke_token(token):
                        logger.info("Token revocation was not confirmed by the provider")

            await self._repository.clear_calendar_connection(user_id)
            await self._resolver.reset(user_id)
            logger.info("Calendar disconnected")
