"""Per-user calendar connection resolution with lock-guarded token refresh.

``SyncConfigResolver.resolve_connection`` is the only place a
:class:`CalendarConnection` is materialised. When the stored access token is
about to expire it refreshes the token under a per-user lock held in the
shared cache store, so concurrent requests from any process do not spend the
refresh token twice.

Refresh outcomes:
- success: new token and expiry are persisted, the failure counter is dropped
- permanent failure: sync is disabled immediately
- transient failure: the failure counter is incremented; reaching the
  threshold inside the window disables sync (circuit breaker)

Lock acquisition distinguishes two failure modes. A lock held by someone else
yields no connection. An unreachable lock store proceeds as if the lock were
acquired, accepting an occasional duplicate refresh.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import StrEnum

from backlog_planner.config import SyncConfig
from backlog_planner.core.logging import user_context
from backlog_planner.google_calendar import GoogleCalendarClient, RefreshOutcome
from backlog_planner.models import CalendarConnection, CalendarCredentials
from backlog_planner.storage.cache import CacheStore, CacheUnavailableError
from backlog_planner.storage.repository import PlannerRepository

logger = logging.getLogger(__name__)

REFRESH_LOCK_KEY_PREFIX = "gcal:refresh-lock:"
FAILURE_COUNTER_KEY_PREFIX = "gcal:refresh-failures:"


def refresh_lock_key(user_id: str) -> str:
    return f"{REFRESH_LOCK_KEY_PREFIX}{user_id}"


def failure_counter_key(user_id: str) -> str:
    return f"{FAILURE_COUNTER_KEY_PREFIX}{user_id}"


class LockState(StrEnum):
    ACQUIRED = "acquired"
    CONTENDED = "contended"
    STORE_UNAVAILABLE = "store_unavailable"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SyncConfigResolver:
    def __init__(
        self,
        *,
        repository: PlannerRepository,
        cache: CacheStore,
        client: GoogleCalendarClient,
        config: SyncConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repository = repository
        self._cache = cache
        self._client = client
        self._config = config or SyncConfig()
        self._clock = clock

    @property
    def refresh_margin(self) -> timedelta:
        return timedelta(seconds=self._config.refresh_margin_s)

    async def resolve_connection(self, user_id: str) -> CalendarConnection | None:
        """Return a usable connection for *user_id*, or None when sync is unavailable.

        "Not configured", "disabled", lock contention and refresh failures all
        return None. Only collaborator bugs (e.g. a persistence error) raise.
        """
        with user_context(user_id):
            credentials = await self._repository.get_calendar_credentials(user_id)
            if credentials is None or not credentials.is_configured:
                return None

            if not credentials.expires_within(self.refresh_margin, now=self._clock()):
                return self._connection(credentials.access_token, credentials)

            if not self._client.has_client_credentials:
                logger.warning("Calendar token needs refresh but OAuth client is not configured")
                return None

            return await self._refresh_under_lock(user_id)

    async def reset(self, user_id: str) -> None:
        """Drop the refresh lock and failure counter for *user_id*."""
        for key in (refresh_lock_key(user_id), failure_counter_key(user_id)):
            try:
                await self._cache.delete(key)
            except CacheUnavailableError as exc:
                logger.warning("Could not clear sync state key %s: %s", key, exc)

    # ------------------------------------------------------------------
    # Refresh critical section
    # ------------------------------------------------------------------

    async def _refresh_under_lock(self, user_id: str) -> CalendarConnection | None:
        lock_key = refresh_lock_key(user_id)
        lock_token = uuid.uuid4().hex

        state = await self._acquire_lock(lock_key, lock_token)
        if state is LockState.CONTENDED:
            logger.info("Token refresh already in progress elsewhere; skipping sync")
            return None

        try:
            # Another holder may have refreshed between our first read and the lock.
            credentials = await self._repository.get_calendar_credentials(user_id)
            if credentials is None or not credentials.is_configured:
                return None
            if not credentials.expires_within(self.refresh_margin, now=self._clock()):
                return self._connection(credentials.access_token, credentials)
            return await self._refresh(user_id, credentials)
        finally:
            await self._release_lock(lock_key, lock_token)

    async def _acquire_lock(self, lock_key: str, lock_token: str) -> LockState:
        try:
            acquired = await self._cache.set_if_absent(
                lock_key, lock_token, self._config.refresh_lock_ttl_s
            )
        except CacheUnavailableError as exc:
            logger.warning("Refresh lock store unavailable, refreshing without lock: %s", exc)
            return LockState.STORE_UNAVAILABLE
        return LockState.ACQUIRED if acquired else LockState.CONTENDED

    async def _release_lock(self, lock_key: str, lock_token: str) -> None:
        try:
            if await self._cache.get(lock_key) == lock_token:
                await self._cache.delete(lock_key)
        except CacheUnavailableError as exc:
            logger.warning("Could not release refresh lock (expires on its own): %s", exc)

    async def _refresh(
        self, user_id: str, credentials: CalendarCredentials
    ) -> CalendarConnection | None:
        assert credentials.refresh_token is not None
        result = await self._client.refresh_access_token(credentials.refresh_token)

        if result.outcome is RefreshOutcome.SUCCESS:
            assert result.access_token is not None and result.expires_in is not None
            expires_at = self._clock() + timedelta(seconds=result.expires_in)
            await self._repository.store_refreshed_token(user_id, result.access_token, expires_at)
            await self._clear_failures(user_id)
            logger.info("Calendar access token refreshed; expires at %s", expires_at.isoformat())
            return self._connection(result.access_token, credentials)

        if result.outcome is RefreshOutcome.PERMANENT_FAILURE:
            logger.warning("Refresh token rejected, disabling calendar sync: %s", result.reason)
            await self._repository.disable_sync(user_id)
            return None

        failures = await self._record_transient_failure(user_id)
        logger.warning(
            "Transient token refresh failure (%s/%d): %s",
            failures if failures is not None else "?",
            self._config.failure_threshold,
            result.reason,
        )
        if failures is not None and failures >= self._config.failure_threshold:
            logger.warning(
                "Disabling calendar sync after %d consecutive transient refresh failures",
                failures,
            )
            await self._repository.disable_sync(user_id)
        return None

    async def _record_transient_failure(self, user_id: str) -> int | None:
        try:
            return await self._cache.increment(
                failure_counter_key(user_id), self._config.failure_window_s
            )
        except CacheUnavailableError as exc:
            logger.warning("Could not record refresh failure: %s", exc)
            return None

    async def _clear_failures(self, user_id: str) -> None:
        try:
            await self._cache.delete(failure_counter_key(user_id))
        except CacheUnavailableError as exc:
            logger.warning("Could not reset refresh failure counter: %s", exc)

    @staticmethod
    def _connection(
        access_token: str | None, credentials: CalendarCredentials
    ) -> CalendarConnection:
        assert access_token is not None
        assert credentials.calendar_id is not None
        return CalendarConnection(
            access_token=access_token,
            calendar_id=credentials.calendar_id,
            timezone=credentials.timezone or "UTC",
        )
