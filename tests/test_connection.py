"""Tests for connecting and disconnecting a user's Google calendar."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, call

import pytest
from conftest import NOW, connected_credentials

from backlog_planner.google_calendar import (
    CalendarRequestError,
    CalendarTransportError,
    GoogleCalendarClient,
    OAuthTokens,
)
from backlog_planner.sync.connection import CalendarConnectionManager
from backlog_planner.sync.resolver import (
    SyncConfigResolver,
    failure_counter_key,
    refresh_lock_key,
)

pytestmark = pytest.mark.unit

USER = "user-1"
REDIRECT_URI = "https://planner.test/oauth/callback"


@pytest.fixture
def client() -> MagicMock:
    client = MagicMock(spec=GoogleCalendarClient)
    client.has_client_credentials = True
    client.exchange_code = AsyncMock(
        return_value=OAuthTokens(access_token="acc", refresh_token="ref", expires_in=3600)
    )
    client.create_calendar = AsyncMock(return_value="cal-new")
    client.revoke_token = AsyncMock(return_value=True)
    return client


@pytest.fixture
def manager(repository, cache, client, clock) -> CalendarConnectionManager:
    resolver = SyncConfigResolver(repository=repository, cache=cache, client=client, clock=clock)
    return CalendarConnectionManager(
        repository=repository,
        client=client,
        resolver=resolver,
        calendar_name="My Backlog",
        clock=clock,
    )


class TestConnectCalendar:
    async def test_stores_tokens_and_enables_sync(self, manager, repository, client):
        credentials = await manager.connect_calendar(USER, "auth-code", REDIRECT_URI)

        assert credentials is not None
        assert credentials.is_configured
        assert credentials.access_token == "acc"
        assert credentials.refresh_token == "ref"
        assert credentials.calendar_id == "cal-new"
        assert credentials.token_expiry == NOW + timedelta(hours=1)
        client.exchange_code.assert_awaited_once_with("auth-code", REDIRECT_URI)
        client.create_calendar.assert_awaited_once_with("acc", summary="My Backlog")

    async def test_resets_previous_failure_history(self, manager, cache):
        await cache.set(failure_counter_key(USER), 2, 3600)
        await cache.set(refresh_lock_key(USER), "old", 30)

        await manager.connect_calendar(USER, "auth-code", REDIRECT_URI)

        assert cache.peek(failure_counter_key(USER)) is None
        assert cache.peek(refresh_lock_key(USER)) is None

    async def test_reconnect_reenables_disabled_sync(self, manager, repository):
        repository.credentials[USER] = connected_credentials(USER).model_copy(
            update={"sync_enabled": False}
        )

        credentials = await manager.connect_calendar(USER, "auth-code", REDIRECT_URI)

        assert credentials.sync_enabled is True
        assert credentials.timezone == "Europe/Berlin"

    async def test_rejected_code_stores_nothing(self, manager, repository, client):
        client.exchange_code.side_effect = CalendarRequestError(
            status_code=400, message="invalid_grant"
        )

        assert await manager.connect_calendar(USER, "bad", REDIRECT_URI) is None
        assert USER not in repository.credentials
        client.create_calendar.assert_not_awaited()

    async def test_calendar_creation_failure_stores_nothing(self, manager, repository, client):
        client.create_calendar.side_effect = CalendarTransportError("timed out", is_timeout=True)

        assert await manager.connect_calendar(USER, "auth-code", REDIRECT_URI) is None
        assert USER not in repository.credentials


class TestDisconnectCalendar:
    async def test_revokes_tokens_and_clears_state(self, manager, repository, cache, client):
        repository.credentials[USER] = connected_credentials(USER)
        session = repository.add_session(
            USER,
            item_id=1,
            start_at=NOW,
            end_at=NOW + timedelta(hours=1),
            external_event_id="evt-1",
        )
        await cache.set(failure_counter_key(USER), 1, 3600)

        await manager.disconnect_calendar(USER)

        assert client.revoke_token.await_args_list == [
            call("stored-access-token"),
            call("stored-refresh-token"),
        ]
        credentials = repository.credentials[USER]
        assert not credentials.is_configured
        assert credentials.access_token is None
        assert repository.sessions[session.id].external_event_id is None
        assert cache.peek(failure_counter_key(USER)) is None

    async def test_failed_revocation_still_disconnects(self, manager, repository, client):
        repository.credentials[USER] = connected_credentials(USER)
        client.revoke_token.return_value = False

        await manager.disconnect_calendar(USER)

        assert repository.credentials[USER].refresh_token is None

    async def test_unknown_user_skips_revocation(self, manager, client):
        await manager.disconnect_calendar(USER)
        client.revoke_token.assert_not_awaited()
