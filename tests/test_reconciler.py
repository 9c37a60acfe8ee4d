"""Tests for EventReconciler.

Covers:
- Create stores the provider event id on the session
- Every operation is skipped when no connection resolves
- Update pushes edits, and creates the event when none exists yet
- Delete treats already-gone events as success; double delete is idempotent
- Batch creation resolves once and tolerates partial failure
- Provider and persistence errors become FAILED outcomes, never exceptions
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from backlog_planner.google_calendar import (
    CalendarEventData,
    CalendarRequestError,
    CalendarTransportError,
    GoogleCalendarClient,
)
from backlog_planner.models import CalendarConnection, SessionDetails
from backlog_planner.sync.reconciler import EventReconciler, SyncOutcome, build_event_data
from backlog_planner.sync.resolver import SyncConfigResolver

pytestmark = pytest.mark.unit

USER = "user-1"
START = datetime(2026, 3, 2, 19, 0, tzinfo=UTC)
CONNECTION = CalendarConnection(
    access_token="access-1", calendar_id="cal-123", timezone="Europe/Berlin"
)


@pytest.fixture
def resolver() -> MagicMock:
    resolver = MagicMock(spec=SyncConfigResolver)
    resolver.resolve_connection = AsyncMock(return_value=CONNECTION)
    return resolver


@pytest.fixture
def client() -> MagicMock:
    client = MagicMock(spec=GoogleCalendarClient)
    client.create_event = AsyncMock(return_value="evt-1")
    client.update_event = AsyncMock(return_value=None)
    client.delete_event = AsyncMock(return_value=True)
    return client


@pytest.fixture
def reconciler(resolver, repository, client) -> EventReconciler:
    return EventReconciler(resolver=resolver, repository=repository, client=client)


def _session(repository, *, event_id: str | None = None, offset_days: int = 0):
    start = START + timedelta(days=offset_days)
    session = repository.add_session(
        USER,
        item_id=1,
        start_at=start,
        end_at=start + timedelta(hours=1),
        external_event_id=event_id,
    )
    details = SessionDetails(
        session_id=session.id,
        item_name="Dune",
        start_at=session.start_at,
        end_at=session.end_at,
        notes="Chapters 1-3",
    )
    return session, details


def test_build_event_data_uses_connection_timezone():
    details = SessionDetails(
        session_id="s", item_name="Dune", start_at=START, end_at=START + timedelta(hours=1)
    )
    assert build_event_data(details, CONNECTION) == CalendarEventData(
        summary="Dune",
        description=None,
        start_at=START,
        end_at=START + timedelta(hours=1),
        timezone="Europe/Berlin",
    )


# ---------------------------------------------------------------------------
# on_session_created
# ---------------------------------------------------------------------------


class TestOnSessionCreated:
    async def test_creates_event_and_stores_id(self, reconciler, repository, client):
        session, details = _session(repository)

        outcome = await reconciler.on_session_created(USER, details)

        assert outcome is SyncOutcome.CREATED
        client.create_event.assert_awaited_once_with(
            "access-1", "cal-123", build_event_data(details, CONNECTION)
        )
        assert repository.sessions[session.id].external_event_id == "evt-1"

    async def test_skipped_without_connection(self, reconciler, resolver, repository, client):
        resolver.resolve_connection.return_value = None
        session, details = _session(repository)

        assert await reconciler.on_session_created(USER, details) is SyncOutcome.SKIPPED
        client.create_event.assert_not_awaited()
        assert repository.sessions[session.id].external_event_id is None

    async def test_resolver_crash_is_skipped(self, reconciler, resolver, repository):
        resolver.resolve_connection.side_effect = RuntimeError("db down")
        _, details = _session(repository)

        assert await reconciler.on_session_created(USER, details) is SyncOutcome.SKIPPED

    @pytest.mark.parametrize(
        "exc",
        [
            CalendarRequestError(status_code=500, message="Backend Error"),
            CalendarTransportError("timed out", is_timeout=True),
        ],
    )
    async def test_provider_error_fails_without_storing(
        self, reconciler, repository, client, exc
    ):
        client.create_event.side_effect = exc
        session, details = _session(repository)

        assert await reconciler.on_session_created(USER, details) is SyncOutcome.FAILED
        assert repository.sessions[session.id].external_event_id is None

    async def test_store_failure_is_reported(self, reconciler, repository):
        repository.set_session_event_id = AsyncMock(side_effect=RuntimeError("db down"))
        _, details = _session(repository)

        assert await reconciler.on_session_created(USER, details) is SyncOutcome.FAILED


# ---------------------------------------------------------------------------
# on_session_updated
# ---------------------------------------------------------------------------


class TestOnSessionUpdated:
    async def test_updates_existing_event(self, reconciler, repository, client):
        session, details = _session(repository, event_id="evt-9")

        outcome = await reconciler.on_session_updated(USER, session.id, details)

        assert outcome is SyncOutcome.UPDATED
        client.update_event.assert_awaited_once_with(
            "access-1", "cal-123", "evt-9", build_event_data(details, CONNECTION)
        )
        client.create_event.assert_not_awaited()

    async def test_creates_missing_event(self, reconciler, repository, client):
        session, details = _session(repository)

        outcome = await reconciler.on_session_updated(USER, session.id, details)

        assert outcome is SyncOutcome.CREATED
        client.update_event.assert_not_awaited()
        assert repository.sessions[session.id].external_event_id == "evt-1"

    async def test_update_failure_is_not_retried(self, reconciler, repository, client):
        client.update_event.side_effect = CalendarRequestError(status_code=503, message="x")
        session, details = _session(repository, event_id="evt-9")

        assert await reconciler.on_session_updated(USER, session.id, details) is SyncOutcome.FAILED
        assert client.update_event.await_count == 1
        client.create_event.assert_not_awaited()

    async def test_skipped_without_connection(self, reconciler, resolver, repository, client):
        resolver.resolve_connection.return_value = None
        session, details = _session(repository, event_id="evt-9")

        assert (
            await reconciler.on_session_updated(USER, session.id, details) is SyncOutcome.SKIPPED
        )
        client.update_event.assert_not_awaited()

    async def test_event_id_lookup_failure(self, reconciler, repository, client):
        repository.get_session_event_id = AsyncMock(side_effect=RuntimeError("db down"))
        session, details = _session(repository)

        assert await reconciler.on_session_updated(USER, session.id, details) is SyncOutcome.FAILED
        client.create_event.assert_not_awaited()


# ---------------------------------------------------------------------------
# on_session_deleted
# ---------------------------------------------------------------------------


class TestOnSessionDeleted:
    async def test_deletes_event(self, reconciler, client):
        assert await reconciler.on_session_deleted(USER, "evt-9") is SyncOutcome.DELETED
        client.delete_event.assert_awaited_once_with("access-1", "cal-123", "evt-9")

    async def test_already_gone_counts_as_deleted(self, reconciler, client):
        client.delete_event.return_value = False
        assert await reconciler.on_session_deleted(USER, "evt-9") is SyncOutcome.DELETED

    async def test_double_delete_is_idempotent(self, reconciler, client):
        client.delete_event.side_effect = [True, False]

        first = await reconciler.on_session_deleted(USER, "evt-9")
        second = await reconciler.on_session_deleted(USER, "evt-9")

        assert first is second is SyncOutcome.DELETED

    @pytest.mark.parametrize("event_id", [None, ""])
    async def test_without_event_id_is_skipped(self, reconciler, resolver, client, event_id):
        assert await reconciler.on_session_deleted(USER, event_id) is SyncOutcome.SKIPPED
        resolver.resolve_connection.assert_not_awaited()
        client.delete_event.assert_not_awaited()

    async def test_skipped_without_connection(self, reconciler, resolver, client):
        resolver.resolve_connection.return_value = None
        assert await reconciler.on_session_deleted(USER, "evt-9") is SyncOutcome.SKIPPED
        client.delete_event.assert_not_awaited()

    async def test_provider_error_fails(self, reconciler, client):
        client.delete_event.side_effect = CalendarRequestError(status_code=500, message="x")
        assert await reconciler.on_session_deleted(USER, "evt-9") is SyncOutcome.FAILED


# ---------------------------------------------------------------------------
# on_batch_generated
# ---------------------------------------------------------------------------


class TestOnBatchGenerated:
    async def test_creates_each_event_with_single_resolve(
        self, reconciler, resolver, repository, client
    ):
        pairs = [_session(repository, offset_days=i) for i in range(3)]
        client.create_event.side_effect = ["evt-a", "evt-b", "evt-c"]

        outcomes = await reconciler.on_batch_generated(USER, [d for _, d in pairs])

        assert outcomes == [SyncOutcome.CREATED] * 3
        resolver.resolve_connection.assert_awaited_once_with(USER)
        assert [repository.sessions[s.id].external_event_id for s, _ in pairs] == [
            "evt-a",
            "evt-b",
            "evt-c",
        ]

    async def test_partial_failure_continues(self, reconciler, repository, client):
        pairs = [_session(repository, offset_days=i) for i in range(3)]
        client.create_event.side_effect = [
            "evt-a",
            CalendarRequestError(status_code=500, message="Backend Error"),
            "evt-c",
        ]

        outcomes = await reconciler.on_batch_generated(USER, [d for _, d in pairs])

        assert outcomes == [SyncOutcome.CREATED, SyncOutcome.FAILED, SyncOutcome.CREATED]
        assert repository.sessions[pairs[1][0].id].external_event_id is None
        assert repository.sessions[pairs[2][0].id].external_event_id == "evt-c"

    async def test_skipped_without_connection(self, reconciler, resolver, repository, client):
        resolver.resolve_connection.return_value = None
        pairs = [_session(repository, offset_days=i) for i in range(2)]

        outcomes = await reconciler.on_batch_generated(USER, [d for _, d in pairs])

        assert outcomes == [SyncOutcome.SKIPPED, SyncOutcome.SKIPPED]
        client.create_event.assert_not_awaited()

    async def test_empty_batch(self, reconciler, resolver):
        assert await reconciler.on_batch_generated(USER, []) == []
        resolver.resolve_connection.assert_not_awaited()
