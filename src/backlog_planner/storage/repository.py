"""Persistence for preferences, backlog snapshots, sessions and calendar credentials.

``PlannerRepository`` is the interface consumed by the scheduler service and
the sync engine; ``PostgresPlannerRepository`` implements it over asyncpg.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from datetime import datetime
from typing import Any, Protocol

import asyncpg

from backlog_planner.models import (
    BacklogItem,
    CalendarCredentials,
    GeneratedSession,
    ScheduledSession,
    SchedulingPreferences,
    SessionUpdate,
)

logger = logging.getLogger(__name__)

PLANNER_TABLES_DDL = (
    """
    CREATE TABLE IF NOT EXISTS user_preferences (
        user_id TEXT PRIMARY KEY,
        weekly_budget_minutes INTEGER,
        session_length_minutes INTEGER,
        timezone TEXT,
        google_sync_enabled BOOLEAN NOT NULL DEFAULT false,
        google_access_token TEXT,
        google_refresh_token TEXT,
        google_token_expiry TIMESTAMPTZ,
        google_calendar_id TEXT,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS backlog_items (
        user_id TEXT NOT NULL,
        item_id INTEGER NOT NULL,
        name TEXT NOT NULL DEFAULT '',
        estimated_total_minutes INTEGER,
        consumed_minutes INTEGER NOT NULL DEFAULT 0,
        priority INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (user_id, item_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scheduled_sessions (
        id UUID PRIMARY KEY,
        user_id TEXT NOT NULL,
        item_id INTEGER NOT NULL,
        start_at TIMESTAMPTZ NOT NULL,
        end_at TIMESTAMPTZ NOT NULL,
        notes TEXT,
        completed BOOLEAN NOT NULL DEFAULT false,
        external_event_id TEXT
    )
    """,
    """
    ALTER TABLE scheduled_sessions
        ADD COLUMN IF NOT EXISTS completed BOOLEAN NOT NULL DEFAULT false
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_scheduled_sessions_user_start
        ON scheduled_sessions (user_id, start_at)
    """,
)

_SESSION_COLUMNS = (
    "id, user_id, item_id, start_at, end_at, notes, completed, external_event_id"
)


class PlannerRepository(Protocol):
    async def get_calendar_credentials(self, user_id: str) -> CalendarCredentials | None: ...

    async def store_refreshed_token(
        self, user_id: str, access_token: str, expires_at: datetime
    ) -> None: ...

    async def disable_sync(self, user_id: str) -> None: ...

    async def save_calendar_connection(
        self,
        user_id: str,
        *,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        calendar_id: str,
    ) -> None: ...

    async def clear_calendar_connection(self, user_id: str) -> None: ...

    async def get_session_event_id(self, session_id: str) -> str | None: ...

    async def set_session_event_id(self, session_id: str, event_id: str) -> None: ...

    async def get_scheduling_preferences(self, user_id: str) -> SchedulingPreferences | None: ...

    async def list_backlog(self, user_id: str) -> list[BacklogItem]: ...

    async def insert_sessions(
        self, user_id: str, sessions: Sequence[GeneratedSession]
    ) -> list[ScheduledSession]: ...

    async def delete_sessions_except(self, user_id: str, keep_ids: Sequence[str]) -> int: ...

    async def get_item_name(self, user_id: str, item_id: int) -> str | None: ...

    async def create_session(
        self,
        user_id: str,
        *,
        item_id: int,
        start_at: datetime,
        end_at: datetime,
        notes: str | None = None,
    ) -> ScheduledSession: ...

    async def get_session(self, user_id: str, session_id: str) -> ScheduledSession | None: ...

    async def update_session(
        self, user_id: str, session_id: str, update: SessionUpdate
    ) -> ScheduledSession | None: ...

    async def delete_session(self, user_id: str, session_id: str) -> ScheduledSession | None: ...

    async def list_sessions(self, user_id: str) -> list[ScheduledSession]: ...


class PostgresPlannerRepository:
    """asyncpg-backed :class:`PlannerRepository`."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    # ------------------------------------------------------------------
    # Calendar credentials
    # ------------------------------------------------------------------

    async def get_calendar_credentials(self, user_id: str) -> CalendarCredentials | None:
        row = await self._pool.fetchrow(
            """
            SELECT google_sync_enabled, google_access_token, google_refresh_token,
                   google_token_expiry, google_calendar_id, timezone
            FROM user_preferences
            WHERE user_id = $1
            """,
            user_id,
        )
        if row is None:
            return None
        return CalendarCredentials(
            user_id=user_id,
            sync_enabled=bool(row["google_sync_enabled"]),
            access_token=row["google_access_token"],
            refresh_token=row["google_refresh_token"],
            token_expiry=row["google_token_expiry"],
            calendar_id=row["google_calendar_id"],
            timezone=row["timezone"],
        )

    async def store_refreshed_token(
        self, user_id: str, access_token: str, expires_at: datetime
    ) -> None:
        await self._pool.execute(
            """
            UPDATE user_preferences
            SET google_access_token = $2, google_token_expiry = $3, updated_at = now()
            WHERE user_id = $1
            """,
            user_id,
            access_token,
            expires_at,
        )

    async def disable_sync(self, user_id: str) -> None:
        await self._pool.execute(
            """
            UPDATE user_preferences
            SET google_sync_enabled = false, updated_at = now()
            WHERE user_id = $1
            """,
            user_id,
        )

    async def save_calendar_connection(
        self,
        user_id: str,
        *,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        calendar_id: str,
    ) -> None:
        await self._pool.execute(
            """
            INSERT INTO user_preferences (
                user_id, google_sync_enabled, google_access_token, google_refresh_token,
                google_token_expiry, google_calendar_id, updated_at
            )
            VALUES ($1, true, $2, $3, $4, $5, now())
            ON CONFLICT (user_id) DO UPDATE
                SET google_sync_enabled = true,
                    google_access_token = EXCLUDED.google_access_token,
                    google_refresh_token = EXCLUDED.google_refresh_token,
                    google_token_expiry = EXCLUDED.google_token_expiry,
                    google_calendar_id = EXCLUDED.google_calendar_id,
                    updated_at = now()
            """,
            user_id,
            access_token,
            refresh_token,
            expires_at,
            calendar_id,
        )

    async def clear_calendar_connection(self, user_id: str) -> None:
        """Forget all stored credentials and every session's external event id."""
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    UPDATE user_preferences
                    SET google_sync_enabled = false,
                        google_access_token = NULL,
                        google_refresh_token = NULL,
                        google_token_expiry = NULL,
                        google_calendar_id = NULL,
                        updated_at = now()
                    WHERE user_id = $1
                    """,
                    user_id,
                )
                await conn.execute(
                    "UPDATE scheduled_sessions SET external_event_id = NULL WHERE user_id = $1",
                    user_id,
                )

    # ------------------------------------------------------------------
    # External event ids
    # ------------------------------------------------------------------

    async def get_session_event_id(self, session_id: str) -> str | None:
        return await self._pool.fetchval(
            "SELECT external_event_id FROM scheduled_sessions WHERE id = $1",
            uuid.UUID(session_id),
        )

    async def set_session_event_id(self, session_id: str, event_id: str) -> None:
        await self._pool.execute(
            "UPDATE scheduled_sessions SET external_event_id = $2 WHERE id = $1",
            uuid.UUID(session_id),
            event_id,
        )

    # ------------------------------------------------------------------
    # Scheduling snapshot
    # ------------------------------------------------------------------

    async def get_scheduling_preferences(self, user_id: str) -> SchedulingPreferences | None:
        row = await self._pool.fetchrow(
            """
            SELECT weekly_budget_minutes, session_length_minutes, timezone
            FROM user_preferences
            WHERE user_id = $1
            """,
            user_id,
        )
        if row is None or row["weekly_budget_minutes"] is None:
            return None
        return SchedulingPreferences(
            weekly_budget_minutes=row["weekly_budget_minutes"],
            session_length_minutes=row["session_length_minutes"] or 0,
            timezone=row["timezone"] or "UTC",
        )

    async def list_backlog(self, user_id: str) -> list[BacklogItem]:
        """Return the user's backlog, highest priority first."""
        rows = await self._pool.fetch(
            """
            SELECT item_id, name, estimated_total_minutes, consumed_minutes
            FROM backlog_items
            WHERE user_id = $1
            ORDER BY priority DESC, item_id
            """,
            user_id,
        )
        return [
            BacklogItem(
                id=row["item_id"],
                name=row["name"] or "",
                estimated_total_minutes=row["estimated_total_minutes"],
                consumed_minutes=row["consumed_minutes"] or 0,
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def insert_sessions(
        self, user_id: str, sessions: Sequence[GeneratedSession]
    ) -> list[ScheduledSession]:
        persisted = [
            ScheduledSession(
                id=str(uuid.uuid4()),
                user_id=user_id,
                item_id=session.item_id,
                start_at=session.start_at,
                end_at=session.end_at,
            )
            for session in sessions
        ]
        if not persisted:
            return []
        await self._pool.executemany(
            """
            INSERT INTO scheduled_sessions (id, user_id, item_id, start_at, end_at)
            VALUES ($1, $2, $3, $4, $5)
            """,
            [
                (uuid.UUID(s.id), s.user_id, s.item_id, s.start_at, s.end_at)
                for s in persisted
            ],
        )
        return persisted

    async def delete_sessions_except(self, user_id: str, keep_ids: Sequence[str]) -> int:
        status = await self._pool.execute(
            "DELETE FROM scheduled_sessions WHERE user_id = $1 AND NOT (id = ANY($2::uuid[]))",
            user_id,
            [uuid.UUID(session_id) for session_id in keep_ids],
        )
        return _affected_rows(status)

    async def get_item_name(self, user_id: str, item_id: int) -> str | None:
        return await self._pool.fetchval(
            "SELECT name FROM backlog_items WHERE user_id = $1 AND item_id = $2",
            user_id,
            item_id,
        )

    async def create_session(
        self,
        user_id: str,
        *,
        item_id: int,
        start_at: datetime,
        end_at: datetime,
        notes: str | None = None,
    ) -> ScheduledSession:
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO scheduled_sessions (id, user_id, item_id, start_at, end_at, notes)
            VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING {_SESSION_COLUMNS}
            """,
            uuid.uuid4(),
            user_id,
            item_id,
            start_at,
            end_at,
            notes,
        )
        return ScheduledSession.from_row(row)

    async def get_session(self, user_id: str, session_id: str) -> ScheduledSession | None:
        row = await self._pool.fetchrow(
            f"SELECT {_SESSION_COLUMNS} FROM scheduled_sessions WHERE id = $1 AND user_id = $2",
            uuid.UUID(session_id),
            user_id,
        )
        return ScheduledSession.from_row(row) if row is not None else None

    async def update_session(
        self, user_id: str, session_id: str, update: SessionUpdate
    ) -> ScheduledSession | None:
        """Write the supplied fields of *update*; None when the user owns no such session."""
        changes = update.changes()
        if not changes:
            return await self.get_session(user_id, session_id)

        params: list[Any] = [uuid.UUID(session_id), user_id]
        assignments: list[str] = []
        for column, value in changes.items():
            params.append(value)
            assignments.append(f"{column} = ${len(params)}")

        row = await self._pool.fetchrow(
            f"""
            UPDATE scheduled_sessions
            SET {", ".join(assignments)}
            WHERE id = $1 AND user_id = $2
            RETURNING {_SESSION_COLUMNS}
            """,
            *params,
        )
        return ScheduledSession.from_row(row) if row is not None else None

    async def delete_session(self, user_id: str, session_id: str) -> ScheduledSession | None:
        row = await self._pool.fetchrow(
            f"""
            DELETE FROM scheduled_sessions
            WHERE id = $1 AND user_id = $2
            RETURNING {_SESSION_COLUMNS}
            """,
            uuid.UUID(session_id),
            user_id,
        )
        return ScheduledSession.from_row(row) if row is not None else None

    async def list_sessions(self, user_id: str) -> list[ScheduledSession]:
        rows = await self._pool.fetch(
            f"SELECT {_SESSION_COLUMNS} FROM scheduled_sessions WHERE user_id = $1 "
            "ORDER BY start_at",
            user_id,
        )
        return [ScheduledSession.from_row(row) for row in rows]


def _affected_rows(status: str) -> int:
    """Parse the row count from an asyncpg command status such as ``DELETE 3``."""
    try:
        return int(str(status).rsplit(" ", 1)[-1])
    except ValueError:
        return 0
