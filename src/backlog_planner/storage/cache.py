"""TTL key-value cache with lock and counter primitives, backed by PostgreSQL JSONB.

Rows in ``cache_entries`` carry an ``expires_at`` timestamp. An expired row is
treated as absent by every operation, so TTLs are enforced at read time and no
background sweeper is required for correctness.

``set_if_absent`` and ``increment`` are single statements, which makes them
atomic across processes sharing the database.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import asyncpg

logger = logging.getLogger(__name__)

CACHE_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS cache_entries (
    key TEXT PRIMARY KEY,
    value JSONB NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL
)
"""


class CacheUnavailableError(Exception):
    """Raised when the cache store cannot be reached (transport failure)."""


class CacheStore(Protocol):
    """Interface the sync engine needs from a cache/lock store."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def set_if_absent(self, key: str, value: Any, ttl_seconds: int) -> bool: ...

    async def increment(self, key: str, ttl_seconds: int) -> int: ...


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB value returned as text by asyncpg."""
    if not isinstance(val, str):
        return val
    return json.loads(val)


def _validate_ttl(ttl_seconds: int) -> None:
    if ttl_seconds <= 0:
        raise ValueError("ttl_seconds must be positive")


class PostgresCacheStore:
    """``CacheStore`` over an asyncpg pool.

    Connection and server errors are re-raised as :exc:`CacheUnavailableError`
    so callers can tell "store unreachable" apart from a normal result.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def _call(self, method: str, query: str, *args: Any) -> Any:
        try:
            return await getattr(self._pool, method)(query, *args)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise CacheUnavailableError(f"cache store unavailable: {exc}") from exc

    async def get(self, key: str) -> Any | None:
        row = await self._call(
            "fetchval",
            "SELECT value FROM cache_entries WHERE key = $1 AND expires_at > now()",
            key,
        )
        if row is None:
            return None
        return decode_jsonb(row)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        _validate_ttl(ttl_seconds)
        await self._call(
            "execute",
            """
            INSERT INTO cache_entries (key, value, expires_at)
            VALUES ($1, $2::jsonb, now() + make_interval(secs => $3))
            ON CONFLICT (key) DO UPDATE
                SET value = EXCLUDED.value,
                    expires_at = EXCLUDED.expires_at
            """,
            key,
            json.dumps(value),
            float(ttl_seconds),
        )

    async def delete(self, key: str) -> None:
        await self._call("execute", "DELETE FROM cache_entries WHERE key = $1", key)

    async def set_if_absent(self, key: str, value: Any, ttl_seconds: int) -> bool:
        """Store *value* only when *key* is missing or expired. Returns True on store."""
        _validate_ttl(ttl_seconds)
        stored = await self._call(
            "fetchval",
            """
            INSERT INTO cache_entries (key, value, expires_at)
            VALUES ($1, $2::jsonb, now() + make_interval(secs => $3))
            ON CONFLICT (key) DO UPDATE
                SET value = EXCLUDED.value,
                    expires_at = EXCLUDED.expires_at
                WHERE cache_entries.expires_at <= now()
            RETURNING key
            """,
            key,
            json.dumps(value),
            float(ttl_seconds),
        )
        return stored is not None

    async def increment(self, key: str, ttl_seconds: int) -> int:
        """Atomically increment an integer counter.

        The TTL is set when the counter is created (or recreated after expiry)
        and is left alone by later increments, giving a fixed window.
        """
        _validate_ttl(ttl_seconds)
        value = await self._call(
            "fetchval",
            """
            INSERT INTO cache_entries (key, value, expires_at)
            VALUES ($1, '1'::jsonb, now() + make_interval(secs => $2))
            ON CONFLICT (key) DO UPDATE
                SET value = CASE
                        WHEN cache_entries.expires_at <= now() THEN '1'::jsonb
                        ELSE to_jsonb(COALESCE((cache_entries.value #>> '{}')::int, 0) + 1)
                    END,
                    expires_at = CASE
                        WHEN cache_entries.expires_at <= now() THEN EXCLUDED.expires_at
                        ELSE cache_entries.expires_at
                    END
            RETURNING (value #>> '{}')::int
            """,
            key,
            float(ttl_seconds),
        )
        return int(value)
