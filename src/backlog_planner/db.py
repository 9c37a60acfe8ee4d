"""Connection pool management and schema provisioning for the planner database."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import parse_qs, unquote, urlparse

import asyncpg

from backlog_planner.config import DatabaseConfig
from backlog_planner.storage.cache import CACHE_TABLE_DDL
from backlog_planner.storage.repository import PLANNER_TABLES_DDL

logger = logging.getLogger(__name__)

_VALID_SSL_MODES = {"disable", "prefer", "allow", "require", "verify-ca", "verify-full"}

SCHEMA_STATEMENTS: tuple[str, ...] = (*PLANNER_TABLES_DDL, CACHE_TABLE_DDL)


def _normalize_ssl_mode(value: str | None) -> str | None:
    """Normalize an SSL mode value for asyncpg or return None if unset/invalid."""
    if value is None:
        return None
    normalized = value.strip().lower()
    if not normalized:
        return None
    if normalized in _VALID_SSL_MODES:
        return normalized
    logger.warning("Ignoring invalid PostgreSQL sslmode value: %s", value)
    return None


def db_params_from_url(database_url: str) -> dict[str, Any]:
    """Parse connection params from a libpq-style URL."""
    parsed = urlparse(database_url)
    sslmode = _normalize_ssl_mode(parse_qs(parsed.query).get("sslmode", [None])[0])
    database = unquote(parsed.path.lstrip("/")) or None
    return {
        "host": parsed.hostname or "localhost",
        "port": parsed.port or 5432,
        "user": unquote(parsed.username) if parsed.username else "planner",
        "password": unquote(parsed.password) if parsed.password else "planner",
        "database": database,
        "ssl": sslmode,
    }


class Database:
    """Owns the asyncpg pool used by the repository and the cache store."""

    def __init__(
        self,
        db_name: str,
        host: str = "localhost",
        port: int = 5432,
        user: str = "planner",
        password: str = "planner",
        ssl: str | None = None,
        min_pool_size: int = 1,
        max_pool_size: int = 10,
    ) -> None:
        self.db_name = db_name
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.ssl = ssl
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> Database:
        if config.url:
            params = db_params_from_url(config.url)
            return cls(
                db_name=params["database"] or config.name,
                host=params["host"],
                port=params["port"],
                user=params["user"],
                password=params["password"],
                ssl=params["ssl"],
                min_pool_size=config.min_pool_size,
                max_pool_size=config.max_pool_size,
            )
        return cls(
            db_name=config.name,
            host=config.host,
            port=config.port,
            user=config.user,
            password=config.password,
            min_pool_size=config.min_pool_size,
            max_pool_size=config.max_pool_size,
        )

    async def connect(self) -> asyncpg.Pool:
        """Create and return a connection pool to the planner database."""
        pool_kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": self.db_name,
            "min_size": self.min_pool_size,
            "max_size": self.max_pool_size,
        }
        if self.ssl is not None:
            pool_kwargs["ssl"] = self.ssl
        self.pool = await asyncpg.create_pool(**pool_kwargs)
        logger.info("Connection pool created for: %s", self.db_name)
        return self.pool

    async def close(self) -> None:
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Connection pool closed for: %s", self.db_name)

    def require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise RuntimeError(f"Database '{self.db_name}' has no active connection pool")
        return self.pool

    async def provision_schema(self) -> None:
        """Create planner tables and the cache table if they do not exist."""
        pool = self.require_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                for statement in SCHEMA_STATEMENTS:
                    await conn.execute(statement)
        logger.info("Schema provisioned for: %s", self.db_name)
