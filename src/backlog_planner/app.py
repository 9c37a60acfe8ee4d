"""Wiring of the planner's collaborators from a :class:`PlannerConfig`."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

import asyncpg
import httpx

from backlog_planner.config import PlannerConfig
from backlog_planner.core.logging import configure_logging
from backlog_planner.db import Database
from backlog_planner.google_calendar import GoogleCalendarClient
from backlog_planner.scheduling.service import AutoScheduler
from backlog_planner.storage.cache import PostgresCacheStore
from backlog_planner.storage.repository import PostgresPlannerRepository
from backlog_planner.sync.connection import CalendarConnectionManager
from backlog_planner.sync.dispatcher import SyncDispatcher
from backlog_planner.sync.reconciler import EventReconciler
from backlog_planner.sync.resolver import SyncConfigResolver


@dataclass
class PlannerServices:
    repository: PostgresPlannerRepository
    cache: PostgresCacheStore
    client: GoogleCalendarClient
    resolver: SyncConfigResolver
    reconciler: EventReconciler
    dispatcher: SyncDispatcher
    scheduler: AutoScheduler
    connections: CalendarConnectionManager


def build_services(
    config: PlannerConfig,
    pool: asyncpg.Pool,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> PlannerServices:
    """Construct every collaborator around an existing pool. Nothing is started."""
    repository = PostgresPlannerRepository(pool)
    cache = PostgresCacheStore(pool)
    client = GoogleCalendarClient(
        client_id=config.google.client_id,
        client_secret=config.google.client_secret,
        http_client=http_client,
        timeout_s=config.google.request_timeout_s,
    )
    resolver = SyncConfigResolver(
        repository=repository, cache=cache, client=client, config=config.sync
    )
    reconciler = EventReconciler(resolver=resolver, repository=repository, client=client)
    dispatcher = SyncDispatcher(reconciler, config.sync)
    return PlannerServices(
        repository=repository,
        cache=cache,
        client=client,
        resolver=resolver,
        reconciler=reconciler,
        dispatcher=dispatcher,
        scheduler=AutoScheduler(
            repository=repository, dispatcher=dispatcher, defaults=config.schedule
        ),
        connections=CalendarConnectionManager(
            repository=repository,
            client=client,
            resolver=resolver,
            calendar_name=config.google.calendar_name,
        ),
    )


@asynccontextmanager
async def open_services(config: PlannerConfig) -> AsyncIterator[PlannerServices]:
    """Connect, start the sync workers, and tear everything down on exit."""
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=Path(config.logging.log_root) if config.logging.log_root else None,
    )
    db = Database.from_config(config.database)
    pool = await db.connect()
    services = build_services(config, pool)
    await services.dispatcher.start()
    try:
        yield services
    finally:
        await services.dispatcher.stop()
        await services.client.aclose()
        await db.close()
