"""Bounded best-effort queue for calendar sync side effects.

Session mutations enqueue a :class:`SyncTask` and return immediately; a small
worker pool drains the queue through the :class:`EventReconciler`.

    mutation → enqueue(task) → queue.put_nowait → worker → reconciler.on_*()

Backpressure: when the queue is full the task is dropped with a warning. The
session itself is already persisted, and a dropped create heals on the
session's next update (the reconciler creates missing events on update).
Worker errors are logged and counted; they never propagate to the enqueuer.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from backlog_planner.config import SyncConfig
from backlog_planner.models import SessionDetails
from backlog_planner.sync.reconciler import EventReconciler, SyncOutcome

logger = logging.getLogger(__name__)


class SyncTaskKind(StrEnum):
    SESSION_CREATED = "session_created"
    SESSION_UPDATED = "session_updated"
    SESSION_DELETED = "session_deleted"
    BATCH_GENERATED = "batch_generated"


@dataclass
class SyncTask:
    """One queued sync side effect."""

    kind: SyncTaskKind
    user_id: str
    session_id: str | None = None
    details: SessionDetails | None = None
    external_event_id: str | None = None
    batch: list[SessionDetails] = field(default_factory=list)
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class SyncDispatcher:
    """Worker pool that applies queued sync tasks.

    Parameters
    ----------
    reconciler:
        Performs the calendar side effects.
    config:
        ``queue_capacity``, ``worker_count`` and ``drain_timeout_s`` are read
        from the ``[planner.sync]`` section.
    """

    def __init__(self, reconciler: EventReconciler, config: SyncConfig | None = None) -> None:
        self._reconciler = reconciler
        self._config = config or SyncConfig()
        self._queue: asyncio.Queue[SyncTask] = asyncio.Queue(maxsize=self._config.queue_capacity)
        self._worker_tasks: list[asyncio.Task] = []
        self._running = False

        # Counters for observability
        self._enqueued_total: int = 0
        self._backpressure_total: int = 0
        self._processed_total: int = 0
        self._failed_total: int = 0

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn worker coroutines."""
        if self._running:
            return
        self._running = True
        for i in range(self._config.worker_count):
            self._worker_tasks.append(
                asyncio.create_task(self._worker_loop(worker_id=i), name=f"sync-worker-{i}")
            )
        logger.info(
            "SyncDispatcher started: workers=%d, queue_capacity=%d",
            self._config.worker_count,
            self._config.queue_capacity,
        )

    async def stop(self, drain_timeout_s: float | None = None) -> None:
        """Drain queued tasks up to *drain_timeout_s*, then cancel the workers."""
        if not self._running:
            return
        self._running = False

        timeout = self._config.drain_timeout_s if drain_timeout_s is None else drain_timeout_s
        if timeout > 0:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except TimeoutError:
                logger.warning(
                    "SyncDispatcher drain timed out after %.1fs; %d task(s) dropped",
                    timeout,
                    self.queue_depth,
                )

        for task in self._worker_tasks:
            task.cancel()
        for task in self._worker_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._worker_tasks.clear()

        logger.info(
            "SyncDispatcher stopped: enqueued=%d, processed=%d, failed=%d, backpressure=%d",
            self._enqueued_total,
            self._processed_total,
            self._failed_total,
            self._backpressure_total,
        )

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue(self, task: SyncTask) -> bool:
        """Queue *task* without blocking. Returns False when the queue is full."""
        try:
            self._queue.put_nowait(task)
        except asyncio.QueueFull:
            self._backpressure_total += 1
            logger.warning(
                "Sync queue full (backpressure): dropping %s task for user %s",
                task.kind,
                task.user_id,
            )
            return False
        self._enqueued_total += 1
        logger.debug("Sync task enqueued: kind=%s depth=%d", task.kind, self.queue_depth)
        return True

    def submit_session_created(self, user_id: str, details: SessionDetails) -> bool:
        return self.enqueue(
            SyncTask(
                kind=SyncTaskKind.SESSION_CREATED,
                user_id=user_id,
                session_id=details.session_id,
                details=details,
            )
        )

    def submit_session_updated(
        self, user_id: str, session_id: str, details: SessionDetails
    ) -> bool:
        return self.enqueue(
            SyncTask(
                kind=SyncTaskKind.SESSION_UPDATED,
                user_id=user_id,
                session_id=session_id,
                details=details,
            )
        )

    def submit_session_deleted(self, user_id: str, external_event_id: str | None) -> bool:
        if not external_event_id:
            return False
        return self.enqueue(
            SyncTask(
                kind=SyncTaskKind.SESSION_DELETED,
                user_id=user_id,
                external_event_id=external_event_id,
            )
        )

    def submit_batch_generated(self, user_id: str, sessions: Sequence[SessionDetails]) -> bool:
        if not sessions:
            return False
        return self.enqueue(
            SyncTask(kind=SyncTaskKind.BATCH_GENERATED, user_id=user_id, batch=list(sessions))
        )

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def run_task(self, task: SyncTask) -> list[SyncOutcome]:
        """Apply a single task through the reconciler and return its outcome(s)."""
        if task.kind is SyncTaskKind.SESSION_CREATED:
            assert task.details is not None
            return [await self._reconciler.on_session_created(task.user_id, task.details)]
        if task.kind is SyncTaskKind.SESSION_UPDATED:
            assert task.details is not None and task.session_id is not None
            return [
                await self._reconciler.on_session_updated(
                    task.user_id, task.session_id, task.details
                )
            ]
        if task.kind is SyncTaskKind.SESSION_DELETED:
            return [await self._reconciler.on_session_deleted(task.user_id, task.external_event_id)]
        return await self._reconciler.on_batch_generated(task.user_id, task.batch)

    async def _worker_loop(self, worker_id: int) -> None:
        while True:
            task = await self._queue.get()
            try:
                outcomes = await self.run_task(task)
                self._processed_total += 1
                if SyncOutcome.FAILED in outcomes:
                    self._failed_total += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                self._failed_total += 1
                logger.exception(
                    "Sync worker %d failed on %s task for user %s",
                    worker_id,
                    task.kind,
                    task.user_id,
                )
            finally:
                self._queue.task_done()
