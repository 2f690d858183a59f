"""
Sync Scheduler
==============

Decides when connections are due and dispatches their runs to the worker
pool. Replaces a cron-driven "poll all channels" task with an in-process
tick loop:

- Every ``SCHEDULER_TICK_SECONDS`` each enabled auto-sync connection whose
  interval has elapsed is queued once, unless it is locked or already queued.
- Manual and bulk runs bypass the cadence check.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple

import structlog

from .config import settings
from .exceptions import ChannelSyncError
from .locks import LockRegistry
from .models import Connection, SyncResult, SyncStatus, SyncType, utc_now
from .stores import ConnectionStore
from .sync_engine import SyncCoordinator
from .worker_pool import WorkerPool

logger = structlog.get_logger(__name__)


@dataclass
class SyncFailure:
    """A run that could not produce a SyncResult."""
    connection_id: str
    error: str


@dataclass
class BulkSyncResult:
    """Outcome of a bulk sync: one entry per enabled connection."""
    results: List[SyncResult] = field(default_factory=list)
    failures: List[SyncFailure] = field(default_factory=list)


class SyncScheduler:
    """Periodic dispatcher plus on-demand entry points."""

    def __init__(
        self,
        coordinator: SyncCoordinator,
        connections: ConnectionStore,
        locks: LockRegistry,
        pool: Optional[WorkerPool] = None,
        tick_seconds: float = None
    ):
        self.coordinator = coordinator
        self.connections = connections
        self.locks = locks
        self.pool = pool or WorkerPool(coordinator.run_sync)
        self.tick_seconds = tick_seconds or settings.SCHEDULER_TICK_SECONDS
        self._pending: Set[str] = set()
        self._task: Optional[asyncio.Task] = None

    # =========================================================================
    # CADENCE
    # =========================================================================

    @staticmethod
    def is_due(connection: Connection, now: datetime) -> bool:
        """Whether an auto-sync connection's interval has elapsed."""
        if not (connection.enabled and connection.auto_sync_enabled):
            return False
        if connection.last_sync_at is None:
            return True
        interval = timedelta(minutes=connection.sync_interval_minutes)
        return now - connection.last_sync_at >= interval

    async def due_connections(self, now: Optional[datetime] = None) -> List[Connection]:
        now = now or utc_now()
        connections = await self.connections.list_connections()
        due = [c for c in connections if self.is_due(c, now)]
        return sorted(due, key=lambda c: c.id)

    async def tick(self, now: Optional[datetime] = None) -> List[str]:
        """
        Queue every due connection once.

        Returns:
            Ids of the connections dispatched by this tick
        """
        dispatched = await self._dispatch_due(now)
        if dispatched:
            logger.info("Scheduler dispatched due connections", count=len(dispatched))
        return [connection_id for connection_id, _ in dispatched]

    async def _dispatch_due(
        self,
        now: Optional[datetime] = None
    ) -> List[Tuple[str, asyncio.Future]]:
        dispatched = []
        for connection in await self.due_connections(now):
            if connection.id in self._pending:
                continue
            if await self.locks.is_held(connection.id):
                logger.debug("Due connection busy, skipped", connection_id=connection.id)
                continue

            self._pending.add(connection.id)
            future = await self.pool.submit(connection.id, SyncType.AUTO)
            future.add_done_callback(
                lambda f, connection_id=connection.id: self._on_auto_done(connection_id, f)
            )
            dispatched.append((connection.id, future))
        return dispatched

    def _on_auto_done(self, connection_id: str, future: asyncio.Future) -> None:
        self._pending.discard(connection_id)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.warning(
                "Scheduled sync did not run",
                connection_id=connection_id,
                error=str(error)
            )

    # =========================================================================
    # LOOP
    # =========================================================================

    def start(self) -> None:
        """Start the workers and the periodic tick task."""
        self.pool.start()
        if self._task is None:
            self._task = asyncio.create_task(self._loop(), name="sync-scheduler")
            logger.info("Sync scheduler started", tick_seconds=self.tick_seconds)

    async def stop(self) -> None:
        """Stop ticking, then let queued runs finish."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.pool.shutdown()
        logger.info("Sync scheduler stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception as e:
                logger.error("Scheduler tick failed", error=str(e), exc_info=True)
            await asyncio.sleep(self.tick_seconds)

    # =========================================================================
    # ON-DEMAND RUNS
    # =========================================================================

    async def sync_one(self, connection_id: str) -> SyncResult:
        """Run a manual sync now, outside the pool."""
        return await self.coordinator.run_sync(connection_id, SyncType.MANUAL)

    async def sync_all(self) -> BulkSyncResult:
        """
        Sync every enabled connection through the pool and wait for all.

        A failing connection, including one that is busy, never aborts the
        rest of the batch.
        """
        connections = sorted(
            (c for c in await self.connections.list_connections() if c.enabled),
            key=lambda c: c.id
        )
        submitted = [
            (c.id, await self.pool.submit(c.id, SyncType.BULK))
            for c in connections
        ]
        outcomes = await asyncio.gather(*(f for _, f in submitted), return_exceptions=True)

        bulk = BulkSyncResult()
        for (connection_id, _), outcome in zip(submitted, outcomes):
            if isinstance(outcome, BaseException):
                bulk.failures.append(SyncFailure(connection_id, _error_text(outcome)))
            else:
                bulk.results.append(outcome)

        logger.info(
            "Bulk sync finished",
            connections=len(connections),
            completed=len(bulk.results),
            failed=len(bulk.failures)
        )
        return bulk

    async def sync_all_due(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Run one tick and wait for its runs.

        Returns:
            ``{"synced": n, "errors": m}``; error-status runs and runs that
            raised both count as errors
        """
        dispatched = await self._dispatch_due(now)
        outcomes = await asyncio.gather(*(f for _, f in dispatched), return_exceptions=True)

        synced = sum(
            1 for outcome in outcomes
            if isinstance(outcome, SyncResult) and outcome.status != SyncStatus.ERROR
        )
        return {"synced": synced, "errors": len(outcomes) - synced}


def _error_text(error: BaseException) -> str:
    if isinstance(error, ChannelSyncError):
        return error.message
    return str(error) or type(error).__name__
