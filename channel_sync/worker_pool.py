"""
Sync Worker Pool
================

A fixed number of asyncio worker tasks consuming a queue of sync jobs.
The pool size is the upper bound on concurrently executing runs.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

import structlog
from prometheus_client import Gauge

from .config import settings
from .models import SyncResult, SyncType

logger = structlog.get_logger(__name__)

SYNC_IN_FLIGHT = Gauge(
    "channel_sync_runs_in_flight",
    "Sync runs currently executing in the worker pool"
)

SyncHandler = Callable[[str, SyncType], Awaitable[SyncResult]]


@dataclass
class SyncJob:
    """One queued run; the caller awaits ``future``."""
    connection_id: str
    sync_type: SyncType
    future: asyncio.Future


class WorkerPool:
    """Runs submitted sync jobs with at most ``size`` in flight."""

    def __init__(self, handler: SyncHandler, size: int = None):
        self.handler = handler
        self.size = size or settings.SYNC_WORKER_POOL_SIZE
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self.in_flight = 0
        self.peak_in_flight = 0

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        """Spawn the worker tasks; must be called from a running loop."""
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"sync-worker-{index}")
            for index in range(self.size)
        ]
        logger.info("Sync worker pool started", size=self.size)

    async def submit(self, connection_id: str, sync_type: SyncType) -> asyncio.Future:
        """
        Queue a run.

        Returns:
            Future resolving to the SyncResult, or failing with the run's error
        """
        if not self.running:
            self.start()
        future = asyncio.get_running_loop().create_future()
        await self._queue.put(SyncJob(connection_id, sync_type, future))
        return future

    async def shutdown(self, drain: bool = True) -> None:
        """
        Stop the workers.

        Args:
            drain: Finish queued jobs first; otherwise queued jobs are cancelled
        """
        if not self.running:
            return

        if drain:
            await self._queue.join()
        else:
            while not self._queue.empty():
                job = self._queue.get_nowait()
                job.future.cancel()
                self._queue.task_done()

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Sync worker pool stopped")

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                if not job.future.cancelled():
                    await self._execute(job)
            finally:
                self._queue.task_done()

    async def _execute(self, job: SyncJob) -> None:
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        SYNC_IN_FLIGHT.inc()
        try:
            result = await self.handler(job.connection_id, job.sync_type)
        except asyncio.CancelledError:
            job.future.cancel()
            raise
        except Exception as e:
            if not job.future.done():
                job.future.set_exception(e)
        else:
            if not job.future.done():
                job.future.set_result(result)
        finally:
            self.in_flight -= 1
            SYNC_IN_FLIGHT.dec()
