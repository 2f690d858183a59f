"""
Tests for the sync worker pool
"""

import asyncio

import pytest

from channel_sync.models import SyncType
from channel_sync.worker_pool import WorkerPool


class TestShutdown:

    @pytest.mark.asyncio
    async def test_drain_waits_for_queued_jobs(self):
        done = []

        async def handler(connection_id, sync_type):
            await asyncio.sleep(0)
            done.append(connection_id)
            return connection_id

        pool = WorkerPool(handler, size=1)
        futures = [await pool.submit(c, SyncType.BULK) for c in ("a", "b", "c")]

        await pool.shutdown()

        assert done == ["a", "b", "c"]
        assert [f.result() for f in futures] == ["a", "b", "c"]
        assert not pool.running

    @pytest.mark.asyncio
    async def test_cancel_resolves_running_and_queued_futures(self):
        release = asyncio.Event()

        async def handler(connection_id, sync_type):
            await release.wait()

        pool = WorkerPool(handler, size=1)
        running = await pool.submit("a", SyncType.AUTO)
        queued = await pool.submit("b", SyncType.AUTO)
        while pool.in_flight == 0:
            await asyncio.sleep(0)

        await pool.shutdown(drain=False)

        assert running.cancelled()
        assert queued.cancelled()
        assert pool.in_flight == 0
        results = await asyncio.gather(running, queued, return_exceptions=True)
        assert all(isinstance(r, asyncio.CancelledError) for r in results)
