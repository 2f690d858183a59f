"""
Channel Sync Application
========================

Composition root: wires stores, locks, adapters, coordinator, scheduler and
stats into a ChannelService and exposes it through FastAPI.

Run with:
    uvicorn --factory channel_sync.main:create_app
"""

from contextlib import asynccontextmanager
from typing import Callable, Optional

import structlog
from fastapi import FastAPI
from prometheus_client import make_asgi_app

from . import __version__
from .api_routes import router
from .config import Settings, settings
from .database import Database
from .locks import InMemoryLockRegistry, LockRegistry, RedisLockRegistry
from .logging_config import configure_logging
from .memory_stores import InMemoryBookingStore, InMemoryConnectionStore, InMemorySyncLogStore
from .models import Connection
from .platform_adapters import ChannelAdapter, LodgifyAdapter
from .scheduler import SyncScheduler
from .service import ChannelService
from .sql_stores import SqlBookingStore, SqlConnectionStore, SqlSyncLogStore
from .stats import SyncStatsAggregator
from .sync_engine import SyncCoordinator
from .worker_pool import WorkerPool

logger = structlog.get_logger(__name__)


def build_locks(config: Settings) -> LockRegistry:
    if config.REDIS_URL:
        return RedisLockRegistry(config.REDIS_URL, ttl_seconds=config.LOCK_TTL_SECONDS)
    return InMemoryLockRegistry()


def build_service(
    config: Settings = None,
    database: Optional[Database] = None,
    locks: Optional[LockRegistry] = None,
    adapter_factory: Callable[[Connection], ChannelAdapter] = None,
    lodgify_factory: Callable[[], LodgifyAdapter] = LodgifyAdapter
) -> ChannelService:
    """
    Wire a ChannelService.

    Args:
        config: Settings to use; defaults to the environment
        database: SQL database; in-memory stores are used when omitted
        locks: Lock registry; Redis when REDIS_URL is set, else in-process
        adapter_factory: Override adapter creation (tests)
        lodgify_factory: Override the adapter used for key validation (tests)
    """
    config = config or settings

    if database is not None:
        connections = SqlConnectionStore(database)
        sync_logs = SqlSyncLogStore(database)
        bookings = SqlBookingStore(database)
    else:
        connections = InMemoryConnectionStore()
        sync_logs = InMemorySyncLogStore()
        bookings = InMemoryBookingStore(sync_logs)

    locks = locks or build_locks(config)
    stats = SyncStatsAggregator(connections, sync_logs)

    coordinator = SyncCoordinator(
        connections=connections,
        bookings=bookings,
        locks=locks,
        stats=stats,
        adapter_factory=adapter_factory,
        fetch_timeout=config.SYNC_FETCH_TIMEOUT_SECONDS,
        persist_timeout=config.SYNC_PERSIST_TIMEOUT_SECONDS
    )
    scheduler = SyncScheduler(
        coordinator=coordinator,
        connections=connections,
        locks=locks,
        pool=WorkerPool(coordinator.run_sync, size=config.SYNC_WORKER_POOL_SIZE),
        tick_seconds=config.SCHEDULER_TICK_SECONDS
    )

    return ChannelService(
        connections=connections,
        sync_logs=sync_logs,
        scheduler=scheduler,
        stats=stats,
        lodgify_factory=lodgify_factory
    )


def create_app(config: Settings = None, service: Optional[ChannelService] = None) -> FastAPI:
    """
    Build the FastAPI application.

    When ``service`` is given it is used as-is; otherwise the lifespan opens
    the configured database and builds one.
    """
    config = config or settings
    configure_logging(config.LOG_LEVEL, config.LOG_JSON)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        database = None
        channel_service = service

        if channel_service is None:
            database = Database(config.DATABASE_URL, config.DATABASE_ECHO)
            await database.create_tables()
            channel_service = build_service(config, database)

        app.state.channel_service = channel_service
        if config.SCHEDULER_ENABLED:
            channel_service.scheduler.start()

        logger.info("Channel sync started", scheduler_enabled=config.SCHEDULER_ENABLED)
        try:
            yield
        finally:
            await channel_service.scheduler.stop()
            await channel_service.scheduler.locks.close()
            if database is not None:
                await database.close()
            logger.info("Channel sync stopped")

    app = FastAPI(title="Channel Sync", version=__version__, lifespan=lifespan)
    app.include_router(router)
    app.mount("/metrics", make_asgi_app())
    return app
