"""
Channel Service
===============

The operations exposed to callers: connection management, on-demand
syncs, run history, dashboard stats and Lodgify key validation.
"""

from dataclasses import replace
from typing import Callable, Dict, List, Optional
from uuid import uuid4

import structlog

from .exceptions import (
    ConnectionNotFoundError,
    ConnectionValidationError,
    DuplicateConnectionError,
)
from .models import Connection, ConnectionType, SyncLog, SyncResult, utc_now
from .platform_adapters import IcalAdapter, LodgifyAdapter, TestKeyResult
from .scheduler import BulkSyncResult, SyncScheduler
from .schemas import ConnectionCreate, ConnectionUpdate
from .stats import SyncStats, SyncStatsAggregator
from .stores import ConnectionStore, SyncLogStore

logger = structlog.get_logger(__name__)

MAX_LOG_LIMIT = 500

# Fields an update may explicitly set to null
CLEARABLE_FIELDS = {"ical_url", "api_key", "account_id", "external_property_id"}


class ChannelService:
    """Facade over stores, scheduler and stats used by the HTTP API."""

    def __init__(
        self,
        connections: ConnectionStore,
        sync_logs: SyncLogStore,
        scheduler: SyncScheduler,
        stats: SyncStatsAggregator,
        lodgify_factory: Callable[[], LodgifyAdapter] = LodgifyAdapter
    ):
        self.connections = connections
        self.sync_logs = sync_logs
        self.scheduler = scheduler
        self.stats = stats
        self.lodgify_factory = lodgify_factory

    # =========================================================================
    # CONNECTIONS
    # =========================================================================

    async def list_connections(self, property_id: Optional[str] = None) -> List[Connection]:
        return await self.connections.list_connections(property_id)

    async def get_connection(self, connection_id: str) -> Connection:
        connection = await self.connections.get_connection(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(connection_id)
        return connection

    async def create_connection(self, payload: ConnectionCreate) -> Connection:
        """
        Create a connection.

        Raises:
            ConnectionValidationError: Missing feed URL or API key
            DuplicateConnectionError: Another enabled connection targets the same listing
        """
        connection = Connection(id=str(uuid4()), **payload.model_dump())
        connection.ical_url = IcalAdapter.normalize_url(connection.ical_url)
        self._validate(connection)
        await self._ensure_unique(connection)

        created = await self.connections.add_connection(connection)
        logger.info(
            "Channel connection created",
            connection_id=created.id,
            property_id=created.property_id,
            platform=created.platform.value,
            connection_type=created.connection_type.value
        )
        return created

    async def update_connection(self, connection_id: str, payload: ConnectionUpdate) -> Connection:
        """
        Apply a partial update.

        Raises:
            ConnectionNotFoundError: Unknown connection id
            ConnectionValidationError: The merged connection is inconsistent
            DuplicateConnectionError: Enabling would create a second enabled connection
        """
        current = await self.get_connection(connection_id)
        changes = {
            key: value
            for key, value in payload.model_dump(exclude_unset=True).items()
            if value is not None or key in CLEARABLE_FIELDS
        }
        if "ical_url" in changes:
            changes["ical_url"] = IcalAdapter.normalize_url(changes["ical_url"])

        updated = replace(current, updated_at=utc_now(), **changes)
        self._validate(updated)
        await self._ensure_unique(updated)

        saved = await self.connections.save_connection(updated)
        logger.info(
            "Channel connection updated",
            connection_id=connection_id,
            fields=sorted(changes)
        )
        return saved

    async def delete_connection(self, connection_id: str) -> None:
        """
        Delete a connection together with its sync history.

        Raises:
            ConnectionNotFoundError: Unknown connection id
            BusyError: A sync run for the connection is in flight
        """
        await self.get_connection(connection_id)
        async with self.scheduler.locks.hold(connection_id):
            purged = await self.sync_logs.purge_sync_logs(connection_id)
            await self.connections.delete_connection(connection_id)
        logger.info("Channel connection deleted", connection_id=connection_id, purged_logs=purged)

    def _validate(self, connection: Connection) -> None:
        if connection.connection_type == ConnectionType.ICAL and not connection.ical_url:
            raise ConnectionValidationError("iCal connections require ical_url")
        if connection.connection_type == ConnectionType.API and not connection.api_key:
            raise ConnectionValidationError("API connections require api_key")
        if connection.sync_interval_minutes <= 0:
            raise ConnectionValidationError("sync_interval_minutes must be positive")

    async def _ensure_unique(self, connection: Connection) -> None:
        if not connection.enabled:
            return
        for other in await self.connections.list_connections(connection.property_id):
            if other.id != connection.id and other.enabled and other.listing_key == connection.listing_key:
                raise DuplicateConnectionError(
                    property_id=connection.property_id,
                    platform=connection.platform.value,
                    external_property_id=connection.external_property_id,
                    existing_id=other.id
                )

    # =========================================================================
    # SYNC
    # =========================================================================

    async def sync_one(self, connection_id: str) -> SyncResult:
        return await self.scheduler.sync_one(connection_id)

    async def sync_all(self) -> BulkSyncResult:
        return await self.scheduler.sync_all()

    async def sync_all_due(self) -> Dict[str, int]:
        return await self.scheduler.sync_all_due()

    async def get_sync_logs(
        self,
        connection_id: Optional[str] = None,
        limit: int = 50
    ) -> List[SyncLog]:
        """Return sync logs, newest first."""
        limit = max(1, min(limit, MAX_LOG_LIMIT))
        return await self.sync_logs.list_sync_logs(connection_id, limit)

    async def get_stats(self) -> SyncStats:
        return await self.stats.get_stats()

    # =========================================================================
    # LODGIFY
    # =========================================================================

    async def test_lodgify_key(self, api_key: str) -> TestKeyResult:
        """Check a Lodgify key without touching any store."""
        async with self.lodgify_factory() as adapter:
            return await adapter.test_key(api_key)
