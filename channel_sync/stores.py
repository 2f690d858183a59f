"""
Store Interfaces
================

The narrow persistence contracts the engine depends on. The reconciler,
coordinator and scheduler only ever talk to these interfaces; concrete
implementations live in ``memory_stores`` and ``sql_stores``.
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncContextManager, Dict, List, Optional

from .models import Booking, Connection, ConnectionStatusUpdate, SyncLog


class ConnectionStore(ABC):
    """Durable sync configuration per (property, platform) pair."""

    @abstractmethod
    async def list_connections(self, property_id: Optional[str] = None) -> List[Connection]:
        """Return connections, newest first, optionally for one property."""

    @abstractmethod
    async def get_connection(self, connection_id: str) -> Optional[Connection]:
        """Return the connection or None."""

    @abstractmethod
    async def add_connection(self, connection: Connection) -> Connection:
        """Insert a new connection."""

    @abstractmethod
    async def save_connection(self, connection: Connection) -> Connection:
        """Replace the operator-editable fields; last-sync status fields are kept as stored."""

    @abstractmethod
    async def delete_connection(self, connection_id: str) -> bool:
        """Delete the connection; returns False if it did not exist."""

    @abstractmethod
    async def update_connection_status(
        self,
        connection_id: str,
        status: ConnectionStatusUpdate
    ) -> None:
        """Write the last-sync status fields."""


class BookingTransaction(ABC):
    """Reads and writes that commit or roll back together."""

    @abstractmethod
    async def get_bookings_for_property(self, property_id: str) -> List[Booking]:
        """Return the property's bookings, including writes staged in this transaction."""

    @abstractmethod
    async def upsert_booking(self, booking: Booking) -> Booking:
        """Insert (no id) or replace (with id) a booking."""

    @abstractmethod
    async def append_sync_log(self, log: SyncLog) -> SyncLog:
        """Append a completed sync log."""


class BookingStore(ABC):
    """Bookings keyed by property and date range, with transactional writes."""

    @abstractmethod
    async def get_bookings_for_property(self, property_id: str) -> List[Booking]:
        """Return every booking of the property, any platform or status."""

    @abstractmethod
    def transaction(self, property_id: Optional[str] = None) -> AsyncContextManager[BookingTransaction]:
        """
        Open a transaction.

        With ``property_id`` the transaction is the only writer for that
        property until it ends, so a read followed by upserts sees no
        concurrent changes.

        Usage:
            async with store.transaction(property_id) as txn:
                existing = await txn.get_bookings_for_property(property_id)
                await txn.upsert_booking(booking)
                await txn.append_sync_log(log)
        """

    async def upsert_booking(self, booking: Booking) -> Booking:
        async with self.transaction(booking.property_id) as txn:
            return await txn.upsert_booking(booking)


class PropertyLocks:
    """One asyncio lock per property id, for in-process writer serialisation."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def hold(self, property_id: Optional[str]):
        if property_id is None:
            yield
            return
        lock = self._locks.setdefault(property_id, asyncio.Lock())
        async with lock:
            yield


class SyncLogStore(ABC):
    """Read side of the append-only sync audit log."""

    @abstractmethod
    async def list_sync_logs(
        self,
        connection_id: Optional[str] = None,
        limit: int = 50
    ) -> List[SyncLog]:
        """Return logs, newest first."""

    @abstractmethod
    async def list_sync_logs_since(self, since: datetime) -> List[SyncLog]:
        """Return logs started at or after ``since``."""

    @abstractmethod
    async def purge_sync_logs(self, connection_id: str) -> int:
        """Delete all logs of a connection; returns the number removed."""
