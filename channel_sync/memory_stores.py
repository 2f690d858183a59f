"""
In-Memory Stores
================

Process-local implementations of the store interfaces. Used for tests and
single-process deployments without a database.
"""

from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional
from uuid import uuid4

from .models import Booking, Connection, ConnectionStatusUpdate, SyncLog, utc_now
from .stores import BookingStore, BookingTransaction, ConnectionStore, PropertyLocks, SyncLogStore


class InMemoryConnectionStore(ConnectionStore):

    def __init__(self):
        self._connections: Dict[str, Connection] = {}

    async def list_connections(self, property_id: Optional[str] = None) -> List[Connection]:
        connections = [
            replace(c) for c in self._connections.values()
            if property_id is None or c.property_id == property_id
        ]
        return sorted(connections, key=lambda c: (c.created_at, c.id), reverse=True)

    async def get_connection(self, connection_id: str) -> Optional[Connection]:
        connection = self._connections.get(connection_id)
        return replace(connection) if connection else None

    async def add_connection(self, connection: Connection) -> Connection:
        if connection.id in self._connections:
            raise KeyError(f"Connection {connection.id} already exists")
        self._connections[connection.id] = replace(connection)
        return replace(connection)

    async def save_connection(self, connection: Connection) -> Connection:
        current = self._connections.get(connection.id)
        if current is None:
            raise KeyError(f"Connection {connection.id} does not exist")
        # Status fields belong to the sync run
        stored = replace(
            connection,
            last_sync_at=current.last_sync_at,
            last_sync_status=current.last_sync_status,
            last_sync_message=current.last_sync_message,
            updated_at=utc_now()
        )
        self._connections[connection.id] = stored
        return replace(stored)

    async def delete_connection(self, connection_id: str) -> bool:
        return self._connections.pop(connection_id, None) is not None

    async def update_connection_status(
        self,
        connection_id: str,
        status: ConnectionStatusUpdate
    ) -> None:
        connection = self._connections.get(connection_id)
        if connection is None:
            return
        self._connections[connection_id] = replace(
            connection,
            last_sync_at=status.last_sync_at,
            last_sync_status=status.last_sync_status,
            last_sync_message=status.last_sync_message
        )


class InMemorySyncLogStore(SyncLogStore):

    def __init__(self):
        self._logs: List[SyncLog] = []

    def _append(self, log: SyncLog) -> None:
        self._logs.append(log)

    async def list_sync_logs(
        self,
        connection_id: Optional[str] = None,
        limit: int = 50
    ) -> List[SyncLog]:
        logs = [
            log for log in self._logs
            if connection_id is None or log.connection_id == connection_id
        ]
        logs.sort(key=lambda log: log.started_at, reverse=True)
        return logs[:limit]

    async def list_sync_logs_since(self, since: datetime) -> List[SyncLog]:
        return [log for log in self._logs if log.started_at >= since]

    async def purge_sync_logs(self, connection_id: str) -> int:
        kept = [log for log in self._logs if log.connection_id != connection_id]
        removed = len(self._logs) - len(kept)
        self._logs = kept
        return removed


class _InMemoryTransaction(BookingTransaction):
    """Stages writes until the owning store commits them."""

    def __init__(self, committed: Dict[str, Booking]):
        self.committed = committed
        self.bookings: Dict[str, Booking] = {}
        self.logs: List[SyncLog] = []

    async def get_bookings_for_property(self, property_id: str) -> List[Booking]:
        merged = {**self.committed, **self.bookings}
        return [b for b in merged.values() if b.property_id == property_id]

    async def upsert_booking(self, booking: Booking) -> Booking:
        if booking.id is None:
            booking = replace(booking, id=str(uuid4()))
        self.bookings[booking.id] = booking
        return booking

    async def append_sync_log(self, log: SyncLog) -> SyncLog:
        self.logs.append(log)
        return log


class InMemoryBookingStore(BookingStore):
    """Bookings in a dict; sync logs are appended to the given log store."""

    def __init__(self, sync_logs: InMemorySyncLogStore):
        self._bookings: Dict[str, Booking] = {}
        self._sync_logs = sync_logs
        self._property_locks = PropertyLocks()

    async def get_bookings_for_property(self, property_id: str) -> List[Booking]:
        return [b for b in self._bookings.values() if b.property_id == property_id]

    def all_bookings(self) -> List[Booking]:
        return sorted(self._bookings.values(), key=lambda b: (b.property_id, b.start_date, b.id))

    @asynccontextmanager
    async def transaction(self, property_id: Optional[str] = None):
        async with self._property_locks.hold(property_id):
            txn = _InMemoryTransaction(self._bookings)
            yield txn
            # Commit only when the block exits cleanly
            self._bookings.update(txn.bookings)
            for log in txn.logs:
                self._sync_logs._append(log)
