"""
SQL Stores
==========

Store implementations on top of the Core tables in ``database``.
"""

from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import delete, insert, select, text, update

from .database import Database, bookings, channel_connections, channel_sync_logs
from .models import (
    Booking,
    BookingStatus,
    Connection,
    ConnectionStatusUpdate,
    ConnectionType,
    Platform,
    SyncLog,
    SyncStatus,
    SyncType,
    utc_now,
)
from .stores import BookingStore, BookingTransaction, ConnectionStore, PropertyLocks, SyncLogStore


def _to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to UTC before writing so stored values compare correctly."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo; everything is stored as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


STATUS_COLUMNS = ("last_sync_at", "last_sync_status", "last_sync_message")


def _connection_values(connection: Connection) -> Dict[str, Any]:
    return {
        "id": connection.id,
        "property_id": connection.property_id,
        "platform": connection.platform.value,
        "connection_type": connection.connection_type.value,
        "ical_url": connection.ical_url,
        "api_key": connection.api_key,
        "account_id": connection.account_id,
        "external_property_id": connection.external_property_id,
        "auto_sync_enabled": connection.auto_sync_enabled,
        "sync_interval_minutes": connection.sync_interval_minutes,
        "enabled": connection.enabled,
        "last_sync_at": _to_utc(connection.last_sync_at),
        "last_sync_status": connection.last_sync_status.value if connection.last_sync_status else None,
        "last_sync_message": connection.last_sync_message,
        "created_at": _to_utc(connection.created_at),
        "updated_at": _to_utc(connection.updated_at),
    }


def _row_to_connection(row) -> Connection:
    return Connection(
        id=row.id,
        property_id=row.property_id,
        platform=Platform(row.platform),
        connection_type=ConnectionType(row.connection_type),
        ical_url=row.ical_url,
        api_key=row.api_key,
        account_id=row.account_id,
        external_property_id=row.external_property_id,
        auto_sync_enabled=row.auto_sync_enabled,
        sync_interval_minutes=row.sync_interval_minutes,
        enabled=row.enabled,
        last_sync_at=_from_db(row.last_sync_at),
        last_sync_status=SyncStatus(row.last_sync_status) if row.last_sync_status else None,
        last_sync_message=row.last_sync_message,
        created_at=_from_db(row.created_at),
        updated_at=_from_db(row.updated_at)
    )


class SqlConnectionStore(ConnectionStore):

    def __init__(self, db: Database):
        self.db = db

    async def list_connections(self, property_id: Optional[str] = None) -> List[Connection]:
        query = select(channel_connections).order_by(
            channel_connections.c.created_at.desc(),
            channel_connections.c.id.desc()
        )
        if property_id is not None:
            query = query.where(channel_connections.c.property_id == property_id)

        async with self.db.session() as session:
            result = await session.execute(query)
            return [_row_to_connection(row) for row in result.fetchall()]

    async def get_connection(self, connection_id: str) -> Optional[Connection]:
        async with self.db.session() as session:
            result = await session.execute(
                select(channel_connections).where(channel_connections.c.id == connection_id)
            )
            row = result.first()
        return _row_to_connection(row) if row else None

    async def add_connection(self, connection: Connection) -> Connection:
        async with self.db.session() as session:
            await session.execute(insert(channel_connections).values(**_connection_values(connection)))
        return connection

    async def save_connection(self, connection: Connection) -> Connection:
        connection = replace(connection, updated_at=utc_now())
        values = _connection_values(connection)
        values.pop("id")
        # Status fields belong to the sync run
        for column in STATUS_COLUMNS:
            values.pop(column)
        async with self.db.session() as session:
            await session.execute(
                update(channel_connections)
                .where(channel_connections.c.id == connection.id)
                .values(**values)
            )
        return await self.get_connection(connection.id)

    async def delete_connection(self, connection_id: str) -> bool:
        async with self.db.session() as session:
            result = await session.execute(
                delete(channel_connections).where(channel_connections.c.id == connection_id)
            )
        return result.rowcount > 0

    async def update_connection_status(
        self,
        connection_id: str,
        status: ConnectionStatusUpdate
    ) -> None:
        async with self.db.session() as session:
            await session.execute(
                update(channel_connections)
                .where(channel_connections.c.id == connection_id)
                .values(
                    last_sync_at=_to_utc(status.last_sync_at),
                    last_sync_status=status.last_sync_status.value,
                    last_sync_message=status.last_sync_message
                )
            )


# =============================================================================
# SYNC LOGS
# =============================================================================

def _sync_log_values(log: SyncLog) -> Dict[str, Any]:
    return {
        "id": log.id,
        "connection_id": log.connection_id,
        "property_id": log.property_id,
        "platform": log.platform.value,
        "sync_type": log.sync_type.value,
        "status": log.status.value,
        "added": log.added,
        "updated": log.updated,
        "errors": log.errors,
        "message": log.message,
        "started_at": _to_utc(log.started_at),
        "completed_at": _to_utc(log.completed_at),
    }


def _row_to_sync_log(row) -> SyncLog:
    return SyncLog(
        id=row.id,
        connection_id=row.connection_id,
        property_id=row.property_id,
        platform=Platform(row.platform),
        sync_type=SyncType(row.sync_type),
        status=SyncStatus(row.status),
        started_at=_from_db(row.started_at),
        completed_at=_from_db(row.completed_at),
        added=row.added,
        updated=row.updated,
        errors=row.errors,
        message=row.message
    )


class SqlSyncLogStore(SyncLogStore):

    def __init__(self, db: Database):
        self.db = db

    async def list_sync_logs(
        self,
        connection_id: Optional[str] = None,
        limit: int = 50
    ) -> List[SyncLog]:
        query = (
            select(channel_sync_logs)
            .order_by(channel_sync_logs.c.started_at.desc(), channel_sync_logs.c.id.desc())
            .limit(limit)
        )
        if connection_id is not None:
            query = query.where(channel_sync_logs.c.connection_id == connection_id)

        async with self.db.session() as session:
            result = await session.execute(query)
            return [_row_to_sync_log(row) for row in result.fetchall()]

    async def list_sync_logs_since(self, since: datetime) -> List[SyncLog]:
        async with self.db.session() as session:
            result = await session.execute(
                select(channel_sync_logs).where(channel_sync_logs.c.started_at >= _to_utc(since))
            )
            return [_row_to_sync_log(row) for row in result.fetchall()]

    async def purge_sync_logs(self, connection_id: str) -> int:
        async with self.db.session() as session:
            result = await session.execute(
                delete(channel_sync_logs).where(channel_sync_logs.c.connection_id == connection_id)
            )
        return result.rowcount


# =============================================================================
# BOOKINGS
# =============================================================================

def _booking_values(booking: Booking) -> Dict[str, Any]:
    return {
        "id": booking.id,
        "property_id": booking.property_id,
        "platform": booking.platform.value,
        "external_uid": booking.external_uid,
        "start_date": booking.start_date,
        "end_date": booking.end_date,
        "status": booking.status.value,
        "guest_name": booking.guest_name,
    }


def _row_to_booking(row) -> Booking:
    return Booking(
        id=row.id,
        property_id=row.property_id,
        platform=Platform(row.platform),
        external_uid=row.external_uid,
        start_date=row.start_date,
        end_date=row.end_date,
        status=BookingStatus(row.status),
        guest_name=row.guest_name
    )


def _bookings_query(property_id: str):
    return (
        select(bookings)
        .where(bookings.c.property_id == property_id)
        .order_by(bookings.c.start_date, bookings.c.id)
    )


class _SqlTransaction(BookingTransaction):

    def __init__(self, session):
        self.session = session

    async def get_bookings_for_property(self, property_id: str) -> List[Booking]:
        result = await self.session.execute(_bookings_query(property_id))
        return [_row_to_booking(row) for row in result.fetchall()]

    async def upsert_booking(self, booking: Booking) -> Booking:
        if booking.id is not None:
            values = _booking_values(booking)
            values.pop("id")
            result = await self.session.execute(
                update(bookings).where(bookings.c.id == booking.id).values(**values)
            )
            if result.rowcount:
                return booking
        else:
            booking = replace(booking, id=str(uuid4()))

        await self.session.execute(insert(bookings).values(**_booking_values(booking)))
        return booking

    async def append_sync_log(self, log: SyncLog) -> SyncLog:
        await self.session.execute(insert(channel_sync_logs).values(**_sync_log_values(log)))
        return log


class SqlBookingStore(BookingStore):
    """
    Bookings table access.

    Property-scoped transactions are serialised per process with an asyncio
    lock; on PostgreSQL a transaction-level advisory lock extends this to
    every process sharing the database.
    """

    def __init__(self, db: Database):
        self.db = db
        self._property_locks = PropertyLocks()

    async def get_bookings_for_property(self, property_id: str) -> List[Booking]:
        async with self.db.session() as session:
            result = await session.execute(_bookings_query(property_id))
            return [_row_to_booking(row) for row in result.fetchall()]

    @asynccontextmanager
    async def transaction(self, property_id: Optional[str] = None):
        async with self._property_locks.hold(property_id):
            async with self.db.session() as session:
                if property_id is not None and self.db.engine.dialect.name == "postgresql":
                    await session.execute(
                        text("SELECT pg_advisory_xact_lock(hashtext(:property_id))"),
                        {"property_id": property_id}
                    )
                yield _SqlTransaction(session)
