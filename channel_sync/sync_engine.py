"""
Channel Sync Engine
===================

Runs one synchronization for one connection: lock, fetch, reconcile,
persist, log. Every run ends with exactly one SyncLog, including runs that
fail in the adapter or while persisting.

Run states:
    idle -> locking -> fetching -> reconciling -> persisting -> log_written
                          |                           |
                          +---------> failed <--------+
"""

import asyncio
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional
from uuid import uuid4

import structlog

from .config import settings
from .exceptions import (
    BusyError,
    ConnectionDisabledError,
    ConnectionNotFoundError,
    PersistenceError,
    UnsupportedConnectionError,
)
from .locks import LockRegistry
from .models import (
    Connection,
    ConnectionStatusUpdate,
    ConnectionType,
    ParseWarning,
    Platform,
    SyncLog,
    SyncResult,
    SyncStatus,
    SyncType,
    utc_now,
)
from .platform_adapters import (
    AdapterError,
    ChannelAdapter,
    FetchResult,
    IcalAdapter,
    LodgifyAdapter,
    TransportError,
)
from .reconciler import Decisions, reconcile
from .stats import SyncStatsAggregator
from .stores import BookingStore, ConnectionStore

logger = structlog.get_logger(__name__)


class RunState(str, Enum):
    IDLE = "idle"
    LOCKING = "locking"
    FETCHING = "fetching"
    RECONCILING = "reconciling"
    PERSISTING = "persisting"
    LOG_WRITTEN = "log_written"
    FAILED = "failed"


# =============================================================================
# ADAPTER FACTORY
# =============================================================================

class AdapterFactory:
    """Factory for creating platform-specific adapters."""

    @staticmethod
    def create_adapter(connection: Connection) -> ChannelAdapter:
        """
        Create an adapter instance for the given connection.

        Raises:
            UnsupportedConnectionError: If no adapter can pull this connection
        """
        if connection.connection_type == ConnectionType.ICAL:
            return IcalAdapter()

        adapters = {
            Platform.LODGIFY: LodgifyAdapter,
        }

        adapter_class = adapters.get(connection.platform)
        if not adapter_class:
            raise UnsupportedConnectionError(
                f"API sync for {connection.platform.value} requires partner access. "
                "Use iCal sync instead."
            )

        return adapter_class()


# =============================================================================
# RUN STATUS
# =============================================================================

def run_status(conflicts: int, warnings: int, applied: int) -> SyncStatus:
    """
    Status of a run whose fetch succeeded.

    Conflicts always make a run partial. Warnings alone only do so when the
    run also applied changes; a quiet feed with skipped entries is a success.
    """
    if conflicts:
        return SyncStatus.PARTIAL
    if warnings and applied:
        return SyncStatus.PARTIAL
    return SyncStatus.SUCCESS


def summarize(platform: Platform, decisions: Decisions, warnings: List[ParseWarning]) -> str:
    """Human-readable run summary stored on the log and the connection."""
    parts = [
        f"Sync {platform.value}: +{len(decisions.adds)} added, "
        f"{len(decisions.updates)} updated"
    ]
    parts.extend(conflict.describe() for conflict in decisions.conflicts)

    if warnings:
        reasons = Counter(w.reason for w in warnings)
        detail = ", ".join(f"{reason}: {count}" for reason, count in sorted(reasons.items()))
        parts.append(f"{len(warnings)} entries skipped ({detail})")

    if decisions.stale:
        parts.append(f"{len(decisions.stale)} bookings no longer in feed")

    return "; ".join(parts)


class _Run:
    """Bookkeeping for one run: state, timestamps and a bound logger."""

    def __init__(self, connection: Connection, sync_type: SyncType):
        self.connection = connection
        self.sync_type = sync_type
        self.state = RunState.IDLE
        self.started_at = utc_now()
        self.log = logger.bind(
            connection_id=connection.id,
            property_id=connection.property_id,
            platform=connection.platform.value,
            sync_type=sync_type.value
        )

    def transition(self, state: RunState) -> None:
        self.log.debug("Sync state changed", previous=self.state.value, state=state.value)
        self.state = state

    def new_log(
        self,
        status: SyncStatus,
        added: int = 0,
        updated: int = 0,
        errors: int = 0,
        message: Optional[str] = None
    ) -> SyncLog:
        return SyncLog(
            id=str(uuid4()),
            connection_id=self.connection.id,
            property_id=self.connection.property_id,
            platform=self.connection.platform,
            sync_type=self.sync_type,
            status=status,
            started_at=self.started_at,
            completed_at=utc_now(),
            added=added,
            updated=updated,
            errors=errors,
            message=message
        )


@dataclass(frozen=True)
class _Applied:
    """What a committed run wrote."""
    decisions: Decisions
    warnings: List[ParseWarning]
    log: SyncLog


# =============================================================================
# COORDINATOR
# =============================================================================

class SyncCoordinator:
    """Executes sync runs; at most one per connection at any time."""

    def __init__(
        self,
        connections: ConnectionStore,
        bookings: BookingStore,
        locks: LockRegistry,
        stats: Optional[SyncStatsAggregator] = None,
        adapter_factory: Callable[[Connection], ChannelAdapter] = None,
        fetch_timeout: float = None,
        persist_timeout: float = None
    ):
        self.connections = connections
        self.bookings = bookings
        self.locks = locks
        self.stats = stats
        self.adapter_factory = adapter_factory or AdapterFactory.create_adapter
        self.fetch_timeout = fetch_timeout or settings.SYNC_FETCH_TIMEOUT_SECONDS
        self.persist_timeout = persist_timeout or settings.SYNC_PERSIST_TIMEOUT_SECONDS

    async def run_sync(
        self,
        connection_id: str,
        sync_type: SyncType = SyncType.MANUAL
    ) -> SyncResult:
        """
        Run one sync for a connection.

        Args:
            connection_id: Connection to sync
            sync_type: What triggered the run

        Returns:
            SyncResult, also for runs that ended in error

        Raises:
            ConnectionNotFoundError: Unknown connection id
            ConnectionDisabledError: Connection is disabled; nothing is written
            BusyError: Another run holds the connection's lock
        """
        connection = await self.connections.get_connection(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(connection_id)
        if not connection.enabled:
            raise ConnectionDisabledError(connection_id)

        run = _Run(connection, sync_type)
        run.transition(RunState.LOCKING)

        if not await self.locks.try_acquire(connection_id):
            run.log.info("Sync skipped, connection busy")
            raise BusyError(connection_id)

        try:
            return await self._run_locked(run)
        finally:
            await self.locks.release(connection_id)

    async def _run_locked(self, run: _Run) -> SyncResult:
        connection = run.connection
        run.log.info("Sync started")

        run.transition(RunState.FETCHING)
        try:
            fetched = await self._fetch(connection)
        except (AdapterError, UnsupportedConnectionError) as e:
            run.log.warning(
                "Sync fetch failed",
                error=e.message,
                error_kind=getattr(e, "kind", "unsupported"),
                retryable=getattr(e, "retryable", False)
            )
            return await self._fail(run, e.message)

        try:
            applied = await self._persist(run, fetched)
        except PersistenceError as e:
            run.log.error("Sync persistence failed, changes rolled back", error=e.message)
            return await self._fail(run, e.message)

        decisions, warnings, log = applied.decisions, applied.warnings, applied.log
        for conflict in decisions.conflicts:
            run.log.warning("Booking conflict detected", detail=conflict.describe())
        if decisions.stale:
            run.log.warning(
                "Bookings missing from feed",
                booking_ids=[b.id for b in decisions.stale]
            )

        run.transition(RunState.LOG_WRITTEN)
        await self._finish(run, log)

        conflicts = len(decisions.conflicts)
        run.log.info(
            "Sync completed",
            status=log.status.value,
            added=log.added,
            updated=log.updated,
            conflicts=conflicts,
            warnings=len(warnings),
            unchanged=len(decisions.noops)
        )

        return SyncResult(
            connection_id=connection.id,
            status=log.status,
            added=log.added,
            updated=log.updated,
            errors=log.errors,
            conflicts=conflicts,
            warnings=len(warnings),
            message=log.message,
            log_id=log.id
        )

    async def _fetch(self, connection: Connection) -> FetchResult:
        adapter = self.adapter_factory(connection)
        async with adapter:
            try:
                return await asyncio.wait_for(adapter.fetch(connection), timeout=self.fetch_timeout)
            except asyncio.TimeoutError:
                raise TransportError(f"Fetch timed out after {self.fetch_timeout:g}s")

    async def _persist(self, run: _Run, fetched: FetchResult) -> _Applied:
        """
        Reconcile and write inside one property-scoped transaction.

        Raises:
            PersistenceError: The transaction failed or timed out; nothing was written
        """
        try:
            return await asyncio.wait_for(self._apply(run, fetched), timeout=self.persist_timeout)
        except asyncio.TimeoutError:
            raise PersistenceError(
                f"Persistence failed: timed out after {self.persist_timeout:g}s"
            )
        except Exception as e:
            raise PersistenceError(f"Persistence failed: {str(e) or type(e).__name__}") from e

    async def _apply(self, run: _Run, fetched: FetchResult) -> _Applied:
        connection = run.connection
        async with self.bookings.transaction(connection.property_id) as txn:
            run.transition(RunState.RECONCILING)
            existing = await txn.get_bookings_for_property(connection.property_id)
            decisions = reconcile(
                existing,
                fetched.events,
                property_id=connection.property_id,
                platform=connection.platform
            )
            warnings = sorted(
                list(fetched.warnings) + decisions.warnings,
                key=lambda w: (w.reason, w.detail)
            )
            conflicts = len(decisions.conflicts)
            log = run.new_log(
                status=run_status(conflicts, len(warnings), decisions.applied),
                added=len(decisions.adds),
                updated=len(decisions.updates),
                errors=conflicts + len(warnings),
                message=summarize(connection.platform, decisions, warnings)
            )

            run.transition(RunState.PERSISTING)
            for booking in decisions.adds:
                await txn.upsert_booking(booking)
            for update in decisions.updates:
                await txn.upsert_booking(update.after)
            await txn.append_sync_log(log)

        return _Applied(decisions, warnings, log)

    async def _fail(self, run: _Run, message: str) -> SyncResult:
        """Write the error log for a run that applied nothing."""
        run.transition(RunState.FAILED)
        log = run.new_log(status=SyncStatus.ERROR, message=message)

        async with self.bookings.transaction() as txn:
            await txn.append_sync_log(log)

        await self._finish(run, log)
        run.log.info("Sync failed", message=message)

        return SyncResult(
            connection_id=run.connection.id,
            status=SyncStatus.ERROR,
            message=message,
            log_id=log.id
        )

    async def _finish(self, run: _Run, log: SyncLog) -> None:
        await self.connections.update_connection_status(
            run.connection.id,
            ConnectionStatusUpdate(
                last_sync_at=log.completed_at,
                last_sync_status=log.status,
                last_sync_message=log.message
            )
        )
        if self.stats is not None:
            self.stats.observe(log)
