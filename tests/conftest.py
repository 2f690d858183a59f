"""
Shared fixtures and builders for the channel sync tests
"""

import asyncio
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Union

import pytest

from channel_sync.locks import InMemoryLockRegistry
from channel_sync.memory_stores import (
    InMemoryBookingStore,
    InMemoryConnectionStore,
    InMemorySyncLogStore,
)
from channel_sync.models import (
    Booking,
    BookingStatus,
    Connection,
    EventStatus,
    ExternalEvent,
    Platform,
)
from channel_sync.platform_adapters import ChannelAdapter, FetchResult
from channel_sync.stats import SyncStatsAggregator
from channel_sync.sync_engine import SyncCoordinator

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def d(value: str) -> date:
    return date.fromisoformat(value)


def make_connection(**overrides) -> Connection:
    values = dict(
        id="conn-airbnb",
        property_id="prop-1",
        platform=Platform.AIRBNB,
        ical_url="https://www.airbnb.com/calendar/ical/1234.ics?s=secret",
    )
    values.update(overrides)
    return Connection(**values)


def make_event(
    start: str,
    end: str,
    uid: Optional[str] = None,
    status: EventStatus = EventStatus.BOOKED,
    summary: Optional[str] = None,
    guest_name: Optional[str] = None
) -> ExternalEvent:
    return ExternalEvent(
        start_date=d(start),
        end_date=d(end),
        status=status,
        external_uid=uid,
        summary=summary,
        guest_name=guest_name
    )


def make_booking(
    start: str,
    end: str,
    platform: Platform = Platform.AIRBNB,
    uid: Optional[str] = None,
    booking_id: Optional[str] = None,
    status: BookingStatus = BookingStatus.BOOKED,
    property_id: str = "prop-1"
) -> Booking:
    return Booking(
        id=booking_id,
        property_id=property_id,
        platform=platform,
        start_date=d(start),
        end_date=d(end),
        status=status,
        external_uid=uid
    )


class FakeAdapter(ChannelAdapter):
    """Returns a scripted FetchResult (or raises) per connection id."""

    def __init__(self, delay: float = 0):
        super().__init__()
        self.results: Dict[str, Union[FetchResult, Exception]] = {}
        self.gate: Optional[asyncio.Event] = None
        self.delay = delay
        self.calls: List[str] = []
        self.active = 0
        self.peak_active = 0

    @property
    def platform(self):
        return None

    def script(self, connection_id: str, *events: ExternalEvent, warnings=None) -> None:
        self.results[connection_id] = FetchResult(events=list(events), warnings=list(warnings or []))

    async def fetch(self, connection: Connection) -> FetchResult:
        self.calls.append(connection.id)
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.results.get(connection.id, FetchResult())
            if isinstance(outcome, Exception):
                raise outcome
            return FetchResult(events=list(outcome.events), warnings=list(outcome.warnings))
        finally:
            self.active -= 1


class Harness:
    """In-memory stores, locks and a coordinator driven by a FakeAdapter."""

    def __init__(self, booking_store_class=InMemoryBookingStore):
        self.sync_logs = InMemorySyncLogStore()
        self.connections = InMemoryConnectionStore()
        self.bookings = booking_store_class(self.sync_logs)
        self.locks = InMemoryLockRegistry()
        self.stats = SyncStatsAggregator(self.connections, self.sync_logs)
        self.adapter = FakeAdapter()
        self.coordinator = SyncCoordinator(
            connections=self.connections,
            bookings=self.bookings,
            locks=self.locks,
            stats=self.stats,
            adapter_factory=lambda connection: self.adapter,
            fetch_timeout=5,
            persist_timeout=5
        )

    async def add(self, connection: Connection) -> Connection:
        return await self.connections.add_connection(connection)

    async def seed(self, *bookings: Booking) -> List[Booking]:
        stored = []
        async with self.bookings.transaction() as txn:
            for booking in bookings:
                stored.append(await txn.upsert_booking(booking))
        return stored

    async def logs(self, connection_id: Optional[str] = None):
        return await self.sync_logs.list_sync_logs(connection_id, limit=1000)


@pytest.fixture
def harness() -> Harness:
    return Harness()
