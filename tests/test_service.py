"""
Tests for the channel service
"""

import asyncio

import httpx
import pytest

from channel_sync.exceptions import (
    BusyError,
    ConnectionNotFoundError,
    ConnectionValidationError,
    DuplicateConnectionError,
)
from channel_sync.main import build_service
from channel_sync.models import ConnectionType, Platform, SyncStatus
from channel_sync.platform_adapters import LodgifyAdapter
from channel_sync.schemas import ConnectionCreate, ConnectionUpdate
from tests.conftest import FakeAdapter, make_event


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def lodgify_requests():
    return []


@pytest.fixture
def service(adapter, lodgify_requests):
    def handler(request: httpx.Request) -> httpx.Response:
        lodgify_requests.append(request)
        return httpx.Response(401, json={"message": "Unauthorized"})

    return build_service(
        adapter_factory=lambda connection: adapter,
        lodgify_factory=lambda: LodgifyAdapter(transport=httpx.MockTransport(handler))
    )


def ical_payload(**overrides) -> ConnectionCreate:
    values = dict(
        property_id="prop-1",
        platform=Platform.AIRBNB,
        ical_url="https://www.airbnb.com/calendar/ical/1.ics?s=abc",
    )
    values.update(overrides)
    return ConnectionCreate(**values)


class TestConnections:

    @pytest.mark.asyncio
    async def test_create_normalizes_webcal_url(self, service):
        connection = await service.create_connection(
            ical_payload(ical_url="  webcal://calendar.example.com/feed.ics ")
        )

        assert connection.ical_url == "https://calendar.example.com/feed.ics"
        assert connection.enabled is True
        assert connection.sync_interval_minutes == 60
        assert await service.get_connection(connection.id) == connection

    @pytest.mark.asyncio
    async def test_ical_connection_requires_url(self, service):
        with pytest.raises(ConnectionValidationError):
            await service.create_connection(ical_payload(ical_url=None))

    @pytest.mark.asyncio
    async def test_api_connection_requires_key(self, service):
        payload = ical_payload(
            platform=Platform.LODGIFY,
            connection_type=ConnectionType.API,
            ical_url=None
        )
        with pytest.raises(ConnectionValidationError):
            await service.create_connection(payload)

    @pytest.mark.asyncio
    async def test_second_enabled_connection_for_same_listing_is_rejected(self, service):
        first = await service.create_connection(ical_payload())

        with pytest.raises(DuplicateConnectionError) as excinfo:
            await service.create_connection(ical_payload())

        assert excinfo.value.existing_id == first.id

    @pytest.mark.asyncio
    async def test_disabled_duplicate_is_allowed_but_cannot_be_enabled(self, service):
        await service.create_connection(ical_payload())
        spare = await service.create_connection(ical_payload(enabled=False))

        with pytest.raises(DuplicateConnectionError):
            await service.update_connection(spare.id, ConnectionUpdate(enabled=True))

    @pytest.mark.asyncio
    async def test_different_external_listing_is_not_a_duplicate(self, service):
        await service.create_connection(ical_payload(external_property_id="1"))
        second = await service.create_connection(ical_payload(external_property_id="2"))

        assert len(await service.list_connections("prop-1")) == 2
        assert second.external_property_id == "2"

    @pytest.mark.asyncio
    async def test_partial_update(self, service):
        connection = await service.create_connection(ical_payload())

        updated = await service.update_connection(
            connection.id,
            ConnectionUpdate(auto_sync_enabled=True, sync_interval_minutes=30)
        )

        assert updated.auto_sync_enabled is True
        assert updated.sync_interval_minutes == 30
        assert updated.ical_url == connection.ical_url

    @pytest.mark.asyncio
    async def test_update_cannot_clear_required_url(self, service):
        connection = await service.create_connection(ical_payload())

        with pytest.raises(ConnectionValidationError):
            await service.update_connection(connection.id, ConnectionUpdate(ical_url=None))

    @pytest.mark.asyncio
    async def test_delete_purges_sync_history(self, service, adapter):
        connection = await service.create_connection(ical_payload())
        adapter.script(connection.id, make_event("2025-06-01", "2025-06-05", uid="a"))
        await service.sync_one(connection.id)
        assert len(await service.get_sync_logs(connection.id)) == 1

        await service.delete_connection(connection.id)

        assert await service.get_sync_logs(connection.id) == []
        with pytest.raises(ConnectionNotFoundError):
            await service.get_connection(connection.id)

    @pytest.mark.asyncio
    async def test_update_keeps_status_written_by_concurrent_run(self, service, adapter):
        connection = await service.create_connection(ical_payload())
        adapter.script(connection.id, make_event("2025-06-01", "2025-06-05", uid="a"))
        adapter.gate = asyncio.Event()
        run = asyncio.create_task(service.sync_one(connection.id))
        while not adapter.calls:
            await asyncio.sleep(0)

        save_connection = service.connections.save_connection

        async def save_after_run_finished(updated):
            adapter.gate.set()
            await run
            return await save_connection(updated)

        service.connections.save_connection = save_after_run_finished
        updated = await service.update_connection(
            connection.id,
            ConnectionUpdate(sync_interval_minutes=30)
        )

        stored = await service.get_connection(connection.id)
        assert stored.sync_interval_minutes == 30
        assert stored.last_sync_status == SyncStatus.SUCCESS
        assert stored.last_sync_at is not None
        assert updated.last_sync_status == SyncStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_delete_is_refused_while_a_run_is_in_flight(self, service, adapter):
        connection = await service.create_connection(ical_payload())
        adapter.gate = asyncio.Event()
        run = asyncio.create_task(service.sync_one(connection.id))
        while not adapter.calls:
            await asyncio.sleep(0)

        with pytest.raises(BusyError):
            await service.delete_connection(connection.id)

        adapter.gate.set()
        await run
        assert len(await service.get_sync_logs(connection.id)) == 1

        await service.delete_connection(connection.id)
        assert await service.get_sync_logs(connection.id) == []

    @pytest.mark.asyncio
    async def test_delete_unknown_connection(self, service):
        with pytest.raises(ConnectionNotFoundError):
            await service.delete_connection("missing")


class TestSyncOperations:

    @pytest.mark.asyncio
    async def test_sync_logs_are_newest_first_and_limited(self, service, adapter):
        connection = await service.create_connection(ical_payload())
        for _ in range(3):
            await service.sync_one(connection.id)

        logs = await service.get_sync_logs(limit=2)

        assert len(logs) == 2
        assert logs[0].started_at >= logs[1].started_at

    @pytest.mark.asyncio
    async def test_sync_all_and_stats(self, service, adapter):
        first = await service.create_connection(ical_payload(external_property_id="1"))
        await service.create_connection(ical_payload(external_property_id="2"))
        adapter.script(first.id, make_event("2025-06-01", "2025-06-05", uid="a"))

        bulk = await service.sync_all()
        await service.scheduler.pool.shutdown()
        stats = await service.get_stats()

        assert len(bulk.results) == 2
        assert all(r.status == SyncStatus.SUCCESS for r in bulk.results)
        assert stats.total_connections == 2
        assert stats.synced_today == 2
        assert stats.runs_today == 2


class TestLodgifyKey:

    @pytest.mark.asyncio
    async def test_bad_key_is_reported_without_touching_stores(self, service, lodgify_requests):
        result = await service.test_lodgify_key("bad-key")

        assert result.valid is False
        assert result.message == "API returned 401"
        assert lodgify_requests[0].headers["X-ApiKey"] == "bad-key"
        assert await service.list_connections() == []
        assert await service.get_sync_logs() == []
