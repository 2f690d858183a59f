"""
Tests for the Lodgify adapter
"""

import httpx
import pytest

from channel_sync.models import ConnectionType, EventStatus, Platform
from channel_sync.platform_adapters import (
    AuthorizationError,
    LodgifyAdapter,
    MalformedResponseError,
    TransportError,
)
from tests.conftest import d, make_connection


def lodgify_connection(**overrides):
    values = dict(
        id="conn-lodgify",
        platform=Platform.LODGIFY,
        connection_type=ConnectionType.API,
        ical_url=None,
        api_key="test-key",
        external_property_id="4711",
    )
    values.update(overrides)
    return make_connection(**values)


def reservation(reservation_id, arrival, departure, status="Booked", **extra):
    item = {"id": reservation_id, "arrival": arrival, "departure": departure, "status": status}
    item.update(extra)
    return item


class PagedHandler:
    """Serves one list of items per page and records requests."""

    def __init__(self, pages, wrap=False):
        self.pages = pages
        self.wrap = wrap
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        page = int(request.url.params.get("page", "1"))
        items = self.pages[page - 1] if page <= len(self.pages) else []
        return httpx.Response(200, json={"items": items} if self.wrap else items)


def make_adapter(handler, **kwargs) -> LodgifyAdapter:
    return LodgifyAdapter(transport=httpx.MockTransport(handler), **kwargs)


class TestFetch:

    @pytest.mark.asyncio
    async def test_pages_until_short_page(self):
        handler = PagedHandler([
            [reservation(1, "2025-06-01", "2025-06-05", guest={"name": "Ada"}),
             reservation(2, "2025-06-10", "2025-06-12", guest_name="Grace")],
            [reservation(3, "2025-07-01T15:00:00", "2025-07-03T10:00:00", status="Tentative")],
        ])

        async with make_adapter(handler, page_size=2) as adapter:
            result = await adapter.fetch(lodgify_connection())

        assert len(handler.requests) == 2
        first = handler.requests[0]
        assert first.headers["X-ApiKey"] == "test-key"
        assert first.url.path == "/v2/reservations"
        assert first.url.params["property_id"] == "4711"
        assert first.url.params["size"] == "2"
        assert [r.url.params["page"] for r in handler.requests] == ["1", "2"]

        events = {e.external_uid: e for e in result.events}
        assert sorted(events) == ["lodgify-1", "lodgify-2", "lodgify-3"]
        assert events["lodgify-1"].guest_name == "Ada"
        assert events["lodgify-2"].guest_name == "Grace"
        assert events["lodgify-3"].status == EventStatus.TENTATIVE
        assert (events["lodgify-3"].start_date, events["lodgify-3"].end_date) == (
            d("2025-07-01"), d("2025-07-03")
        )
        assert result.warnings == []

    @pytest.mark.asyncio
    async def test_items_wrapper_and_check_in_fallback(self):
        handler = PagedHandler(
            [[{"id": 9, "check_in": "2025-06-01", "check_out": "2025-06-04", "status": "Confirmed"}]],
            wrap=True
        )

        async with make_adapter(handler) as adapter:
            result = await adapter.fetch(lodgify_connection())

        [event] = result.events
        assert event.external_uid == "lodgify-9"
        assert event.status == EventStatus.BOOKED
        assert event.summary == "Lodgify reservation 9"

    @pytest.mark.asyncio
    async def test_status_vocabulary(self):
        handler = PagedHandler([[
            reservation(1, "2025-06-01", "2025-06-03", status="Declined"),
            reservation(2, "2025-06-04", "2025-06-06", status="Cancelled"),
            reservation(3, "2025-06-07", "2025-06-09", status="Open"),
            reservation(4, "2025-06-10", "2025-06-12", status="Closed"),
            reservation(5, "2025-06-13", "2025-06-15", status="Wibble"),
        ]])

        async with make_adapter(handler) as adapter:
            result = await adapter.fetch(lodgify_connection())

        statuses = {e.external_uid: e.status for e in result.events}
        assert statuses == {"lodgify-3": EventStatus.TENTATIVE, "lodgify-4": EventStatus.BLOCKED}
        assert [w.reason for w in result.warnings] == ["unknown_status"]

    @pytest.mark.asyncio
    async def test_malformed_reservation_is_a_warning(self):
        handler = PagedHandler([[
            {"id": 1, "status": "Booked"},
            reservation(2, "2025-06-05", "2025-06-01"),
            reservation(3, "2025-06-10", "2025-06-12"),
        ]])

        async with make_adapter(handler) as adapter:
            result = await adapter.fetch(lodgify_connection())

        assert [e.external_uid for e in result.events] == ["lodgify-3"]
        assert [w.reason for w in result.warnings] == ["malformed_event", "malformed_event"]

    @pytest.mark.asyncio
    async def test_page_ceiling_stops_pagination(self):
        def handler(request: httpx.Request) -> httpx.Response:
            page = int(request.url.params["page"])
            return httpx.Response(200, json=[reservation(page, "2025-06-01", "2025-06-02")])

        async with make_adapter(handler, page_size=1, max_pages=3) as adapter:
            result = await adapter.fetch(lodgify_connection())

        assert len(result.events) == 3

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        adapter = make_adapter(PagedHandler([]))
        with pytest.raises(AuthorizationError):
            await adapter.fetch(lodgify_connection(api_key=None))

    @pytest.mark.asyncio
    async def test_invalid_json_is_malformed(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"<html>maintenance</html>")

        async with make_adapter(handler) as adapter:
            with pytest.raises(MalformedResponseError):
                await adapter.fetch(lodgify_connection())

    @pytest.mark.asyncio
    async def test_server_error_is_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502, text="Bad Gateway")

        async with make_adapter(handler) as adapter:
            with pytest.raises(TransportError) as excinfo:
                await adapter.fetch(lodgify_connection())
        assert excinfo.value.status_code == 502


class TestKeyValidation:

    @pytest.mark.asyncio
    async def test_valid_key_lists_properties(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v2/properties"
            return httpx.Response(200, json=[
                {"id": 1, "name": "Seaside Loft", "address": "Harbour 1"},
                {"id": 2, "name": "Mountain Cabin"},
            ])

        async with make_adapter(handler) as adapter:
            result = await adapter.test_key("good-key")

        assert result.valid is True
        assert result.message == "Connected! Found 2 properties"
        assert result.properties == [
            {"id": 1, "name": "Seaside Loft"},
            {"id": 2, "name": "Mountain Cabin"},
        ]

    @pytest.mark.asyncio
    async def test_rejected_key(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"message": "Unauthorized"})

        async with make_adapter(handler) as adapter:
            result = await adapter.test_key("bad-key")

        assert result.valid is False
        assert result.message == "API returned 401"

    @pytest.mark.asyncio
    async def test_empty_key(self):
        result = await make_adapter(PagedHandler([])).test_key("  ")
        assert result.valid is False
        assert result.message == "API key is empty"

    @pytest.mark.asyncio
    async def test_network_failure_is_reported(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("no route to host", request=request)

        async with make_adapter(handler) as adapter:
            result = await adapter.test_key("some-key")

        assert result.valid is False
        assert "no route to host" in result.message
