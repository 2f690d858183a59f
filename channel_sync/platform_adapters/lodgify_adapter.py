"""
Lodgify Channel Adapter
=======================

Platform adapter for the Lodgify REST API.

API Documentation: https://docs.lodgify.com/
Auth: API key in the ``X-ApiKey`` header
Pagination: ``page`` / ``size`` query parameters
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

import httpx
import structlog

from ..config import settings
from ..models import Connection, EventStatus, ExternalEvent, ParseWarning, Platform
from .base_adapter import (
    AdapterError,
    AuthorizationError,
    ChannelAdapter,
    FetchResult,
    MalformedResponseError,
)

logger = structlog.get_logger(__name__)

RESERVATIONS_ENDPOINT = "/v2/reservations"
PROPERTIES_ENDPOINT = "/v2/properties"

# Lodgify statuses that do not occupy the calendar
DROPPED_STATUSES = {"declined", "cancelled", "canceled"}


@dataclass
class TestKeyResult:
    """Outcome of validating a Lodgify API key."""
    __test__ = False

    valid: bool
    message: str
    properties: List[Dict[str, Any]] = field(default_factory=list)


class LodgifyAdapter(ChannelAdapter):
    """
    Adapter for the Lodgify API.

    Endpoints:
    - GET /v2/reservations - Paginated reservations, optionally per property
    - GET /v2/properties - Properties visible to the API key
    """

    def __init__(
        self,
        base_url: str = None,
        page_size: int = None,
        max_pages: int = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        super().__init__(
            timeout=timeout or settings.LODGIFY_TIMEOUT_SECONDS,
            transport=transport
        )
        self._base_url = (base_url or settings.LODGIFY_BASE_URL).rstrip("/")
        self.page_size = page_size or settings.LODGIFY_PAGE_SIZE
        self.max_pages = max_pages or settings.LODGIFY_MAX_PAGES

    @property
    def platform(self) -> Platform:
        return Platform.LODGIFY

    @property
    def base_url(self) -> str:
        return self._base_url

    @staticmethod
    def auth_headers(api_key: str) -> Dict[str, str]:
        return {"X-ApiKey": api_key, "Accept": "application/json"}

    # =========================================================================
    # RESERVATIONS
    # =========================================================================

    async def fetch(self, connection: Connection) -> FetchResult:
        """
        Get reservations from Lodgify.

        Pages until an empty or short page, or until the page ceiling.
        """
        if not connection.api_key:
            raise AuthorizationError("Lodgify API key not configured")

        headers = self.auth_headers(connection.api_key)
        params: Dict[str, Any] = {"size": self.page_size}
        if connection.external_property_id:
            params["property_id"] = connection.external_property_id

        result = FetchResult()
        page = 1

        while True:
            params["page"] = page
            response = await self._make_request(
                method="GET",
                endpoint=RESERVATIONS_ENDPOINT,
                params=params,
                headers=headers
            )
            items = self._items(response)

            for item in items:
                try:
                    event = self._map_reservation(item)
                except (KeyError, TypeError, ValueError) as e:
                    result.warnings.append(ParseWarning(
                        "malformed_event",
                        f"reservation {self._item_id(item)}: {e}"
                    ))
                    continue
                if isinstance(event, ParseWarning):
                    result.warnings.append(event)
                elif event is not None:
                    result.events.append(event)

            if not items or len(items) < self.page_size:
                break

            if page >= self.max_pages:
                logger.warning(
                    "Lodgify pagination ceiling reached",
                    connection_id=connection.id,
                    max_pages=self.max_pages
                )
                break

            page += 1

        self._log_fetch(connection, result, pages=page)
        return result

    def _items(self, response: httpx.Response) -> List[Dict[str, Any]]:
        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"Lodgify returned invalid JSON: {e}",
                status_code=response.status_code
            )

        if isinstance(data, list):
            items = data
        elif isinstance(data, dict):
            items = data.get("items") or []
        else:
            items = None

        if not isinstance(items, list):
            raise MalformedResponseError(
                "Lodgify response has no reservation list",
                status_code=response.status_code
            )
        return items

    @staticmethod
    def _item_id(item: Any) -> str:
        if isinstance(item, dict):
            return str(item.get("id", "?"))
        return "?"

    def _map_reservation(self, reservation: Dict[str, Any]):
        """
        Map a Lodgify reservation to an ExternalEvent.

        Returns None for reservations that no longer occupy the calendar and
        a ParseWarning for unknown statuses.
        """
        reservation_id = reservation["id"]
        raw_status = str(reservation.get("status") or "Booked")

        if raw_status.lower() in DROPPED_STATUSES:
            return None

        status = self._map_status(raw_status)
        if status is None:
            return ParseWarning(
                "unknown_status",
                f"reservation {reservation_id}: unknown Lodgify status {raw_status!r}"
            )

        arrival = reservation.get("arrival") or reservation.get("check_in")
        departure = reservation.get("departure") or reservation.get("check_out")
        if not arrival or not departure:
            raise ValueError("missing arrival or departure")

        start_date = date.fromisoformat(str(arrival)[:10])
        end_date = date.fromisoformat(str(departure)[:10])
        if end_date <= start_date:
            raise ValueError(f"departure {end_date} is not after arrival {start_date}")

        guest = reservation.get("guest") or {}
        guest_name = (guest.get("name") if isinstance(guest, dict) else None) or reservation.get("guest_name")

        return ExternalEvent(
            external_uid=f"lodgify-{reservation_id}",
            start_date=start_date,
            end_date=end_date,
            status=status,
            guest_name=guest_name or None,
            summary=guest_name or f"Lodgify reservation {reservation_id}",
            raw=str(reservation)[:2000]
        )

    def _map_status(self, lodgify_status: str) -> Optional[EventStatus]:
        """Map Lodgify status to EventStatus."""
        status_map = {
            "booked": EventStatus.BOOKED,
            "confirmed": EventStatus.BOOKED,
            "tentative": EventStatus.TENTATIVE,
            "open": EventStatus.TENTATIVE,
            "enquiry": EventStatus.TENTATIVE,
            "inquiry": EventStatus.TENTATIVE,
            "blocked": EventStatus.BLOCKED,
            "unavailable": EventStatus.BLOCKED,
            "closed": EventStatus.BLOCKED,
        }
        return status_map.get(lodgify_status.lower())

    # =========================================================================
    # KEY VALIDATION
    # =========================================================================

    async def test_key(self, api_key: str) -> TestKeyResult:
        """
        Validate an API key and list the properties it can see.

        Never raises; failures are reported in the result.
        """
        if not api_key or not api_key.strip():
            return TestKeyResult(valid=False, message="API key is empty")

        try:
            response = await self._make_request(
                method="GET",
                endpoint=PROPERTIES_ENDPOINT,
                headers=self.auth_headers(api_key.strip())
            )
            items = self._items(response)
        except AdapterError as e:
            if e.status_code is not None:
                message = f"API returned {e.status_code}"
            else:
                message = e.message
            logger.info("Lodgify key rejected", reason=message)
            return TestKeyResult(valid=False, message=message)

        properties = [
            {"id": item.get("id"), "name": item.get("name")}
            for item in items
            if isinstance(item, dict)
        ]
        return TestKeyResult(
            valid=True,
            message=f"Connected! Found {len(properties)} properties",
            properties=properties
        )
