"""
iCal Feed Adapter
=================

Pull adapter for the iCal export feeds published by Airbnb, Booking.com,
VRBO and most other distribution platforms.

Feeds are downloaded with a bounded timeout and size cap, then parsed with
``icalendar``. Only ``VEVENT`` blocks with ``DTSTART``, ``DTEND`` or
``DURATION``, ``UID`` and ``SUMMARY`` are used. Platform export feeds emit
one VEVENT per stay, so recurring events are reported as warnings and
skipped, as are individual malformed events.
"""

from datetime import date, datetime, timedelta
from typing import List, Optional
from urllib.parse import urlsplit

import httpx
import structlog
from icalendar import Calendar

from ..config import settings
from ..exceptions import UnsupportedConnectionError
from ..models import Connection, EventStatus, ExternalEvent, ParseWarning
from .base_adapter import (
    ChannelAdapter,
    FetchResult,
    MalformedResponseError,
    TransportError,
)

logger = structlog.get_logger(__name__)

# Summaries platforms use for owner blocks rather than guest stays
BLOCKING_MARKERS = ("not available", "blocked", "closed", "unavailable")

# Summaries that carry no guest name
PLACEHOLDER_SUMMARIES = ("reserved", "booked", "reservation", "external booking")

REQUIRED_PROPERTIES = {"DTSTART", "DTEND", "DURATION"}

RAW_EXCERPT_CHARS = 2000


class EventParseError(Exception):
    """A single VEVENT could not be turned into an ExternalEvent."""

    def __init__(self, reason: str, detail: str):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}")


class IcalAdapter(ChannelAdapter):
    """
    Adapter for iCal (RFC 5545) export feeds.

    One instance serves every iCal connection regardless of platform; the
    feed URL comes from the connection.
    """

    def __init__(
        self,
        timeout: float = None,
        max_bytes: int = None,
        allow_insecure: bool = None,
        user_agent: str = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        super().__init__(
            timeout=timeout or settings.ICAL_FETCH_TIMEOUT_SECONDS,
            transport=transport
        )
        self.max_bytes = max_bytes or settings.ICAL_MAX_FEED_BYTES
        self.allow_insecure = (
            settings.ICAL_ALLOW_INSECURE if allow_insecure is None else allow_insecure
        )
        self.user_agent = user_agent or settings.ICAL_USER_AGENT

    @property
    def platform(self):
        return None

    @property
    def headers(self):
        return {
            "Accept": "text/calendar, text/plain;q=0.9, */*;q=0.1",
            "User-Agent": self.user_agent
        }

    # =========================================================================
    # FETCH
    # =========================================================================

    async def fetch(self, connection: Connection) -> FetchResult:
        url = self.normalize_url(connection.ical_url)
        if not url:
            raise UnsupportedConnectionError("No iCal URL configured for this connection")

        scheme = urlsplit(url).scheme
        if scheme not in ("http", "https"):
            raise UnsupportedConnectionError(f"Unsupported feed URL scheme: {scheme or '-'}")
        if scheme == "http" and not self.allow_insecure:
            raise UnsupportedConnectionError("Refusing to fetch iCal feed over plain HTTP")

        payload = await self.download(url)
        result = self.parse_feed(payload)

        self._log_fetch(connection, result, bytes=len(payload))
        return result

    @staticmethod
    def normalize_url(url: Optional[str]) -> Optional[str]:
        """Strip whitespace and rewrite ``webcal://`` links to HTTPS."""
        if not url:
            return None
        url = url.strip()
        if url.lower().startswith("webcal://"):
            url = "https://" + url[len("webcal://"):]
        return url or None

    async def download(self, url: str) -> bytes:
        """
        Stream the feed body, enforcing the size cap.

        Raises:
            TransportError: On network failures, timeouts, 429 or 5xx
            AuthorizationError: On 401/403
            MalformedResponseError: On other 4xx or an oversized feed
        """
        client = await self.get_client()
        chunks: List[bytes] = []
        received = 0

        try:
            async with client.stream("GET", url) as response:
                self.raise_for_status(response, url)

                declared = response.headers.get("Content-Length", "")
                if declared.isdigit() and int(declared) > self.max_bytes:
                    raise MalformedResponseError(
                        f"Feed declares {declared} bytes, above the {self.max_bytes} byte cap",
                        status_code=response.status_code
                    )

                async for chunk in response.aiter_bytes():
                    received += len(chunk)
                    if received > self.max_bytes:
                        raise MalformedResponseError(
                            f"Feed exceeds the {self.max_bytes} byte cap",
                            status_code=response.status_code
                        )
                    chunks.append(chunk)
        except httpx.TimeoutException as e:
            raise TransportError(f"Feed download timed out: {e}")
        except httpx.RequestError as e:
            logger.warning("iCal download failed", url=self._redact(url), error=str(e))
            raise TransportError(f"Feed download failed: {e}")

        return b"".join(chunks)

    # =========================================================================
    # PARSING
    # =========================================================================

    def parse_feed(self, payload: bytes) -> FetchResult:
        """
        Parse a feed body into events and warnings.

        Raises:
            MalformedResponseError: If the body is not an iCalendar document
        """
        text = payload.decode("utf-8-sig", errors="replace")
        if "BEGIN:VCALENDAR" not in text[:1024].upper():
            raise MalformedResponseError("Response is not an iCalendar document")

        try:
            calendar = Calendar.from_ical(text)
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
            raise MalformedResponseError(f"Could not parse iCalendar feed: {e}")

        result = FetchResult()
        for component in calendar.walk("VEVENT"):
            try:
                event = self.parse_event(component)
            except EventParseError as e:
                result.warnings.append(ParseWarning(e.reason, e.detail))
                continue
            if event is not None:
                result.events.append(event)

        return result

    def parse_event(self, component) -> Optional[ExternalEvent]:
        """
        Convert one VEVENT into an ExternalEvent.

        Returns None for cancelled events.

        Raises:
            EventParseError: If the event is recurring or malformed
        """
        uid = self._text(component.get("UID"))
        summary = self._text(component.get("SUMMARY"))
        label = uid or summary or "VEVENT without UID"

        if component.get("RRULE") is not None:
            raise EventParseError(
                "recurring_event_unsupported",
                f"{label}: RRULE events are not supported"
            )

        ical_status = (self._text(component.get("STATUS")) or "").upper()
        if ical_status == "CANCELLED":
            return None

        broken = [name for name, _ in getattr(component, "errors", []) if name in REQUIRED_PROPERTIES]
        if broken:
            raise EventParseError("malformed_event", f"{label}: unreadable {', '.join(broken)}")

        dtstart = component.get("DTSTART")
        if dtstart is None:
            raise EventParseError("malformed_event", f"{label}: missing DTSTART")

        try:
            start_value = dtstart.dt
            start_date = self._to_date(start_value)
            end_date = self._resolve_end(component, start_value)
        except (AttributeError, TypeError, ValueError) as e:
            raise EventParseError("malformed_event", f"{label}: invalid dates ({e})")

        if end_date is None:
            raise EventParseError("malformed_event", f"{label}: missing DTEND or DURATION")
        if end_date <= start_date:
            raise EventParseError(
                "malformed_event",
                f"{label}: end {end_date.isoformat()} is not after start {start_date.isoformat()}"
            )

        return ExternalEvent(
            external_uid=uid,
            start_date=start_date,
            end_date=end_date,
            status=self._map_status(ical_status, summary),
            guest_name=self._guest_name(summary),
            summary=summary,
            raw=component.to_ical().decode("utf-8", errors="replace")[:RAW_EXCERPT_CHARS]
        )

    def _resolve_end(self, component, start_value) -> Optional[date]:
        dtend = component.get("DTEND")
        if dtend is not None:
            return self._to_date(dtend.dt)

        duration = component.get("DURATION")
        if duration is not None:
            delta = duration.dt
            if not isinstance(delta, timedelta):
                raise TypeError(f"DURATION is not a duration: {delta!r}")
            return self._to_date(start_value + delta)

        # RFC 5545: a date-valued DTSTART without end spans one day
        if not isinstance(start_value, datetime):
            return self._to_date(start_value) + timedelta(days=1)
        return None

    @staticmethod
    def _to_date(value) -> date:
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        raise TypeError(f"Expected a date or datetime, got {type(value).__name__}")

    @staticmethod
    def _text(value) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    def _map_status(self, ical_status: str, summary: Optional[str]) -> EventStatus:
        """Map VEVENT STATUS and summary conventions to EventStatus."""
        if ical_status == "TENTATIVE":
            return EventStatus.TENTATIVE
        lowered = (summary or "").lower()
        if any(marker in lowered for marker in BLOCKING_MARKERS):
            return EventStatus.BLOCKED
        return EventStatus.BOOKED

    def _guest_name(self, summary: Optional[str]) -> Optional[str]:
        if not summary:
            return None
        lowered = summary.lower()
        if any(marker in lowered for marker in BLOCKING_MARKERS):
            return None
        if lowered in PLACEHOLDER_SUMMARIES:
            return None
        return summary

    @staticmethod
    def _redact(url: str) -> str:
        """Drop the query string, which usually carries the feed secret."""
        parts = urlsplit(url)
        return f"{parts.scheme}://{parts.netloc}{parts.path}"
