"""
Channel Sync Models
===================

Plain value structs shared by the adapters, reconciler, coordinator and
stores. Nothing here knows about a database client.
"""

import hashlib
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class Platform(str, Enum):
    """Distribution platforms a property can be connected to."""
    AIRBNB = "airbnb"
    BOOKING_COM = "booking_com"
    VRBO = "vrbo"
    LODGIFY = "lodgify"
    DIRECT = "direct"
    OTHER = "other"


class ConnectionType(str, Enum):
    ICAL = "ical"
    API = "api"


class SyncStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"


class SyncType(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"
    BULK = "bulk"


class EventStatus(str, Enum):
    """Normalized status of an externally sourced calendar entry."""
    BOOKED = "booked"
    BLOCKED = "blocked"
    TENTATIVE = "tentative"


class BookingStatus(str, Enum):
    BOOKED = "booked"
    BLOCKED = "blocked"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


# =============================================================================
# CONNECTION
# =============================================================================

@dataclass
class Connection:
    """Sync configuration for one (property, platform) pair."""
    id: str
    property_id: str
    platform: Platform
    connection_type: ConnectionType = ConnectionType.ICAL
    ical_url: Optional[str] = None
    api_key: Optional[str] = None
    account_id: Optional[str] = None
    external_property_id: Optional[str] = None
    auto_sync_enabled: bool = False
    sync_interval_minutes: int = 60
    enabled: bool = True
    last_sync_at: Optional[datetime] = None
    last_sync_status: Optional[SyncStatus] = None
    last_sync_message: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def listing_key(self) -> tuple:
        """Key under which at most one enabled connection may exist."""
        return (self.property_id, self.platform, self.external_property_id)


@dataclass(frozen=True)
class ConnectionStatusUpdate:
    """Status fields written by the coordinator after each run."""
    last_sync_at: datetime
    last_sync_status: SyncStatus
    last_sync_message: Optional[str]


# =============================================================================
# EXTERNAL EVENTS
# =============================================================================

@dataclass(frozen=True)
class ParseWarning:
    """A per-event problem that was skipped instead of failing the run."""
    reason: str
    detail: str

    def __str__(self) -> str:
        return f"{self.reason}: {self.detail}"


@dataclass(frozen=True)
class ExternalEvent:
    """One stay or blocked range as reported by a platform for one run."""
    start_date: date
    end_date: date
    status: EventStatus = EventStatus.BOOKED
    external_uid: Optional[str] = None
    guest_name: Optional[str] = None
    summary: Optional[str] = None
    raw: Optional[str] = field(default=None, compare=False, repr=False)

    @property
    def synthetic_uid(self) -> str:
        summary_hash = hashlib.sha1((self.summary or "").encode("utf-8")).hexdigest()[:12]
        return f"synthetic:{self.start_date.isoformat()}:{self.end_date.isoformat()}:{summary_hash}"

    @property
    def match_key(self) -> str:
        """Platform UID, or a stable key derived from dates and summary."""
        return self.external_uid or self.synthetic_uid

    @property
    def date_range(self) -> "DateRange":
        return DateRange(self.start_date, self.end_date)


@dataclass(frozen=True, order=True)
class DateRange:
    """Half-open date range: start inclusive, end exclusive."""
    start: date
    end: date

    def overlaps(self, other: "DateRange") -> bool:
        return self.start < other.end and other.start < self.end

    def __str__(self) -> str:
        return f"{self.start.isoformat()}..{self.end.isoformat()}"


# =============================================================================
# BOOKINGS
# =============================================================================

@dataclass(frozen=True)
class Booking:
    """
    The reservation record the engine reconciles against.

    ``external_uid`` is None for manually created bookings; ``id`` is None
    until the booking store has assigned one.
    """
    property_id: str
    platform: Platform
    start_date: date
    end_date: date
    status: BookingStatus = BookingStatus.BOOKED
    external_uid: Optional[str] = None
    guest_name: Optional[str] = None
    id: Optional[str] = None

    @property
    def date_range(self) -> DateRange:
        return DateRange(self.start_date, self.end_date)

    @property
    def is_cancelled(self) -> bool:
        return self.status == BookingStatus.CANCELLED

    def with_changes(self, **changes) -> "Booking":
        return replace(self, **changes)


# =============================================================================
# SYNC LOGS
# =============================================================================

@dataclass(frozen=True)
class SyncLog:
    """Append-only audit record of one sync run."""
    id: str
    connection_id: str
    property_id: str
    platform: Platform
    sync_type: SyncType
    status: SyncStatus
    started_at: datetime
    completed_at: datetime
    added: int = 0
    updated: int = 0
    errors: int = 0
    message: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one run, returned to the caller that triggered it."""
    connection_id: str
    status: SyncStatus
    added: int = 0
    updated: int = 0
    errors: int = 0
    conflicts: int = 0
    warnings: int = 0
    message: Optional[str] = None
    log_id: Optional[str] = None
