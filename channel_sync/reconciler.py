"""
Booking Reconciler
==================

Pure diff between the bookings already stored for a property and the events
a platform reported in one sync run. No I/O happens here; the coordinator
persists whatever this module decides.

Matching:
1. Events with a platform UID match stored bookings by ``external_uid``.
2. Events without a UID match by their synthetic key (stored on add), then
   by exact ``(start_date, end_date)`` against bookings of the same platform.
3. Unmatched events become adds unless they overlap a booking from another
   source, in which case they are reported as conflicts and not written.
4. Bookings from this platform that the feed no longer lists are reported
   as stale and left untouched.

Every output list is sorted on stable keys, so the result does not depend on
the order in which the platform listed its events.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Set

from .models import (
    Booking,
    BookingStatus,
    DateRange,
    ExternalEvent,
    ParseWarning,
    Platform,
)


# =============================================================================
# DECISIONS
# =============================================================================

@dataclass(frozen=True)
class BookingUpdate:
    """A stored booking and the state it should be moved to."""
    before: Booking
    after: Booking


@dataclass(frozen=True)
class Conflict:
    """An incoming event that overlaps a booking from another source."""
    event: ExternalEvent
    existing: Booking

    def describe(self) -> str:
        source = self.existing.platform.value if self.existing.external_uid else "manual"
        return (
            f"conflict {self.event.date_range} ({self.event.match_key}) overlaps "
            f"{source} booking {self.existing.id} {self.existing.date_range}"
        )


@dataclass
class Decisions:
    """Everything the coordinator needs to persist and report for one run."""
    adds: List[Booking] = field(default_factory=list)
    updates: List[BookingUpdate] = field(default_factory=list)
    noops: List[Booking] = field(default_factory=list)
    conflicts: List[Conflict] = field(default_factory=list)
    stale: List[Booking] = field(default_factory=list)
    warnings: List[ParseWarning] = field(default_factory=list)

    @property
    def applied(self) -> int:
        return len(self.adds) + len(self.updates)


# =============================================================================
# SORT KEYS
# =============================================================================

def _booking_key(booking: Booking) -> tuple:
    return (
        booking.is_cancelled,
        booking.start_date,
        booking.end_date,
        booking.id or "",
        booking.external_uid or "",
    )


def _event_key(event: ExternalEvent) -> tuple:
    return (
        event.match_key,
        event.start_date,
        event.end_date,
        event.status.value,
        event.guest_name or "",
        event.summary or "",
    )


# =============================================================================
# RECONCILIATION
# =============================================================================

def reconcile(
    existing: Iterable[Booking],
    events: Iterable[ExternalEvent],
    *,
    property_id: str,
    platform: Platform
) -> Decisions:
    """
    Decide adds, updates, no-ops and conflicts for one connection.

    Args:
        existing: All stored bookings of the property, any platform
        events: Events fetched for the connection in this run
        property_id: Property the connection belongs to
        platform: Platform the connection syncs from

    Returns:
        Decisions with every list sorted deterministically
    """
    decisions = Decisions()
    bookings = sorted(
        (b for b in existing if b.property_id == property_id),
        key=_booking_key
    )
    same_platform = [b for b in bookings if b.platform == platform]

    by_uid: Dict[str, Booking] = {}
    by_range: Dict[DateRange, Booking] = {}
    for booking in same_platform:
        if booking.external_uid:
            by_uid.setdefault(booking.external_uid, booking)
        by_range.setdefault(booking.date_range, booking)

    # Deduplicate the feed on the match key
    unique: Dict[str, ExternalEvent] = {}
    for event in sorted(events, key=_event_key):
        if event.match_key in unique:
            decisions.warnings.append(ParseWarning(
                "duplicate_event",
                f"{event.match_key}: duplicate entry in feed ignored"
            ))
            continue
        unique[event.match_key] = event

    claimed: Set[int] = set()
    matches: List[tuple] = []
    unmatched: List[ExternalEvent] = []
    range_fallback: List[ExternalEvent] = []

    for event in unique.values():
        booking = by_uid.get(event.match_key)
        if booking is not None and id(booking) not in claimed:
            claimed.add(id(booking))
            matches.append((event, booking))
        elif event.external_uid:
            unmatched.append(event)
        else:
            range_fallback.append(event)

    for event in range_fallback:
        booking = by_range.get(event.date_range)
        if booking is not None and id(booking) not in claimed:
            claimed.add(id(booking))
            matches.append((event, booking))
        else:
            unmatched.append(event)

    # Matched events: no-op or update
    for event, booking in matches:
        status = BookingStatus(event.status.value)
        if (
            booking.start_date == event.start_date
            and booking.end_date == event.end_date
            and booking.status == status
        ):
            decisions.noops.append(booking)
            continue

        after = booking.with_changes(
            start_date=event.start_date,
            end_date=event.end_date,
            status=status,
            guest_name=event.guest_name or booking.guest_name
        )
        decisions.updates.append(BookingUpdate(before=booking, after=after))

    # Unmatched events: add unless they collide with another source
    blockers = [
        b for b in bookings
        if not b.is_cancelled and id(b) not in claimed and _is_other_source(b, platform)
    ]

    for event in sorted(unmatched, key=_event_key):
        overlapping = [b for b in blockers if b.date_range.overlaps(event.date_range)]
        if overlapping:
            first = min(overlapping, key=lambda b: (b.start_date, b.end_date, b.id or ""))
            decisions.conflicts.append(Conflict(event=event, existing=first))
            continue

        decisions.adds.append(Booking(
            property_id=property_id,
            platform=platform,
            start_date=event.start_date,
            end_date=event.end_date,
            status=BookingStatus(event.status.value),
            external_uid=event.match_key,
            guest_name=event.guest_name
        ))

    decisions.stale = [
        b for b in same_platform
        if b.external_uid and not b.is_cancelled and id(b) not in claimed
    ]

    decisions.adds.sort(key=lambda b: (b.start_date, b.end_date, b.external_uid or ""))
    decisions.updates.sort(key=lambda u: _booking_key(u.before))
    decisions.noops.sort(key=_booking_key)
    decisions.conflicts.sort(key=lambda c: _event_key(c.event))
    decisions.stale.sort(key=_booking_key)
    decisions.warnings.sort(key=lambda w: (w.reason, w.detail))

    return decisions


def _is_other_source(booking: Booking, platform: Platform) -> bool:
    """Manual bookings and bookings from other platforms block new adds."""
    return booking.platform != platform or booking.external_uid is None


