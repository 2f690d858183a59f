"""
Tests for the booking reconciler
"""

import itertools

from channel_sync.models import BookingStatus, EventStatus, Platform
from channel_sync.reconciler import reconcile
from tests.conftest import d, make_booking, make_event


def run(existing, events, platform=Platform.AIRBNB):
    return reconcile(existing, events, property_id="prop-1", platform=platform)


class TestMatching:

    def test_new_event_is_added(self):
        decisions = run([], [make_event("2025-06-01", "2025-06-05", uid="abc@airbnb.com")])

        assert len(decisions.adds) == 1
        added = decisions.adds[0]
        assert added.external_uid == "abc@airbnb.com"
        assert added.platform == Platform.AIRBNB
        assert added.property_id == "prop-1"
        assert added.id is None

    def test_identical_event_is_noop(self):
        existing = [make_booking("2025-06-01", "2025-06-05", uid="abc", booking_id="b1")]
        decisions = run(existing, [make_event("2025-06-01", "2025-06-05", uid="abc")])

        assert decisions.adds == []
        assert decisions.updates == []
        assert [b.id for b in decisions.noops] == ["b1"]

    def test_date_shift_becomes_update(self):
        existing = [make_booking("2025-06-01", "2025-06-05", uid="abc", booking_id="b1")]
        decisions = run(existing, [make_event("2025-06-01", "2025-06-07", uid="abc")])

        assert len(decisions.updates) == 1
        update = decisions.updates[0]
        assert update.before.end_date == d("2025-06-05")
        assert update.after.end_date == d("2025-06-07")
        assert update.after.id == "b1"
        assert decisions.adds == []

    def test_status_change_becomes_update(self):
        existing = [make_booking("2025-06-01", "2025-06-05", uid="abc", booking_id="b1")]
        event = make_event("2025-06-01", "2025-06-05", uid="abc", status=EventStatus.TENTATIVE)

        decisions = run(existing, [event])

        assert decisions.updates[0].after.status == BookingStatus.TENTATIVE

    def test_uidless_event_matches_same_platform_booking_by_dates(self):
        existing = [make_booking("2025-06-10", "2025-06-12", booking_id="b1")]
        decisions = run(existing, [make_event("2025-06-10", "2025-06-12", summary="Blocked")])

        assert decisions.adds == []
        assert decisions.conflicts == []
        assert [b.id for b in decisions.noops] == ["b1"]

    def test_uidless_event_matches_its_synthetic_key(self):
        event = make_event("2025-06-10", "2025-06-12", summary="Reserved")
        existing = [make_booking("2025-06-10", "2025-06-12", uid=event.synthetic_uid, booking_id="b1")]

        decisions = run(existing, [event])

        assert [b.id for b in decisions.noops] == ["b1"]
        assert decisions.stale == []

    def test_bookings_of_other_properties_are_ignored(self):
        existing = [make_booking("2025-06-01", "2025-06-05", uid="abc", booking_id="b1", property_id="prop-2")]
        decisions = run(existing, [make_event("2025-06-01", "2025-06-05", uid="abc")])

        assert len(decisions.adds) == 1
        assert decisions.noops == []


class TestConflicts:

    def test_overlap_with_manual_booking_is_conflict(self):
        existing = [make_booking("2025-06-03", "2025-06-06", platform=Platform.DIRECT, booking_id="m1")]
        decisions = run(existing, [make_event("2025-06-04", "2025-06-08", uid="abc")])

        assert decisions.adds == []
        assert len(decisions.conflicts) == 1
        conflict = decisions.conflicts[0]
        assert conflict.existing.id == "m1"
        assert "manual booking m1" in conflict.describe()
        assert "2025-06-04..2025-06-08" in conflict.describe()

    def test_overlap_with_other_platform_is_conflict(self):
        existing = [make_booking("2025-06-03", "2025-06-06", platform=Platform.BOOKING_COM, uid="bc-1", booking_id="x1")]
        decisions = run(existing, [make_event("2025-06-05", "2025-06-07", uid="abc")])

        assert len(decisions.conflicts) == 1
        assert "booking_com booking x1" in decisions.conflicts[0].describe()

    def test_adjacent_ranges_do_not_conflict(self):
        existing = [make_booking("2025-06-03", "2025-06-06", platform=Platform.DIRECT, booking_id="m1")]
        decisions = run(existing, [make_event("2025-06-06", "2025-06-08", uid="abc")])

        assert decisions.conflicts == []
        assert len(decisions.adds) == 1

    def test_cancelled_booking_does_not_block(self):
        existing = [make_booking(
            "2025-06-03", "2025-06-06",
            platform=Platform.DIRECT,
            booking_id="m1",
            status=BookingStatus.CANCELLED
        )]
        decisions = run(existing, [make_event("2025-06-04", "2025-06-08", uid="abc")])

        assert decisions.conflicts == []
        assert len(decisions.adds) == 1

    def test_same_platform_bookings_updated_in_this_run_do_not_block(self):
        existing = [make_booking("2025-06-01", "2025-06-05", uid="a", booking_id="b1")]
        events = [
            make_event("2025-06-01", "2025-06-10", uid="a"),
            make_event("2025-06-08", "2025-06-12", uid="b"),
        ]

        decisions = run(existing, events)

        assert decisions.conflicts == []
        assert len(decisions.updates) == 1
        assert [b.external_uid for b in decisions.adds] == ["b"]

    def test_conflict_does_not_prevent_other_adds(self):
        existing = [make_booking("2025-06-03", "2025-06-06", platform=Platform.DIRECT, booking_id="m1")]
        events = [
            make_event("2025-06-04", "2025-06-08", uid="clash"),
            make_event("2025-07-01", "2025-07-04", uid="free"),
        ]

        decisions = run(existing, events)

        assert [b.external_uid for b in decisions.adds] == ["free"]
        assert [c.event.external_uid for c in decisions.conflicts] == ["clash"]


class TestStaleAndDuplicates:

    def test_missing_bookings_are_reported_stale_not_removed(self):
        existing = [
            make_booking("2025-06-01", "2025-06-05", uid="gone", booking_id="b1"),
            make_booking("2025-06-10", "2025-06-12", platform=Platform.DIRECT, booking_id="m1"),
        ]
        decisions = run(existing, [])

        assert [b.id for b in decisions.stale] == ["b1"]
        assert decisions.updates == []

    def test_duplicate_events_produce_one_decision_and_a_warning(self):
        events = [
            make_event("2025-06-01", "2025-06-05", uid="dup"),
            make_event("2025-06-01", "2025-06-06", uid="dup"),
        ]

        decisions = run([], events)

        assert len(decisions.adds) == 1
        assert [w.reason for w in decisions.warnings] == ["duplicate_event"]


class TestDeterminism:

    def test_any_event_order_yields_equal_decisions(self):
        existing = [
            make_booking("2025-06-01", "2025-06-05", uid="a", booking_id="b1"),
            make_booking("2025-06-20", "2025-06-22", platform=Platform.DIRECT, booking_id="m1"),
            make_booking("2025-07-01", "2025-07-03", uid="stale", booking_id="b2"),
        ]
        events = [
            make_event("2025-06-01", "2025-06-07", uid="a"),
            make_event("2025-06-10", "2025-06-12", uid="b"),
            make_event("2025-06-21", "2025-06-23", uid="c"),
            make_event("2025-06-10", "2025-06-13", uid="b"),
            make_event("2025-08-01", "2025-08-02", summary="Not available"),
        ]

        baseline = run(existing, events)
        for permutation in itertools.permutations(events):
            assert run(existing, list(permutation)) == baseline

        assert len(baseline.updates) == 1
        assert len(baseline.conflicts) == 1
        assert len(baseline.adds) == 2
        assert [b.id for b in baseline.stale] == ["b2"]
