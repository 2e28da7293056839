"""Tests for availability resolution."""

from datetime import date, datetime, time, timedelta, timezone
from itertools import combinations

import pytest

from booking_engine.errors import ValidationError
from booking_engine.schemas.availability_schema import (
    AvailabilityException,
    AvailabilityRule,
    TimeSlot,
)
from booking_engine.schemas.booking_schema import BookingState
from tests.conftest import make_availability, make_booking, make_session_type

MONDAY = date(2026, 3, 2)


def utc(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)


def starts(slots):
    return [s.start_time.astimezone(timezone.utc).strftime("%H:%M") for s in slots]


class TestRecurringRules:
    def test_monday_morning_yields_four_slots(self, resolver):
        slots = resolver.resolve_slots(MONDAY, make_availability(), [], "Europe/London")
        assert [(s.start_time.strftime("%H:%M"), s.end_time.strftime("%H:%M")) for s in slots] == [
            ("09:00", "09:30"),
            ("09:45", "10:15"),
            ("10:30", "11:00"),
            ("11:15", "11:45"),
        ]

    def test_existing_booking_removes_overlapping_slot(self, resolver):
        booking = make_booking(start=utc(MONDAY, 10, 0), minutes=30)
        slots = resolver.resolve_slots(MONDAY, make_availability(), [booking], "Europe/London")
        assert starts(slots) == ["09:00", "10:30", "11:15"]

    def test_occupied_time_slot_also_blocks(self, resolver):
        busy = TimeSlot(start_time=utc(MONDAY, 9, 0), end_time=utc(MONDAY, 9, 30))
        slots = resolver.resolve_slots(MONDAY, make_availability(), [busy], "Europe/London")
        assert starts(slots) == ["09:45", "10:30", "11:15"]

    def test_cancelled_booking_does_not_block(self, resolver):
        booking = make_booking(start=utc(MONDAY, 10, 0), state=BookingState.CANCELLED)
        slots = resolver.resolve_slots(MONDAY, make_availability(), [booking], "Europe/London")
        assert len(slots) == 4

    def test_idle_booking_does_not_block(self, resolver):
        booking = make_booking(start=utc(MONDAY, 9, 0), state=BookingState.IDLE)
        slots = resolver.resolve_slots(MONDAY, make_availability(), [booking], "Europe/London")
        assert len(slots) == 4

    def test_other_weekday_has_no_slots(self, resolver):
        assert resolver.resolve_slots(MONDAY + timedelta(days=1), make_availability()) == []

    def test_non_recurring_rule_is_ignored(self, resolver):
        rule = AvailabilityRule(builder_id="builder-1", day_of_week=1, start_time=time(9),
                                end_time=time(12), is_recurring=False)
        assert resolver.resolve_slots(MONDAY, make_availability(rules=[rule])) == []

    def test_session_type_duration_sets_slot_length(self, resolver):
        availability = make_availability(slot_minutes=None)
        slots = resolver.resolve_slots(
            MONDAY, availability, [], "Europe/London", session_type=make_session_type(duration=60),
        )
        assert starts(slots) == ["09:00", "10:15"]
        assert all(s.duration_minutes == 60 for s in slots)

    def test_explicit_overrides_win(self, resolver):
        slots = resolver.resolve_slots(
            MONDAY, make_availability(), [], "UTC", slot_minutes=60, buffer_minutes=0,
        )
        assert starts(slots) == ["09:00", "10:00", "11:00"]

    def test_negative_buffer_rejected(self, resolver):
        with pytest.raises(ValidationError):
            resolver.resolve_slots(MONDAY, make_availability(), buffer_minutes=-5)

    def test_multiple_rules_are_merged_in_time_order(self, resolver):
        rules = [
            AvailabilityRule(builder_id="builder-1", day_of_week=1, start_time=time(14),
                             end_time=time(15)),
            AvailabilityRule(builder_id="builder-1", day_of_week=1, start_time=time(9),
                             end_time=time(10)),
        ]
        slots = resolver.resolve_slots(MONDAY, make_availability(rules=rules, buffer_minutes=0))
        assert starts(slots) == ["09:00", "09:30", "14:00", "14:30"]


class TestSlotProperties:
    def test_no_two_slots_overlap_and_buffer_respected(self, resolver):
        rules = [
            AvailabilityRule(builder_id="builder-1", day_of_week=1, start_time=time(8),
                             end_time=time(13)),
            AvailabilityRule(builder_id="builder-1", day_of_week=1, start_time=time(10),
                             end_time=time(16)),
        ]
        slots = resolver.resolve_slots(MONDAY, make_availability(rules=rules), [], "Asia/Tokyo")
        for a, b in combinations(slots, 2):
            assert not (a.start_time < b.end_time and b.start_time < a.end_time)
        for prev, cur in zip(slots, slots[1:]):
            assert cur.start_time >= prev.end_time

    def test_consecutive_slots_from_one_rule_are_buffer_apart(self, resolver):
        slots = resolver.resolve_slots(MONDAY, make_availability(), [], "UTC")
        for prev, cur in zip(slots, slots[1:]):
            assert cur.start_time - prev.end_time == timedelta(minutes=15)

    def test_resolution_is_deterministic(self, resolver):
        availability = make_availability()
        first = resolver.resolve_slots(MONDAY, availability, [], "America/Chicago")
        second = resolver.resolve_slots(MONDAY, availability, [], "America/Chicago")
        assert first == second


class TestClientTimezone:
    def test_slots_are_expressed_in_client_zone(self, resolver):
        slots = resolver.resolve_slots(MONDAY, make_availability(), [], "America/New_York")
        first = slots[0]
        assert first.start_time.hour == 4
        assert first.start_time.utcoffset() == timedelta(hours=-5)
        assert first.start_time == utc(MONDAY, 9, 0)

    def test_unknown_client_zone_rejected(self, resolver):
        with pytest.raises(ValidationError):
            resolver.resolve_slots(MONDAY, make_availability(), [], "Nowhere/Special")


class TestExceptions:
    def test_blocking_exception_returns_empty(self, resolver):
        exc = AvailabilityException(builder_id="builder-1", date=MONDAY, is_available=False)
        availability = make_availability(exceptions=[exc])
        assert resolver.resolve_slots(MONDAY, availability, [], "Europe/London") == []

    def test_available_exception_replaces_rules(self, resolver):
        exc = AvailabilityException(
            builder_id="builder-1", date=MONDAY, is_available=True,
            slots=[
                TimeSlot(start_time=utc(MONDAY, 15, 0), end_time=utc(MONDAY, 16, 0)),
                TimeSlot(start_time=utc(MONDAY, 13, 0), end_time=utc(MONDAY, 14, 0)),
            ],
        )
        slots = resolver.resolve_slots(MONDAY, make_availability(exceptions=[exc]), [], "UTC")
        assert starts(slots) == ["13:00", "15:00"]

    def test_available_exception_slots_still_filtered_by_bookings(self, resolver):
        exc = AvailabilityException(
            builder_id="builder-1", date=MONDAY, is_available=True,
            slots=[TimeSlot(start_time=utc(MONDAY, 15, 0), end_time=utc(MONDAY, 16, 0))],
        )
        booking = make_booking(start=utc(MONDAY, 15, 30))
        availability = make_availability(exceptions=[exc])
        assert resolver.resolve_slots(MONDAY, availability, [booking], "UTC") == []

    def test_exception_matched_on_builder_local_date(self, resolver):
        # Tuesday in Auckland starts at 11:00 UTC on Monday.
        tuesday = date(2026, 3, 3)
        rule = AvailabilityRule(builder_id="builder-1", day_of_week=2, start_time=time(9),
                                end_time=time(12))
        exc = AvailabilityException(builder_id="builder-1", date=tuesday, is_available=False)
        availability = make_availability(
            timezone_name="Pacific/Auckland", rules=[rule], exceptions=[exc],
        )
        instant = datetime(2026, 3, 2, 20, 0, tzinfo=timezone.utc)
        assert resolver.resolve_slots(instant, availability) == []
        assert resolver.resolve_slots(tuesday, availability) == []
        assert len(resolver.resolve_slots(date(2026, 3, 10), availability)) == 4

    def test_utc_date_of_instant_is_not_used(self, resolver):
        # 20:00 UTC Monday is Tuesday morning in Auckland, so Tuesday rules apply.
        rule = AvailabilityRule(builder_id="builder-1", day_of_week=2, start_time=time(9),
                                end_time=time(12))
        availability = make_availability(timezone_name="Pacific/Auckland", rules=[rule])
        instant = datetime(2026, 3, 2, 20, 0, tzinfo=timezone.utc)
        slots = resolver.resolve_slots(instant, availability)
        assert len(slots) == 4
        assert slots[0].start_time == datetime(2026, 3, 2, 20, 0, tzinfo=timezone.utc)


class TestValidityWindow:
    def test_expiration_date_is_inclusive(self, resolver):
        rule = AvailabilityRule(builder_id="builder-1", day_of_week=1, start_time=time(9),
                                end_time=time(12), expiration_date=MONDAY)
        availability = make_availability(rules=[rule])
        assert len(resolver.resolve_slots(MONDAY, availability)) == 4
        assert resolver.resolve_slots(MONDAY + timedelta(days=7), availability) == []

    def test_exception_on_expiration_date_still_wins(self, resolver):
        rule = AvailabilityRule(builder_id="builder-1", day_of_week=1, start_time=time(9),
                                end_time=time(12), expiration_date=MONDAY)
        exc = AvailabilityException(builder_id="builder-1", date=MONDAY, is_available=False)
        availability = make_availability(rules=[rule], exceptions=[exc])
        assert resolver.resolve_slots(MONDAY, availability) == []

    def test_effective_date_is_inclusive(self, resolver):
        rule = AvailabilityRule(builder_id="builder-1", day_of_week=1, start_time=time(9),
                                end_time=time(12), effective_date=MONDAY)
        availability = make_availability(rules=[rule])
        assert resolver.resolve_slots(MONDAY - timedelta(days=7), availability) == []
        assert len(resolver.resolve_slots(MONDAY, availability)) == 4


class TestDaylightSaving:
    def test_spring_forward_window_keeps_exact_slot_length(self, resolver):
        # 01:00-04:00 local on 2026-03-08 in New York is only two real hours.
        sunday = date(2026, 3, 8)
        rule = AvailabilityRule(builder_id="builder-1", day_of_week=0, start_time=time(1),
                                end_time=time(4))
        availability = make_availability(
            timezone_name="America/New_York", rules=[rule], slot_minutes=60, buffer_minutes=0,
        )
        slots = resolver.resolve_slots(sunday, availability, [], "UTC")
        assert [s.duration_minutes for s in slots] == [60, 60]
        assert slots[0].start_time == utc(sunday, 6, 0)
        assert slots[-1].end_time == utc(sunday, 8, 0)

    def test_fall_back_window_keeps_exact_slot_length(self, resolver):
        # 01:00-03:00 local on 2026-11-01 in New York spans three real hours.
        sunday = date(2026, 11, 1)
        rule = AvailabilityRule(builder_id="builder-1", day_of_week=0, start_time=time(1),
                                end_time=time(3))
        availability = make_availability(
            timezone_name="America/New_York", rules=[rule], slot_minutes=60, buffer_minutes=0,
        )
        slots = resolver.resolve_slots(sunday, availability, [], "UTC")
        assert all(s.duration_minutes == 60 for s in slots)
        assert len(slots) == 3


class TestResolveRange:
    def test_week_range_collects_each_day(self, resolver):
        slots = resolver.resolve_range(
            date(2026, 3, 1), date(2026, 3, 14), make_availability(), [], "UTC",
        )
        assert len(slots) == 8
        assert slots == sorted(slots, key=lambda s: s.start_time)

    def test_inverted_range_rejected(self, resolver):
        with pytest.raises(ValidationError):
            resolver.resolve_range(date(2026, 3, 5), date(2026, 3, 1), make_availability())

    def test_range_over_limit_rejected(self, resolver):
        with pytest.raises(ValidationError, match="cannot exceed"):
            resolver.resolve_range(date(2026, 3, 1), date(2026, 5, 1), make_availability())
