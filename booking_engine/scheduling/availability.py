"""
Availability resolution: recurring rules + date exceptions + buffers -> bookable slots.

The resolver is read-only and holds no mutable state, so a single instance
can serve any number of concurrent requests.

Usage:
    resolver = AvailabilityResolver()
    slots = resolver.resolve_slots(date(2026, 3, 2), availability, bookings, "Europe/London")
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Optional, Union
from zoneinfo import ZoneInfo

from booking_engine.config import AvailabilityConfig, settings
from booking_engine.errors import ValidationError
from booking_engine.scheduling import timemath
from booking_engine.schemas.availability_schema import (
    AvailabilityException,
    AvailabilityRule,
    BuilderAvailability,
    TimeSlot,
)
from booking_engine.schemas.booking_schema import Booking, SessionType

logger = logging.getLogger(__name__)

Occupied = Union[Booking, TimeSlot]


@dataclass(frozen=True)
class _Candidate:
    """A generated slot before client-zone conversion."""

    start: datetime
    end: datetime
    order: int


class AvailabilityResolver:
    """Turns a builder's availability into an ordered list of free slots."""

    def __init__(self, config: Optional[AvailabilityConfig] = None) -> None:
        self._config = config or settings.availability

    def resolve_slots(
        self,
        day: Union[date, datetime],
        availability: BuilderAvailability,
        existing_bookings: Iterable[Occupied] = (),
        client_timezone: str = "UTC",
        session_type: Optional[SessionType] = None,
        slot_minutes: Optional[int] = None,
        buffer_minutes: Optional[int] = None,
    ) -> list[TimeSlot]:
        """
        Resolve bookable slots for one day of the builder's calendar.

        Args:
            day: The builder-local calendar date. An aware datetime is
                converted to the builder's zone before its date is taken.
            availability: Rules, exceptions and defaults for the builder.
            existing_bookings: Bookings or slots already occupying time.
            client_timezone: Zone the returned slots are expressed in.
            session_type: Supplies the default slot length.
            slot_minutes: Overrides the slot length.
            buffer_minutes: Overrides the gap between consecutive slots.

        Returns:
            Free slots ordered by start time, ties in generation order.
        """
        builder_zone = timemath.get_zone(availability.timezone)
        client_zone = timemath.get_zone(client_timezone)
        local_day = timemath.local_date(day, builder_zone)

        exceptions = self._exceptions_for(local_day, availability.exceptions)
        if exceptions:
            if any(not exc.is_available for exc in exceptions):
                logger.debug(
                    "Builder %s blocked on %s by exception", availability.builder_id, local_day
                )
                return []
            candidates = self._exception_candidates(exceptions)
        else:
            length = self._slot_length(availability, session_type, slot_minutes)
            buffer = self._buffer_length(availability, buffer_minutes)
            candidates = self._rule_candidates(
                local_day, availability.rules, builder_zone, length, buffer
            )

        busy = [
            (item.start_time, item.end_time)
            for item in existing_bookings
            if getattr(item, "blocks_calendar", True)
        ]

        kept: list[_Candidate] = []
        for cand in sorted(candidates, key=lambda c: (c.start, c.order)):
            if any(timemath.overlaps(cand.start, cand.end, b_start, b_end) for b_start, b_end in busy):
                continue
            if any(timemath.overlaps(cand.start, cand.end, k.start, k.end) for k in kept):
                continue
            kept.append(cand)

        return [
            TimeSlot(
                start_time=timemath.to_zone(c.start, client_zone),
                end_time=timemath.to_zone(c.end, client_zone),
            )
            for c in kept
        ]

    def resolve_range(
        self,
        start_date: date,
        end_date: date,
        availability: BuilderAvailability,
        existing_bookings: Iterable[Occupied] = (),
        client_timezone: str = "UTC",
        session_type: Optional[SessionType] = None,
        slot_minutes: Optional[int] = None,
        buffer_minutes: Optional[int] = None,
    ) -> list[TimeSlot]:
        """Resolve every builder-local day from ``start_date`` to ``end_date`` inclusive."""
        span = (end_date - start_date).days
        if span < 0:
            raise ValidationError(
                "End date must be on or after start date",
                start_date=str(start_date), end_date=str(end_date),
            )
        if span > self._config.max_range_days:
            raise ValidationError(
                f"Date range cannot exceed {self._config.max_range_days} days",
                start_date=str(start_date), end_date=str(end_date),
            )

        occupied = list(existing_bookings)
        slots: list[TimeSlot] = []
        for offset in range(span + 1):
            slots.extend(self.resolve_slots(
                start_date + timedelta(days=offset),
                availability,
                occupied,
                client_timezone,
                session_type=session_type,
                slot_minutes=slot_minutes,
                buffer_minutes=buffer_minutes,
            ))
        return slots

    def _slot_length(
        self,
        availability: BuilderAvailability,
        session_type: Optional[SessionType],
        override: Optional[int],
    ) -> int:
        if override is not None:
            length = override
        elif session_type is not None:
            length = session_type.duration_minutes
        elif availability.slot_minutes is not None:
            length = availability.slot_minutes
        else:
            length = self._config.default_slot_minutes
        if length <= 0:
            raise ValidationError(f"Slot length must be positive, got {length}")
        return length

    def _buffer_length(self, availability: BuilderAvailability, override: Optional[int]) -> int:
        if override is not None:
            buffer = override
        elif availability.buffer_minutes is not None:
            buffer = availability.buffer_minutes
        else:
            buffer = self._config.default_buffer_minutes
        if buffer < 0:
            raise ValidationError(f"Buffer must not be negative, got {buffer}")
        return buffer

    @staticmethod
    def _exceptions_for(
        local_day: date, exceptions: Iterable[AvailabilityException]
    ) -> list[AvailabilityException]:
        return [exc for exc in exceptions if exc.date == local_day]

    @staticmethod
    def _exception_candidates(exceptions: list[AvailabilityException]) -> list[_Candidate]:
        candidates = []
        for exc in exceptions:
            for slot in exc.slots:
                candidates.append(_Candidate(
                    start=slot.start_time.astimezone(timezone.utc),
                    end=slot.end_time.astimezone(timezone.utc),
                    order=len(candidates),
                ))
        return candidates

    @staticmethod
    def _rule_candidates(
        local_day: date,
        rules: Iterable[AvailabilityRule],
        zone: ZoneInfo,
        length: int,
        buffer: int,
    ) -> list[_Candidate]:
        weekday = timemath.day_of_week(local_day)
        candidates: list[_Candidate] = []
        for rule in rules:
            if not rule.is_recurring or rule.day_of_week != weekday or not rule.applies_on(local_day):
                continue
            window_start = timemath.local_to_instant(local_day, rule.start_time, zone)
            window_end = timemath.local_to_instant(local_day, rule.end_time, zone)

            cursor = window_start
            while True:
                slot_end = timemath.add_minutes(cursor, length)
                if slot_end > window_end:
                    break
                candidates.append(_Candidate(start=cursor, end=slot_end, order=len(candidates)))
                cursor = timemath.add_minutes(slot_end, buffer)
        return candidates
