"""
Booking persistence port and the optimistic-concurrency commit loop.

Rows are guarded by a ``version`` counter. A writer reads a booking,
computes its transition, then writes with ``compare_and_set`` against the
version it read. When two writers race, exactly one wins; the loser
re-reads the row and re-evaluates instead of overwriting.
"""

import logging
import threading
from typing import Callable, Optional, Protocol

from booking_engine.errors import (
    ConcurrentUpdateError,
    NotFoundError,
    ValidationError,
)
from booking_engine.lifecycle.state_machine import TransitionResult
from booking_engine.scheduling import timemath
from booking_engine.schemas.booking_schema import Booking

logger = logging.getLogger(__name__)


class BookingRepository(Protocol):
    """Storage-engine-agnostic booking persistence surface."""

    def get(self, booking_id: str) -> Optional[Booking]: ...

    def find_by_stripe_session(self, session_id: str) -> Optional[Booking]: ...

    def find_by_calendly_event(self, reference: str) -> Optional[Booking]: ...

    def list_for_builder(self, builder_id: str) -> list[Booking]: ...

    def insert(self, booking: Booking) -> Booking: ...

    def compare_and_set(self, booking: Booking, expected_version: int) -> bool: ...


class InMemoryBookingRepository:
    """Thread-safe in-process repository.

    Stored rows are private copies, so callers can never mutate a row
    without going through ``compare_and_set``.
    """

    def __init__(self) -> None:
        self._rows: dict[str, Booking] = {}
        self._lock = threading.Lock()
        self.write_count = 0

    def get(self, booking_id: str) -> Optional[Booking]:
        with self._lock:
            row = self._rows.get(booking_id)
            return row.model_copy(deep=True) if row else None

    def find_by_stripe_session(self, session_id: str) -> Optional[Booking]:
        with self._lock:
            for row in self._rows.values():
                if row.stripe_session_id == session_id:
                    return row.model_copy(deep=True)
        return None

    def find_by_calendly_event(self, reference: str) -> Optional[Booking]:
        """Match on the event id, event URI or invitee URI."""
        with self._lock:
            for row in self._rows.values():
                if reference in (
                    row.calendly_event_id, row.calendly_event_uri, row.calendly_invitee_uri,
                ):
                    return row.model_copy(deep=True)
        return None

    def list_for_builder(self, builder_id: str) -> list[Booking]:
        with self._lock:
            rows = [r for r in self._rows.values() if r.builder_id == builder_id]
            return [r.model_copy(deep=True) for r in sorted(rows, key=lambda r: r.start_time)]

    def insert(self, booking: Booking) -> Booking:
        """Insert a new row, rejecting duplicates and double-booked time."""
        with self._lock:
            if booking.id in self._rows:
                raise ValidationError(f"Booking {booking.id} already exists", booking_id=booking.id)
            if booking.blocks_calendar:
                for row in self._rows.values():
                    if (
                        row.builder_id == booking.builder_id
                        and row.blocks_calendar
                        and timemath.overlaps(
                            booking.start_time, booking.end_time, row.start_time, row.end_time,
                        )
                    ):
                        raise ValidationError(
                            "Slot is already booked",
                            booking_id=booking.id, conflicting_booking_id=row.id,
                        )
            stored = booking.model_copy(deep=True)
            self._rows[stored.id] = stored
            self.write_count += 1
            return stored.model_copy(deep=True)

    def compare_and_set(self, booking: Booking, expected_version: int) -> bool:
        """Write ``booking`` only if the stored row is still at ``expected_version``.

        The stored row's version becomes ``expected_version + 1``.
        """
        with self._lock:
            current = self._rows.get(booking.id)
            if current is None:
                raise NotFoundError(f"Booking {booking.id} not found", booking_id=booking.id)
            if current.version != expected_version:
                return False
            self._rows[booking.id] = booking.model_copy(
                update={"version": expected_version + 1}, deep=True,
            )
            self.write_count += 1
            return True


def commit_transition(
    repository: BookingRepository,
    booking_id: str,
    plan: Callable[[Booking], Optional[TransitionResult]],
    max_attempts: int = 3,
) -> Optional[TransitionResult]:
    """
    Read, evaluate and conditionally write one booking.

    Args:
        repository: Where the booking lives.
        booking_id: The booking to update.
        plan: Called with the freshly read row. Returns the transition to
            persist, or ``None`` when there is nothing to write. May raise
            to abort.
        max_attempts: How many times to re-read after losing a race.

    Returns:
        The persisted transition with the stored version, or ``None`` if
        ``plan`` decided there was nothing to do.

    Raises:
        NotFoundError: If the booking does not exist.
        ConcurrentUpdateError: If every attempt lost the race.
    """
    for attempt in range(1, max_attempts + 1):
        booking = repository.get(booking_id)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found", booking_id=booking_id)

        result = plan(booking)
        if result is None:
            return None

        if repository.compare_and_set(result.booking, booking.version):
            stored = result.booking.model_copy(update={"version": booking.version + 1})
            return TransitionResult(
                previous_state=result.previous_state,
                booking=stored,
                events=result.events,
                side_effects=result.side_effects,
            )

        logger.info(
            "Booking %s changed underneath us (attempt %d/%d), re-evaluating",
            booking_id, attempt, max_attempts,
        )

    logger.error(
        "Gave up updating booking %s after %d conflicting attempts", booking_id, max_attempts,
    )
    raise ConcurrentUpdateError(
        f"Booking {booking_id} kept changing during update",
        booking_id=booking_id, attempts=max_attempts,
    )
