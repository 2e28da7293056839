"""Tests for the booking repository, the commit loop and the idempotency ledger."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from booking_engine.errors import (
    ConcurrentUpdateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from booking_engine.lifecycle.state_machine import BookingEvent, InvalidTransition
from booking_engine.lifecycle.store import InMemoryBookingRepository, commit_transition
from booking_engine.payments.ledger import IdempotencyLedger
from booking_engine.schemas.booking_schema import BookingState, PaymentStatus
from tests.conftest import make_booking


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class AlwaysLosingRepository(InMemoryBookingRepository):
    """Every conditional write loses, as if another writer always got there first."""

    def __init__(self):
        super().__init__()
        self.attempts = 0

    def compare_and_set(self, booking, expected_version):
        self.attempts += 1
        return False


class TestInsert:
    def test_insert_and_get_returns_copy(self, repository):
        repository.insert(make_booking())
        fetched = repository.get("bk-1")
        assert fetched.id == "bk-1"
        assert fetched is not repository.get("bk-1")

    def test_duplicate_id_rejected(self, repository):
        repository.insert(make_booking())
        with pytest.raises(ValidationError):
            repository.insert(make_booking(start=datetime(2026, 3, 3, 9, 0, tzinfo=timezone.utc)))

    def test_overlapping_booking_rejected(self, repository):
        repository.insert(make_booking())
        start = datetime(2026, 3, 2, 10, 15, tzinfo=timezone.utc)
        with pytest.raises(ValidationError, match="already booked"):
            repository.insert(make_booking("bk-2", start=start))

    def test_adjacent_booking_allowed(self, repository):
        repository.insert(make_booking())
        start = datetime(2026, 3, 2, 10, 30, tzinfo=timezone.utc)
        repository.insert(make_booking("bk-2", start=start))
        assert len(repository.list_for_builder("builder-1")) == 2

    def test_cancelled_booking_frees_its_time(self, repository):
        repository.insert(make_booking(state=BookingState.CANCELLED))
        repository.insert(make_booking("bk-2"))
        assert repository.get("bk-2") is not None


class TestLookups:
    def test_find_by_stripe_session(self, repository):
        repository.insert(make_booking(stripe_session_id="cs_1"))
        assert repository.find_by_stripe_session("cs_1").id == "bk-1"
        assert repository.find_by_stripe_session("cs_2") is None

    @pytest.mark.parametrize("reference", [
        "EV1",
        "https://api.calendly.com/scheduled_events/EV1",
        "https://api.calendly.com/scheduled_events/EV1/invitees/IN1",
    ])
    def test_find_by_calendly_reference(self, repository, reference):
        repository.insert(make_booking())
        assert repository.find_by_calendly_event(reference).id == "bk-1"

    def test_list_for_builder_sorted_by_start(self, repository):
        repository.insert(make_booking("late", start=datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)))
        repository.insert(make_booking("early", start=datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)))
        assert [b.id for b in repository.list_for_builder("builder-1")] == ["early", "late"]
        assert repository.list_for_builder("builder-2") == []


class TestCompareAndSet:
    def test_matching_version_writes_and_bumps(self, repository):
        repository.insert(make_booking())
        booking = repository.get("bk-1")
        updated = booking.model_copy(update={"notes": "hello"})
        assert repository.compare_and_set(updated, expected_version=0)
        stored = repository.get("bk-1")
        assert stored.notes == "hello"
        assert stored.version == 1

    def test_stale_version_is_refused(self, repository):
        repository.insert(make_booking())
        booking = repository.get("bk-1")
        assert repository.compare_and_set(booking, expected_version=0)
        assert not repository.compare_and_set(booking.model_copy(update={"notes": "late"}), 0)
        assert repository.get("bk-1").notes is None

    def test_missing_row_raises(self, repository):
        with pytest.raises(NotFoundError):
            repository.compare_and_set(make_booking("ghost"), 0)


class TestCommitTransition:
    def test_commit_persists_and_reports_version(self, repository, machine):
        repository.insert(make_booking())
        result = commit_transition(
            repository, "bk-1", lambda b: machine.apply(b, BookingEvent.PAYMENT_INITIATED),
        )
        assert result.state == BookingState.PAYMENT_PROCESSING
        assert result.booking.version == 1
        assert repository.get("bk-1").payment_status == PaymentStatus.PENDING

    def test_plan_returning_none_writes_nothing(self, repository):
        repository.insert(make_booking())
        writes = repository.write_count
        assert commit_transition(repository, "bk-1", lambda b: None) is None
        assert repository.write_count == writes

    def test_missing_booking_raises(self, repository):
        with pytest.raises(NotFoundError):
            commit_transition(repository, "ghost", lambda b: None)

    def test_plan_exception_aborts_without_write(self, repository, machine):
        repository.insert(make_booking(state=BookingState.IDLE))

        def plan(booking):
            outcome = machine.apply(booking, BookingEvent.PAYMENT_CONFIRMED)
            assert isinstance(outcome, InvalidTransition)
            raise outcome.to_error()

        writes = repository.write_count
        with pytest.raises(InvalidTransitionError):
            commit_transition(repository, "bk-1", plan)
        assert repository.write_count == writes

    def test_lost_race_is_re_evaluated(self, repository, machine):
        repository.insert(make_booking())
        seen_versions = []

        def plan(booking):
            seen_versions.append(booking.version)
            if len(seen_versions) == 1:
                # Another writer sneaks in between our read and our write.
                other = booking.model_copy(update={"notes": "other writer"})
                assert repository.compare_and_set(other, booking.version)
            return machine.apply(booking, BookingEvent.PAYMENT_INITIATED)

        result = commit_transition(repository, "bk-1", plan)
        assert seen_versions == [0, 1]
        assert result.booking.version == 2
        assert repository.get("bk-1").notes == "other writer"

    def test_gives_up_after_max_attempts(self, machine):
        repository = AlwaysLosingRepository()
        repository.insert(make_booking())
        with pytest.raises(ConcurrentUpdateError) as exc_info:
            commit_transition(
                repository, "bk-1",
                lambda b: machine.apply(b, BookingEvent.PAYMENT_INITIATED),
                max_attempts=3,
            )
        assert repository.attempts == 3
        assert exc_info.value.retryable

    def test_concurrent_commits_apply_exactly_once(self, repository, machine):
        repository.insert(make_booking())
        barrier = threading.Barrier(8)
        results = []

        def plan(booking):
            if booking.state != BookingState.SCHEDULED:
                return None
            return machine.apply(booking, BookingEvent.PAYMENT_INITIATED)

        def worker():
            barrier.wait()
            results.append(commit_transition(repository, "bk-1", plan, max_attempts=10))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(1 for r in results if r is not None) == 1
        assert repository.get("bk-1").version == 1


class TestIdempotencyLedger:
    def test_first_claim_wins(self):
        ledger = IdempotencyLedger(ttl_seconds=60)
        assert ledger.claim("payment:cs_1:PAID")
        assert not ledger.claim("payment:cs_1:PAID")
        assert ledger.contains("payment:cs_1:PAID")

    def test_release_allows_reclaim(self):
        ledger = IdempotencyLedger(ttl_seconds=60)
        ledger.claim("k")
        ledger.release("k")
        assert ledger.claim("k")

    def test_entries_expire_after_ttl(self):
        clock = FakeClock()
        ledger = IdempotencyLedger(ttl_seconds=60, clock=clock)
        ledger.claim("k")
        clock.now += 59
        assert ledger.contains("k")
        clock.now += 1
        assert not ledger.contains("k")
        assert len(ledger) == 0
        assert ledger.claim("k")

    def test_default_ttl_outlasts_redelivery_window(self):
        clock = FakeClock()
        ledger = IdempotencyLedger(clock=clock)
        ledger.claim("k")
        clock.now += timedelta(hours=71).total_seconds()
        assert ledger.contains("k")

    def test_concurrent_claims_single_winner(self):
        ledger = IdempotencyLedger(ttl_seconds=60)
        barrier = threading.Barrier(16)
        wins = []

        def worker():
            barrier.wait()
            wins.append(ledger.claim("evt_1"))

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert wins.count(True) == 1
