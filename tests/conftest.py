"""Shared test fixtures, fakes and helpers."""

import json
import threading
from datetime import datetime, time, timezone
from decimal import Decimal
from typing import Optional

import pytest

from booking_engine.config import AppConfig
from booking_engine.errors import NotFoundError, ProviderError
from booking_engine.lifecycle.service import BookingService
from booking_engine.lifecycle.state_machine import BookingStateMachine
from booking_engine.lifecycle.store import InMemoryBookingRepository
from booking_engine.payments.ledger import IdempotencyLedger
from booking_engine.payments.reconciler import PaymentReconciler
from booking_engine.payments.verifier import SignatureScheme, WebhookVerifier
from booking_engine.scheduling.availability import AvailabilityResolver
from booking_engine.schemas.availability_schema import (
    AvailabilityException,
    AvailabilityRule,
    BuilderAvailability,
)
from booking_engine.schemas.booking_schema import (
    Booking,
    BookingState,
    PaymentPolicy,
    PaymentStatus,
    SessionType,
)
from booking_engine.schemas.webhook_schema import CheckoutSession, ProviderSession

STRIPE_SECRET = "whsec_test_secret"
CALENDLY_SECRET = "calendly_test_key"

# Service clock: ten days before the default booking start.
NOW = datetime(2026, 2, 20, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def config():
    return AppConfig()


@pytest.fixture
def machine():
    return BookingStateMachine()


@pytest.fixture
def resolver(config):
    return AvailabilityResolver(config.availability)


@pytest.fixture
def repository():
    return InMemoryBookingRepository()


@pytest.fixture
def ledger():
    return IdempotencyLedger(ttl_seconds=3600)


@pytest.fixture
def stripe_verifier():
    return WebhookVerifier(STRIPE_SECRET, scheme=SignatureScheme.TIMESTAMPED,
                           tolerance_seconds=300, allow_unsigned=False, provider="stripe")


@pytest.fixture
def calendly_verifier():
    return WebhookVerifier(CALENDLY_SECRET, scheme=SignatureScheme.PLAIN,
                           allow_unsigned=False, provider="calendly")


@pytest.fixture
def payments():
    return FakePaymentsProvider()


@pytest.fixture
def scheduling():
    return FakeSchedulingProvider()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def reconciler(repository, payments, machine, ledger, stripe_verifier, notifier, config):
    return PaymentReconciler(
        repository, payments, machine=machine, ledger=ledger,
        verifier=stripe_verifier, notifier=notifier, config=config,
    )


@pytest.fixture
def service(repository, machine, resolver, scheduling, payments, notifier, ledger,
            calendly_verifier, config):
    return BookingService(
        repository, machine=machine, resolver=resolver, scheduling=scheduling,
        payments=payments, notifier=notifier, ledger=ledger,
        verifier=calendly_verifier, config=config, clock=lambda: NOW,
    )


class FakePaymentsProvider:
    """In-memory stand-in for the payments processor.

    Honors idempotency keys the way the real provider does: the same key
    returns the same checkout session.
    """

    def __init__(self):
        self.sessions: dict[str, ProviderSession] = {}
        self.by_key: dict[str, str] = {}
        self.created: list[tuple[str, str]] = []
        self.expired: list[str] = []
        self.refunds: list[tuple[str, str]] = []
        self.refund_amounts: list[Optional[Decimal]] = []
        self.fail_next: Optional[Exception] = None
        self._lock = threading.Lock()

    def create_checkout_session(self, params, idempotency_key):
        with self._lock:
            if self.fail_next is not None:
                exc, self.fail_next = self.fail_next, None
                raise exc
            if idempotency_key in self.by_key:
                session_id = self.by_key[idempotency_key]
            else:
                session_id = f"cs_test_{len(self.sessions) + 1:04d}"
                self.by_key[idempotency_key] = session_id
                self.sessions[session_id] = ProviderSession(
                    id=session_id, status="open", payment_status="unpaid",
                    metadata={"bookingId": params.booking_id, **params.metadata},
                )
                self.created.append((session_id, idempotency_key))
            return CheckoutSession(id=session_id, url=f"https://checkout.test/{session_id}")

    def retrieve_session(self, session_id):
        if session_id not in self.sessions:
            raise NotFoundError("no such session")
        return self.sessions[session_id]

    def expire_session(self, session_id):
        session = self.sessions.get(session_id)
        if session is not None:
            if session.status != "open":
                raise ProviderError(f"Session {session_id} is {session.status}")
            self.sessions[session_id] = session.model_copy(update={"status": "expired"})
        self.expired.append(session_id)

    def refund(self, payment_intent_id, idempotency_key, amount=None, currency=None):
        self.refunds.append((payment_intent_id, idempotency_key))
        self.refund_amounts.append(amount)
        return f"re_{len(self.refunds)}"

    def complete(self, session_id, intent_id="pi_test_1"):
        """Simulate the client paying on the hosted checkout page."""
        session = self.sessions[session_id]
        self.sessions[session_id] = session.model_copy(update={
            "status": "complete", "payment_status": "paid", "payment_intent_id": intent_id,
        })

    def decline(self, session_id, intent_id="pi_test_1"):
        """Simulate a delayed payment method failing after checkout completed."""
        session = self.sessions[session_id]
        self.sessions[session_id] = session.model_copy(update={
            "status": "complete", "payment_status": "unpaid", "payment_intent_id": intent_id,
        })


class FakeSchedulingProvider:
    def __init__(self):
        self.cancelled: list[tuple[str, Optional[str]]] = []
        self.fail_next: Optional[Exception] = None

    def cancel_event(self, event_uri, reason=None):
        if self.fail_next is not None:
            exc, self.fail_next = self.fail_next, None
            raise exc
        self.cancelled.append((event_uri, reason))


class RecordingNotifier:
    def __init__(self):
        self.sent: list[tuple[str, str]] = []

    def notify(self, effect, booking):
        self.sent.append((effect.value, booking.id))


def make_session_type(
    builder_id: str = "builder-1",
    duration: int = 30,
    price: str = "50.00",
    policy: PaymentPolicy = PaymentPolicy.REQUIRED,
    is_active: bool = True,
) -> SessionType:
    """Helper to create a SessionType with sensible defaults."""
    return SessionType(
        id="st-1",
        builder_id=builder_id,
        title="Architecture review",
        duration_minutes=duration,
        price=Decimal(price),
        payment_policy=policy,
        is_active=is_active,
    )


def make_availability(
    timezone_name: str = "Europe/London",
    rules: Optional[list[AvailabilityRule]] = None,
    exceptions: Optional[list[AvailabilityException]] = None,
    buffer_minutes: Optional[int] = 15,
    slot_minutes: Optional[int] = 30,
    builder_id: str = "builder-1",
) -> BuilderAvailability:
    """Helper to create BuilderAvailability; defaults to Monday 09:00-12:00."""
    if rules is None:
        rules = [AvailabilityRule(
            builder_id=builder_id, day_of_week=1, start_time=time(9, 0), end_time=time(12, 0),
        )]
    return BuilderAvailability(
        builder_id=builder_id,
        timezone=timezone_name,
        rules=rules,
        exceptions=exceptions or [],
        buffer_minutes=buffer_minutes,
        slot_minutes=slot_minutes,
    )


def make_booking(
    booking_id: str = "bk-1",
    state: BookingState = BookingState.SCHEDULED,
    payment_status: PaymentStatus = PaymentStatus.UNPAID,
    start: Optional[datetime] = None,
    minutes: int = 30,
    payment_required: bool = True,
    **overrides,
) -> Booking:
    """Helper to create a Booking directly in a given state."""
    from datetime import timedelta

    start = start or datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
    fields = dict(
        id=booking_id,
        builder_id="builder-1",
        client_id="client-1",
        session_type_id="st-1",
        start_time=start,
        end_time=start + timedelta(minutes=minutes),
        state=state,
        payment_status=payment_status,
        payment_required=payment_required,
        amount=Decimal("50.00"),
        calendly_event_uri="https://api.calendly.com/scheduled_events/EV1",
        calendly_invitee_uri="https://api.calendly.com/scheduled_events/EV1/invitees/IN1",
        calendly_event_id="EV1",
    )
    fields.update(overrides)
    return Booking(**fields)


def checkout_event(
    booking_id: str,
    session_id: str,
    event_id: str = "evt_1",
    event_type: str = "checkout.session.completed",
    payment_status: str = "paid",
    intent_id: str = "pi_test_1",
    attempt: Optional[int] = None,
) -> bytes:
    """Helper to build a raw checkout webhook body."""
    metadata = {"bookingId": booking_id}
    if attempt is not None:
        metadata["paymentAttempt"] = str(attempt)
    return json.dumps({
        "id": event_id,
        "type": event_type,
        "data": {"object": {
            "id": session_id,
            "object": "checkout.session",
            "payment_status": payment_status,
            "payment_intent": intent_id,
            "metadata": metadata,
        }},
    }).encode("utf-8")


def calendly_event(
    event_type: str = "invitee.created",
    booking_id: Optional[str] = "bk-1",
    event_uri: str = "https://api.calendly.com/scheduled_events/EV9",
    invitee_uri: str = "https://api.calendly.com/scheduled_events/EV9/invitees/IN9",
    reason: Optional[str] = None,
    start_time: str = "2026-03-02T10:00:00.000000Z",
) -> bytes:
    """Helper to build a raw scheduling webhook body."""
    body = {
        "uri": invitee_uri,
        "scheduled_event": {
            "uri": event_uri,
            "start_time": start_time,
            "end_time": "2026-03-02T10:30:00.000000Z",
        },
        "tracking": {"utm_content": booking_id} if booking_id else {},
    }
    if event_type == "invitee.canceled":
        body["cancellation"] = {"reason": reason, "canceled_by": "Pat Client"}
    return json.dumps({"event": event_type, "payload": body}).encode("utf-8")
