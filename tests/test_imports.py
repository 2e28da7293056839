"""Tests for import chains and module integrity.

Ensures all public modules can be imported without errors and
that re-exports from __init__.py files work correctly.
"""


class TestSchemaImports:
    def test_import_booking_schema(self):
        from booking_engine.schemas import Booking, BookingState, PaymentStatus
        assert BookingState.IDLE == "IDLE"
        assert PaymentStatus.REFUNDED == "REFUNDED"
        assert Booking is not None

    def test_import_availability_schema(self):
        from booking_engine.schemas import BuilderAvailability, TimeSlot
        assert BuilderAvailability is not None
        assert TimeSlot is not None

    def test_import_webhook_schema(self):
        from booking_engine.schemas import PaymentEvent, ReconcileOutcome
        outcome = ReconcileOutcome(applied=False)
        assert outcome.reason == ""
        assert PaymentEvent is not None


class TestLifecycleImports:
    def test_import_state_machine(self):
        from booking_engine.lifecycle import BookingEvent, BookingStateMachine
        machine = BookingStateMachine()
        assert BookingEvent.RESET in machine.get_valid_events(machine.TRANSITIONS[0].from_state)

    def test_import_store(self):
        from booking_engine.lifecycle import InMemoryBookingRepository, commit_transition
        assert InMemoryBookingRepository().get("missing") is None
        assert callable(commit_transition)

    def test_import_service(self):
        from booking_engine.lifecycle.service import BookingService
        assert BookingService is not None


class TestPaymentImports:
    def test_import_payments_package(self):
        from booking_engine.payments import (
            IdempotencyLedger,
            PaymentReconciler,
            SignatureScheme,
            WebhookVerifier,
        )
        assert SignatureScheme.PLAIN == "plain"
        assert len(IdempotencyLedger(ttl_seconds=1)) == 0
        assert PaymentReconciler is not None
        assert WebhookVerifier is not None

    def test_import_stripe_provider(self):
        from booking_engine.payments.stripe_provider import StripePaymentsProvider
        assert StripePaymentsProvider is not None


class TestSchedulingImports:
    def test_import_resolver(self):
        from booking_engine.scheduling import AvailabilityResolver
        assert AvailabilityResolver is not None

    def test_import_calendly_provider(self):
        from booking_engine.scheduling.calendly_provider import CalendlySchedulingProvider
        assert CalendlySchedulingProvider is not None


class TestTopLevelImports:
    def test_version(self):
        import booking_engine
        assert booking_engine.__version__ == "1.0.0"

    def test_webhooks_module(self):
        from booking_engine.webhooks import WebhookResponse
        assert WebhookResponse(200).body == {}

    def test_logging_context(self):
        from booking_engine.logging_context import get_booking_id, mask_identifier, set_booking_id
        set_booking_id("bk-42")
        assert get_booking_id() == "bk-42"
        set_booking_id(None)
        assert get_booking_id() == "-"
        assert mask_identifier("cs_test_a1b2c3d4e5f6") == "cs_t...e5f6"
