"""
Booking lifecycle orchestration for user-initiated steps and scheduling callbacks.

The service owns the order of operations around the pure state machine:
read the row, ask the machine, talk to providers, write once. Provider
calls that release external resources (cancel the calendar event, expire
an unpaid checkout, refund a payment) run before the booking lets go of
its references, so a failure never leaves an orphaned charge or event.

Client cancellations are refunded according to how much notice they give;
cancellations by the builder or the system are refunded in full.
"""

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from booking_engine.config import AppConfig, settings
from booking_engine.errors import (
    AuthenticationError,
    BookingEngineError,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from booking_engine.lifecycle.state_machine import (
    BookingEvent,
    BookingStateMachine,
    InvalidTransition,
    SideEffect,
    TransitionResult,
    release_effects,
)
from booking_engine.lifecycle.store import BookingRepository, commit_transition
from booking_engine.logging_context import get_booking_logger, mask_identifier, set_booking_id
from booking_engine.payments.ledger import IdempotencyLedger
from booking_engine.payments.providers import (
    LoggingNotifier,
    Notifier,
    PaymentsProvider,
    SchedulingProvider,
    send_notifications,
)
from booking_engine.payments.reconciler import map_session_status
from booking_engine.payments.refunds import (
    RefundDecision,
    calculate_refund,
    full_refund,
    refund_idempotency_key,
)
from booking_engine.payments.verifier import SignatureScheme, WebhookVerifier
from booking_engine.scheduling import timemath
from booking_engine.scheduling.availability import AvailabilityResolver
from booking_engine.scheduling.calendly_provider import (
    INVITEE_CANCELED,
    INVITEE_CREATED,
    parse_scheduling_event,
)
from booking_engine.schemas.availability_schema import BuilderAvailability
from booking_engine.schemas.booking_schema import (
    Booking,
    BookingState,
    PaymentStatus,
    SessionType,
)
from booking_engine.schemas.webhook_schema import ReconcileOutcome, SchedulingEvent

logger = get_booking_logger(__name__)

# Cancellations by these parties are refunded whatever the notice.
FULL_REFUND_REQUESTERS = ("builder", "system")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BookingService:
    """Creates bookings and walks them through scheduling, cancellation and reset."""

    def __init__(
        self,
        repository: BookingRepository,
        machine: Optional[BookingStateMachine] = None,
        resolver: Optional[AvailabilityResolver] = None,
        scheduling: Optional[SchedulingProvider] = None,
        payments: Optional[PaymentsProvider] = None,
        notifier: Optional[Notifier] = None,
        ledger: Optional[IdempotencyLedger] = None,
        verifier: Optional[WebhookVerifier] = None,
        config: Optional[AppConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._config = config or settings
        self._clock = clock or _utcnow
        self._repository = repository
        self._machine = machine or BookingStateMachine()
        self._resolver = resolver or AvailabilityResolver(self._config.availability)
        self._scheduling = scheduling
        self._payments = payments
        self._notifier = notifier or LoggingNotifier()
        self._ledger = ledger or IdempotencyLedger()
        self._verifier = verifier or WebhookVerifier(
            self._config.webhooks.calendly_signing_key,
            scheme=SignatureScheme.PLAIN,
            allow_unsigned=self._config.is_development,
            provider="calendly",
        )

    # --- Creation and scheduling ---

    def create_booking(
        self,
        client_id: str,
        session_type: SessionType,
        availability: BuilderAvailability,
        start_time: datetime,
        client_timezone: str = "UTC",
        notes: Optional[str] = None,
        existing_bookings: Optional[Iterable[Booking]] = None,
        booking_id: Optional[str] = None,
    ) -> Booking:
        """
        Create a booking for one of the slots the resolver offers.

        Raises:
            ValidationError: Inactive session type, mismatched builder,
                naive start time, or a start time that is not a free slot.
        """
        if not session_type.is_active:
            raise ValidationError("Session type is not active", session_type_id=session_type.id)
        if session_type.builder_id != availability.builder_id:
            raise ValidationError(
                "Session type belongs to another builder",
                session_type_id=session_type.id, builder_id=availability.builder_id,
            )
        if start_time.tzinfo is None:
            raise ValidationError("Start time must carry a timezone offset")
        timemath.get_zone(client_timezone)

        if existing_bookings is None:
            existing_bookings = self._repository.list_for_builder(availability.builder_id)
        slots = self._resolver.resolve_slots(
            start_time, availability, existing_bookings, client_timezone, session_type=session_type,
        )
        slot = next((s for s in slots if s.start_time == start_time), None)
        if slot is None:
            raise ValidationError(
                "Requested time is not an available slot",
                builder_id=availability.builder_id, start_time=start_time.isoformat(),
            )

        booking = Booking(
            id=booking_id or str(uuid.uuid4()),
            builder_id=availability.builder_id,
            client_id=client_id,
            session_type_id=session_type.id,
            start_time=slot.start_time,
            end_time=slot.end_time,
            payment_required=session_type.requires_payment,
            amount=session_type.price,
            currency=session_type.currency,
            client_timezone=client_timezone,
            builder_timezone=availability.timezone,
            notes=notes,
        )
        result = self._require(self._machine.apply(booking, BookingEvent.SESSION_TYPE_SELECTED))
        stored = self._repository.insert(result.booking)
        set_booking_id(stored.id)
        logger.info(
            "Booking %s created for client %s with builder %s at %s",
            stored.id, client_id, stored.builder_id, stored.start_time.isoformat(),
        )
        return stored

    def initiate_scheduling(self, booking_id: str, client_id: str) -> Booking:
        """Mark that the client has been handed to the external scheduler."""
        self._owned_booking(booking_id, client_id)
        return self._transition(booking_id, [BookingEvent.SCHEDULING_INITIATED]).booking

    def confirm_scheduled(
        self,
        booking_id: str,
        event_uri: str,
        invitee_uri: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> Booking:
        """
        Record the external calendar event and advance to SCHEDULED.

        Bookings that take no payment are confirmed in the same write.
        """
        set_booking_id(booking_id)
        data = {
            "calendly_event_uri": event_uri,
            "calendly_invitee_uri": invitee_uri,
            "calendly_event_id": event_id or event_uri.rstrip("/").rsplit("/", 1)[-1],
        }

        def plan(booking: Booking) -> Optional[TransitionResult]:
            if booking.state != BookingState.SCHEDULING_INITIATED and booking.calendly_event_uri == event_uri:
                return None
            steps: list[Any] = [(BookingEvent.EXTERNAL_EVENT_SCHEDULED, data)]
            if not booking.payment_required:
                steps.append(BookingEvent.PAYMENT_WAIVED)
            return self._require(self._machine.apply_all(booking, steps))

        return self._commit(booking_id, plan)

    def confirm_without_payment(self, booking_id: str) -> Booking:
        """Confirm a scheduled booking whose session type waives payment."""
        return self._transition(booking_id, [BookingEvent.PAYMENT_WAIVED]).booking

    def mark_completed(self, booking_id: str) -> Booking:
        """Close a confirmed booking once the session has taken place."""
        return self._transition(booking_id, [BookingEvent.SESSION_COMPLETED]).booking

    # --- Scheduling provider callbacks ---

    def handle_scheduling_webhook(self, signature_header: Optional[str], raw_payload: bytes) -> ReconcileOutcome:
        """
        Verify and apply one scheduling provider delivery.

        Raises:
            VerificationError: Bad or missing signature.
            ValidationError: Unparseable body or missing references.
            NotFoundError: No local booking matches the event.
        """
        self._verifier.verify(signature_header, raw_payload)
        try:
            payload = json.loads(raw_payload)
        except (ValueError, TypeError):
            raise ValidationError("Webhook body is not valid JSON") from None
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body is not a JSON object")

        event = parse_scheduling_event(payload)
        if event is None:
            logger.info("Ignoring scheduling event type %s", payload.get("event"))
            return ReconcileOutcome(applied=False, reason="ignored event type")
        return self.handle_scheduling_event(event)

    def handle_scheduling_event(self, event: SchedulingEvent) -> ReconcileOutcome:
        """Apply a parsed scheduling callback at most once."""
        booking = self._locate(event)
        set_booking_id(booking.id)

        key = event.ledger_key
        if not self._ledger.claim(key):
            logger.info("Duplicate %s for booking %s; skipping", event.event_type, booking.id)
            return self._outcome(False, booking, "duplicate")

        try:
            if event.event_type == INVITEE_CREATED:
                if not event.calendly_event_uri:
                    raise ValidationError("Scheduled event has no URI", booking_id=booking.id)
                self._check_scheduled_slot(booking, event)
                updated = self.confirm_scheduled(
                    booking.id, event.calendly_event_uri,
                    event.calendly_invitee_uri, event.calendly_event_id,
                )
            elif event.event_type == INVITEE_CANCELED:
                updated = self.request_cancellation(
                    booking.id,
                    requested_by=event.cancelled_by or "invitee",
                    reason=event.cancel_reason,
                    external_already_cancelled=True,
                )
            else:
                raise ValidationError(f"Unsupported scheduling event {event.event_type}")
        except BookingEngineError as exc:
            if not isinstance(exc, ValidationError):
                self._ledger.release(key)
            raise

        return self._outcome(True, updated, "applied")

    # --- Cancellation and reset ---

    def request_cancellation(
        self,
        booking_id: str,
        requested_by: str,
        reason: Optional[str] = None,
        client_id: Optional[str] = None,
        external_already_cancelled: bool = False,
    ) -> Booking:
        """
        Cancel a booking, releasing its external resources first.

        The booking moves to CANCELLATION_REQUESTED, provider cancellations
        and refunds run, then it moves to CANCELLED. If a provider call
        fails the booking stays in CANCELLATION_REQUESTED and calling again
        resumes from there.

        Raises:
            AuthenticationError: ``client_id`` given and not the owner.
            InvalidTransitionError: The booking cannot be cancelled.
            TransientProviderError, ProviderError: A release call failed.
        """
        set_booking_id(booking_id)
        if client_id is not None:
            self._owned_booking(booking_id, client_id)

        def request(booking: Booking) -> Optional[TransitionResult]:
            if booking.state in (BookingState.CANCELLATION_REQUESTED, BookingState.CANCELLED):
                return None
            return self._require(self._machine.apply(
                booking, BookingEvent.CANCELLATION_REQUESTED,
                {"cancelled_by": requested_by, "cancel_reason": reason},
            ))

        commit_transition(
            self._repository, booking_id, request, self._config.payments.max_concurrency_retries,
        )
        return self._finish_cancellation(booking_id, external_already_cancelled)

    def reset(self, booking_id: str) -> Booking:
        """
        Return a booking to IDLE after releasing its external resources.

        If any release call fails nothing is written, so the booking keeps
        the references needed to retry.
        """
        set_booking_id(booking_id)
        booking = self._get(booking_id)
        decision = full_refund(booking, "booking reset")
        refunded = self._release(booking, release_effects(booking), False, decision)

        def plan(current: Booking) -> Optional[TransitionResult]:
            steps: list[Any] = [BookingEvent.RESET]
            if refunded:
                steps.append((BookingEvent.REFUND_ISSUED, decision.as_fields()))
            return self._require(self._machine.apply_all(current, steps))

        updated = self._commit(booking_id, plan)
        logger.info("Booking %s reset to IDLE", booking_id)
        return updated

    # --- Internals ---

    def _finish_cancellation(self, booking_id: str, external_already_cancelled: bool) -> Booking:
        booking = self._get(booking_id)
        if booking.state == BookingState.CANCELLED:
            return booking
        decision = self._refund_decision(booking)
        refunded = self._release(
            booking, release_effects(booking), external_already_cancelled, decision,
        )

        def confirm(current: Booking) -> Optional[TransitionResult]:
            if current.state == BookingState.CANCELLED:
                return None
            steps: list[Any] = []
            if refunded:
                steps.append((BookingEvent.REFUND_ISSUED, decision.as_fields()))
                steps.append(BookingEvent.CANCELLATION_CONFIRMED)
            elif current.payment_status == PaymentStatus.PAID:
                steps.append((BookingEvent.CANCELLATION_CONFIRMED, decision.as_fields()))
            else:
                steps.append(BookingEvent.CANCELLATION_CONFIRMED)
            return self._require(self._machine.apply_all(current, steps))

        updated = self._commit(booking_id, confirm)
        logger.info(
            "Booking %s cancelled by %s (%s); refund %s: %s",
            booking_id, updated.cancelled_by, updated.cancel_reason or "no reason given",
            decision.policy.value, decision.reason,
        )
        return updated

    def _refund_decision(self, booking: Booking) -> RefundDecision:
        if booking.cancelled_by in FULL_REFUND_REQUESTERS:
            return full_refund(booking, f"cancelled by {booking.cancelled_by}")
        return calculate_refund(booking, self._clock(), self._config.payments)

    def _release(
        self,
        booking: Booking,
        effects: Iterable[SideEffect],
        skip_external: bool,
        decision: RefundDecision,
    ) -> bool:
        """Run release side effects against providers. Returns True if a refund was issued."""
        refunded = False
        for effect in effects:
            try:
                if effect == SideEffect.CANCEL_EXTERNAL_EVENT and not skip_external:
                    self._cancel_external_event(booking)
                elif effect == SideEffect.EXPIRE_CHECKOUT_SESSION:
                    self._expire_checkout(booking)
                elif effect == SideEffect.ISSUE_REFUND and decision.refunds:
                    self._refund(booking, decision)
                    refunded = True
            except BookingEngineError as exc:
                logger.error(
                    "Could not %s for booking %s (state=%s, event=%s, session=%s, intent=%s): %s; "
                    "manual reconciliation may be required",
                    effect.value, booking.id, booking.state.value, booking.calendly_event_uri,
                    mask_identifier(booking.stripe_session_id),
                    mask_identifier(booking.stripe_payment_intent_id), exc,
                )
                raise
        return refunded

    def _cancel_external_event(self, booking: Booking) -> None:
        if self._scheduling is None:
            raise ProviderError("No scheduling provider configured", booking_id=booking.id)
        try:
            self._scheduling.cancel_event(booking.calendly_event_uri, booking.cancel_reason)
        except NotFoundError:
            logger.info("External event for booking %s is already gone", booking.id)

    def _expire_checkout(self, booking: Booking) -> None:
        payments = self._payments_provider(booking, SideEffect.EXPIRE_CHECKOUT_SESSION)
        session_id = booking.stripe_session_id
        try:
            payments.expire_session(session_id)
            return
        except NotFoundError:
            logger.info(
                "Checkout %s for booking %s is already gone", mask_identifier(session_id), booking.id,
            )
            return
        except ProviderError as exc:
            logger.info(
                "Checkout %s for booking %s could not be expired (%s); checking its status",
                mask_identifier(session_id), booking.id, exc,
            )

        try:
            session = payments.retrieve_session(session_id)
        except NotFoundError:
            return
        if map_session_status(session.status, session.payment_status) != PaymentStatus.PAID:
            return
        intent = session.payment_intent_id
        if not intent:
            raise ProviderError("Paid checkout has no payment reference to refund", booking_id=booking.id)
        logger.warning(
            "Checkout %s for booking %s was paid before it could be expired; refunding %s",
            mask_identifier(session_id), booking.id, mask_identifier(intent),
        )
        payments.refund(intent, refund_idempotency_key(booking.id, intent))

    def _refund(self, booking: Booking, decision: RefundDecision) -> None:
        payments = self._payments_provider(booking, SideEffect.ISSUE_REFUND)
        intent = booking.stripe_payment_intent_id
        if not intent and booking.stripe_session_id:
            intent = payments.retrieve_session(booking.stripe_session_id).payment_intent_id
        if not intent:
            raise ProviderError("Paid booking has no payment reference to refund", booking_id=booking.id)
        key = refund_idempotency_key(booking.id, intent)
        if decision.is_full:
            payments.refund(intent, key)
        else:
            payments.refund(intent, key, amount=decision.amount, currency=booking.currency)

    def _check_scheduled_slot(self, booking: Booking, event: SchedulingEvent) -> None:
        if event.start_time is None or event.start_time == booking.start_time:
            return
        logger.error(
            "Scheduled event %s for booking %s starts at %s but the booking holds %s",
            event.calendly_event_uri, booking.id, event.start_time.isoformat(),
            booking.start_time.isoformat(),
        )
        raise ValidationError(
            "Scheduled event time does not match booking slot",
            booking_id=booking.id, start_time=event.start_time.isoformat(),
        )

    def _payments_provider(self, booking: Booking, effect: SideEffect) -> PaymentsProvider:
        if self._payments is None:
            raise ProviderError(
                f"No payments provider configured for {effect.value}", booking_id=booking.id,
            )
        return self._payments

    def _transition(self, booking_id: str, events: list[BookingEvent]) -> TransitionResult:
        set_booking_id(booking_id)
        result = commit_transition(
            self._repository, booking_id,
            lambda booking: self._require(self._machine.apply_all(booking, events)),
            self._config.payments.max_concurrency_retries,
        )
        send_notifications(self._notifier, result.booking, result.side_effects)
        return result

    def _commit(self, booking_id: str, plan) -> Booking:
        result = commit_transition(
            self._repository, booking_id, plan, self._config.payments.max_concurrency_retries,
        )
        if result is None:
            return self._get(booking_id)
        send_notifications(self._notifier, result.booking, result.side_effects)
        return result.booking

    def _locate(self, event: SchedulingEvent) -> Booking:
        booking = None
        if event.booking_id:
            booking = self._repository.get(event.booking_id)
        for reference in (event.calendly_event_uri, event.calendly_invitee_uri, event.calendly_event_id):
            if booking is None and reference:
                booking = self._repository.find_by_calendly_event(reference)
        if booking is None:
            raise NotFoundError(
                "No booking matches scheduling event",
                booking_id=event.booking_id, event_uri=event.calendly_event_uri,
            )
        return booking

    def _get(self, booking_id: str) -> Booking:
        booking = self._repository.get(booking_id)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found", booking_id=booking_id)
        return booking

    def _owned_booking(self, booking_id: str, client_id: str) -> Booking:
        booking = self._get(booking_id)
        if booking.client_id != client_id:
            logger.warning("Client %s denied access to booking %s", client_id, booking_id)
            raise AuthenticationError("Booking belongs to another client", booking_id=booking_id)
        return booking

    @staticmethod
    def _require(outcome) -> TransitionResult:
        if isinstance(outcome, InvalidTransition):
            raise outcome.to_error()
        return outcome

    @staticmethod
    def _outcome(applied: bool, booking: Booking, reason: str) -> ReconcileOutcome:
        return ReconcileOutcome(
            applied=applied,
            booking_id=booking.id,
            state=booking.state.value,
            payment_status=booking.payment_status,
            reason=reason,
        )
