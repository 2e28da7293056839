"""
Finite state machine for the booking lifecycle.

Defines the booking states, the events that move a booking between them,
and the side effects each transition asks its caller to perform. The
machine is a pure function over a booking row: it never persists, never
calls a provider and never raises for an event that is simply not valid
in the current state. An illegal event yields an ``InvalidTransition``
value and leaves the booking untouched.

Usage:
    machine = BookingStateMachine()
    result = machine.apply(booking, BookingEvent.PAYMENT_CONFIRMED)
    if isinstance(result, InvalidTransition):
        raise result.to_error()
    repository.compare_and_set(result.booking, booking.version)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Sequence, Union

from booking_engine.errors import InvalidTransitionError, ValidationError
from booking_engine.schemas.booking_schema import (
    Booking,
    BookingState,
    BookingStatus,
    PaymentStatus,
)

logger = logging.getLogger(__name__)


class BookingEvent(str, Enum):
    """Events that cause booking state transitions."""
    SESSION_TYPE_SELECTED = "SessionTypeSelected"
    SCHEDULING_INITIATED = "SchedulingInitiated"
    EXTERNAL_EVENT_SCHEDULED = "ExternalEventScheduled"
    PAYMENT_INITIATED = "PaymentInitiated"
    PAYMENT_CONFIRMED = "PaymentConfirmed"
    PAYMENT_DECLINED = "PaymentDeclined"
    PAYMENT_WAIVED = "PaymentWaived"
    BOOKING_FINALIZED = "BookingFinalized"
    CANCELLATION_REQUESTED = "CancellationRequested"
    CANCELLATION_CONFIRMED = "CancellationConfirmed"
    SESSION_COMPLETED = "SessionCompleted"
    REFUND_ISSUED = "RefundIssued"
    RESET = "Reset"


class SideEffect(str, Enum):
    """Instructions the caller must carry out after a transition."""
    PERSIST_BOOKING = "persist_booking"
    SEND_CONFIRMATION = "send_confirmation"
    SEND_PAYMENT_FAILED_NOTICE = "send_payment_failed_notice"
    SEND_CANCELLATION_NOTICE = "send_cancellation_notice"
    CANCEL_EXTERNAL_EVENT = "cancel_external_event"
    EXPIRE_CHECKOUT_SESSION = "expire_checkout_session"
    ISSUE_REFUND = "issue_refund"


NOTIFICATION_EFFECTS = (
    SideEffect.SEND_CONFIRMATION,
    SideEffect.SEND_PAYMENT_FAILED_NOTICE,
    SideEffect.SEND_CANCELLATION_NOTICE,
)


@dataclass
class Transition:
    """A single valid state transition."""
    from_state: BookingState
    to_state: BookingState
    event: BookingEvent
    effects: tuple[SideEffect, ...] = (SideEffect.PERSIST_BOOKING,)
    guard: Optional[Callable[[Booking], bool]] = None
    guard_reason: str = ""
    releases_resources: bool = False


@dataclass(frozen=True)
class TransitionResult:
    """A transition the machine accepted, with the booking as it should be persisted."""
    previous_state: BookingState
    booking: Booking
    events: tuple[BookingEvent, ...]
    side_effects: tuple[SideEffect, ...] = ()

    @property
    def state(self) -> BookingState:
        return self.booking.state

    def has_effect(self, effect: SideEffect) -> bool:
        return effect in self.side_effects


@dataclass(frozen=True)
class InvalidTransition:
    """Typed rejection of an event that is not valid in the booking's state."""
    state: BookingState
    event: BookingEvent
    reason: str
    valid_events: tuple[BookingEvent, ...] = field(default_factory=tuple)

    def to_error(self) -> InvalidTransitionError:
        return InvalidTransitionError(
            f"No valid transition from '{self.state.value}' with event "
            f"'{self.event.value}': {self.reason}. "
            f"Valid events: {[e.value for e in self.valid_events]}",
            state=self.state.value,
            event=self.event.value,
        )


Outcome = Union[TransitionResult, InvalidTransition]


def _requires_payment(booking: Booking) -> bool:
    return booking.payment_required


def _waives_payment(booking: Booking) -> bool:
    return not booking.payment_required


def _is_paid(booking: Booking) -> bool:
    return booking.payment_status == PaymentStatus.PAID


# States from which a client or provider may ask to cancel.
CANCELLABLE_STATES = (
    BookingState.SESSION_TYPE_SELECTED,
    BookingState.SCHEDULING_INITIATED,
    BookingState.SCHEDULED,
    BookingState.PAYMENT_PROCESSING,
    BookingState.PAYMENT_FAILED,
    BookingState.PAYMENT_SUCCEEDED,
    BookingState.BOOKING_CONFIRMED,
)

# Denormalized status columns for each state. ``None`` keeps the current
# payment status.
STATUS_BY_STATE: dict[BookingState, tuple[BookingStatus, Optional[PaymentStatus]]] = {
    BookingState.IDLE: (BookingStatus.PENDING, PaymentStatus.UNPAID),
    BookingState.SESSION_TYPE_SELECTED: (BookingStatus.PENDING, PaymentStatus.UNPAID),
    BookingState.SCHEDULING_INITIATED: (BookingStatus.PENDING, PaymentStatus.UNPAID),
    BookingState.SCHEDULED: (BookingStatus.PENDING, PaymentStatus.UNPAID),
    BookingState.PAYMENT_PROCESSING: (BookingStatus.PENDING, PaymentStatus.PENDING),
    BookingState.PAYMENT_SUCCEEDED: (BookingStatus.CONFIRMED, PaymentStatus.PAID),
    BookingState.PAYMENT_FAILED: (BookingStatus.PENDING, PaymentStatus.FAILED),
    BookingState.BOOKING_CONFIRMED: (BookingStatus.CONFIRMED, None),
    BookingState.BOOKING_COMPLETED: (BookingStatus.COMPLETED, None),
    BookingState.CANCELLATION_REQUESTED: (BookingStatus.CANCELLED, None),
    BookingState.CANCELLED: (BookingStatus.CANCELLED, None),
}

# Fields an event may carry into the booking alongside the state change.
UPDATABLE_FIELDS = frozenset({
    "stripe_session_id",
    "stripe_payment_intent_id",
    "calendly_event_id",
    "calendly_event_uri",
    "calendly_invitee_uri",
    "payment_retries",
    "cancel_reason",
    "cancelled_by",
    "notes",
    "refund_policy",
    "refund_amount",
})

# References dropped when a booking is reset to IDLE.
_RESET_CLEARS = {
    "stripe_session_id": None,
    "stripe_payment_intent_id": None,
    "calendly_event_id": None,
    "calendly_event_uri": None,
    "calendly_invitee_uri": None,
    "cancel_reason": None,
    "cancelled_by": None,
    "cancelled_at": None,
    "payment_retries": 0,
    "refund_policy": None,
    "refund_amount": None,
}


def next_payment_status(current: PaymentStatus, proposed: Optional[PaymentStatus]) -> PaymentStatus:
    """Apply a proposed payment status without ever un-paying a booking.

    Once PAID the only move allowed is to REFUNDED; REFUNDED is final.
    """
    if proposed is None or proposed == current:
        return current
    if current == PaymentStatus.REFUNDED:
        return current
    if current == PaymentStatus.PAID and proposed != PaymentStatus.REFUNDED:
        return current
    return proposed


def release_effects(booking: Booking) -> tuple[SideEffect, ...]:
    """External resources that must be released before the booking lets go of them.

    Terminal bookings hold nothing live: a cancelled booking already
    released its resources and a completed session is not unwound.
    """
    if booking.state in (BookingState.CANCELLED, BookingState.BOOKING_COMPLETED):
        return ()
    effects = []
    if booking.calendly_event_uri:
        effects.append(SideEffect.CANCEL_EXTERNAL_EVENT)
    if booking.payment_status == PaymentStatus.PAID:
        effects.append(SideEffect.ISSUE_REFUND)
    elif booking.stripe_session_id and booking.payment_status != PaymentStatus.REFUNDED:
        # A declined checkout stays payable until it is expired.
        effects.append(SideEffect.EXPIRE_CHECKOUT_SESSION)
    return tuple(effects)


class BookingStateMachine:
    """
    Deterministic, side-effect-free booking lifecycle.

    Every transition is listed explicitly. ``Reset`` is the one event
    accepted from any state and is handled outside the table.
    """

    TRANSITIONS: list[Transition] = [
        # --- Selection and scheduling ---
        Transition(BookingState.IDLE, BookingState.SESSION_TYPE_SELECTED,
                   BookingEvent.SESSION_TYPE_SELECTED),
        Transition(BookingState.SESSION_TYPE_SELECTED, BookingState.SCHEDULING_INITIATED,
                   BookingEvent.SCHEDULING_INITIATED),
        Transition(BookingState.SCHEDULING_INITIATED, BookingState.SCHEDULED,
                   BookingEvent.EXTERNAL_EVENT_SCHEDULED),

        # --- Payment ---
        Transition(BookingState.SCHEDULED, BookingState.PAYMENT_PROCESSING,
                   BookingEvent.PAYMENT_INITIATED,
                   guard=_requires_payment, guard_reason="booking does not require payment"),
        Transition(BookingState.SCHEDULED, BookingState.BOOKING_CONFIRMED,
                   BookingEvent.PAYMENT_WAIVED,
                   effects=(SideEffect.PERSIST_BOOKING, SideEffect.SEND_CONFIRMATION),
                   guard=_waives_payment, guard_reason="booking requires payment"),
        Transition(BookingState.PAYMENT_PROCESSING, BookingState.PAYMENT_SUCCEEDED,
                   BookingEvent.PAYMENT_CONFIRMED),
        Transition(BookingState.PAYMENT_PROCESSING, BookingState.PAYMENT_FAILED,
                   BookingEvent.PAYMENT_DECLINED,
                   effects=(SideEffect.PERSIST_BOOKING, SideEffect.SEND_PAYMENT_FAILED_NOTICE)),

        # --- Recovery after a decline ---
        Transition(BookingState.PAYMENT_FAILED, BookingState.PAYMENT_PROCESSING,
                   BookingEvent.PAYMENT_INITIATED),
        # A late success on the checkout that was reported failed.
        Transition(BookingState.PAYMENT_FAILED, BookingState.PAYMENT_SUCCEEDED,
                   BookingEvent.PAYMENT_CONFIRMED),

        # --- Confirmation and completion ---
        Transition(BookingState.PAYMENT_SUCCEEDED, BookingState.BOOKING_CONFIRMED,
                   BookingEvent.BOOKING_FINALIZED,
                   effects=(SideEffect.PERSIST_BOOKING, SideEffect.SEND_CONFIRMATION)),
        Transition(BookingState.BOOKING_CONFIRMED, BookingState.BOOKING_COMPLETED,
                   BookingEvent.SESSION_COMPLETED),

        # --- Cancellation ---
        *[
            Transition(state, BookingState.CANCELLATION_REQUESTED,
                       BookingEvent.CANCELLATION_REQUESTED, releases_resources=True)
            for state in CANCELLABLE_STATES
        ],
        Transition(BookingState.CANCELLATION_REQUESTED, BookingState.CANCELLED,
                   BookingEvent.CANCELLATION_CONFIRMED,
                   effects=(SideEffect.PERSIST_BOOKING, SideEffect.SEND_CANCELLATION_NOTICE)),

        # --- Refunds keep the state and only move the payment status ---
        *[
            Transition(state, state, BookingEvent.REFUND_ISSUED,
                       guard=_is_paid, guard_reason="booking has no payment to refund")
            for state in (
                BookingState.CANCELLATION_REQUESTED, BookingState.CANCELLED, BookingState.IDLE,
            )
        ],
    ]

    def apply(
        self,
        booking: Booking,
        event: BookingEvent,
        data: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Outcome:
        """
        Evaluate one event against a booking.

        Args:
            booking: The booking row fetched immediately before the call.
            event: The event to apply.
            data: Booking fields the event carries, e.g. provider references.
            now: Timestamp recorded on the new booking.

        Returns:
            A TransitionResult holding a new booking copy, or an
            InvalidTransition when the event is not valid in this state.

        Raises:
            ValidationError: If ``data`` names a field events may not set.
        """
        updates = self._checked_data(data)
        now = now or datetime.now(timezone.utc)

        if event == BookingEvent.RESET:
            return self._reset(booking, updates, now)

        rejection = "event not valid in this state"
        for t in self.TRANSITIONS:
            if t.from_state != booking.state or t.event != event:
                continue
            if t.guard is not None and not t.guard(booking):
                rejection = t.guard_reason or "guard rejected the event"
                continue

            effects = t.effects
            if t.releases_resources:
                effects = effects + release_effects(booking)

            status, proposed_payment = STATUS_BY_STATE[t.to_state]
            if event == BookingEvent.REFUND_ISSUED:
                proposed_payment = PaymentStatus.REFUNDED

            changes = dict(updates)
            changes.update(
                state=t.to_state,
                status=status,
                payment_status=next_payment_status(booking.payment_status, proposed_payment),
                updated_at=now,
            )
            if t.to_state == BookingState.CANCELLATION_REQUESTED:
                changes["cancelled_at"] = now

            logger.debug(
                "Booking %s: %s -> %s (event: %s)",
                booking.id, booking.state.value, t.to_state.value, event.value,
            )
            return TransitionResult(
                previous_state=booking.state,
                booking=booking.model_copy(update=changes),
                events=(event,),
                side_effects=effects,
            )

        return InvalidTransition(
            state=booking.state,
            event=event,
            reason=rejection,
            valid_events=tuple(self.get_valid_events(booking.state)),
        )

    def apply_all(
        self,
        booking: Booking,
        steps: Sequence[Union[BookingEvent, tuple[BookingEvent, Mapping[str, Any]]]],
        now: Optional[datetime] = None,
    ) -> Outcome:
        """
        Chain several events into one transition so the caller writes once.

        Stops at the first rejected event and returns its InvalidTransition;
        nothing from the earlier events is kept in that case.
        """
        if not steps:
            raise ValidationError("apply_all needs at least one event")

        current = booking
        events: list[BookingEvent] = []
        effects: list[SideEffect] = []
        for step in steps:
            event, data = step if isinstance(step, tuple) else (step, None)
            outcome = self.apply(current, event, data, now=now)
            if isinstance(outcome, InvalidTransition):
                return outcome
            current = outcome.booking
            events.append(event)
            for effect in outcome.side_effects:
                if effect not in effects:
                    effects.append(effect)

        return TransitionResult(
            previous_state=booking.state,
            booking=current,
            events=tuple(events),
            side_effects=tuple(effects),
        )

    def get_valid_events(self, state: BookingState) -> list[BookingEvent]:
        """Return every event the table accepts from ``state``, plus Reset."""
        events: list[BookingEvent] = []
        for t in self.TRANSITIONS:
            if t.from_state == state and t.event not in events:
                events.append(t.event)
        events.append(BookingEvent.RESET)
        return events

    def can_apply(self, booking: Booking, event: BookingEvent) -> bool:
        return isinstance(self.apply(booking, event), TransitionResult)

    @staticmethod
    def is_terminal(state: BookingState) -> bool:
        """Check if a booking in ``state`` has finished its lifecycle."""
        return state in (BookingState.CANCELLED, BookingState.BOOKING_COMPLETED)

    def _reset(self, booking: Booking, updates: dict[str, Any], now: datetime) -> TransitionResult:
        effects = (SideEffect.PERSIST_BOOKING,) + release_effects(booking)
        status, proposed_payment = STATUS_BY_STATE[BookingState.IDLE]

        changes = dict(_RESET_CLEARS)
        changes.update(updates)
        changes.update(
            state=BookingState.IDLE,
            status=status,
            payment_status=next_payment_status(booking.payment_status, proposed_payment),
            updated_at=now,
        )
        if booking.payment_status == PaymentStatus.PAID:
            # The refund still needs the payment reference.
            changes["stripe_payment_intent_id"] = booking.stripe_payment_intent_id

        logger.debug(
            "Booking %s: %s -> %s (event: %s)",
            booking.id, booking.state.value, BookingState.IDLE.value, BookingEvent.RESET.value,
        )
        return TransitionResult(
            previous_state=booking.state,
            booking=booking.model_copy(update=changes),
            events=(BookingEvent.RESET,),
            side_effects=effects,
        )

    @staticmethod
    def _checked_data(data: Optional[Mapping[str, Any]]) -> dict[str, Any]:
        if not data:
            return {}
        unknown = sorted(set(data) - UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Events cannot set booking fields: {unknown}", fields=unknown)
        return dict(data)
