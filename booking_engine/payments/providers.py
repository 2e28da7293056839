"""
Ports for the external collaborators the booking engine drives.

Concrete adapters live in ``stripe_provider`` and
``booking_engine.scheduling.calendly_provider``; tests substitute fakes.
"""

import logging
from decimal import Decimal
from typing import Iterable, Optional, Protocol

from booking_engine.lifecycle.state_machine import NOTIFICATION_EFFECTS, SideEffect
from booking_engine.logging_context import mask_identifier
from booking_engine.schemas.booking_schema import Booking
from booking_engine.schemas.webhook_schema import CheckoutParams, CheckoutSession, ProviderSession

logger = logging.getLogger(__name__)


class PaymentsProvider(Protocol):
    """Checkout primitives of the payments processor."""

    def create_checkout_session(self, params: CheckoutParams, idempotency_key: str) -> CheckoutSession: ...

    def retrieve_session(self, session_id: str) -> ProviderSession: ...

    def expire_session(self, session_id: str) -> None: ...

    def refund(
        self,
        payment_intent_id: str,
        idempotency_key: str,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
    ) -> str: ...


class SchedulingProvider(Protocol):
    """The external calendar that holds the booked event."""

    def cancel_event(self, event_uri: str, reason: Optional[str] = None) -> None: ...


class Notifier(Protocol):
    """Delivers confirmation, failure and cancellation notices."""

    def notify(self, effect: SideEffect, booking: Booking) -> None: ...


class LoggingNotifier:
    """Notifier that records notices in the log instead of sending them."""

    def notify(self, effect: SideEffect, booking: Booking) -> None:
        logger.info(
            "Notice %s for booking %s (client=%s, builder=%s, session=%s)",
            effect.value, booking.id, booking.client_id, booking.builder_id,
            mask_identifier(booking.stripe_session_id),
        )


def send_notifications(notifier: Notifier, booking: Booking, effects: Iterable[SideEffect]) -> None:
    """Deliver every notice among ``effects``.

    Runs after the booking is persisted. A failed notice is logged and does
    not undo the transition.
    """
    for effect in effects:
        if effect not in NOTIFICATION_EFFECTS:
            continue
        try:
            notifier.notify(effect, booking)
        except Exception:
            logger.exception("Failed to deliver %s for booking %s", effect.value, booking.id)
