"""
Payment reconciliation: drives the booking state machine from provider callbacks.

Two inputs feed the same ``reconcile`` path:

1. A webhook pushed by the payments provider (authoritative).
2. A client poll of the checkout session after the browser returns from
   the provider's hosted page (liveness fallback).

Both map the provider's status onto ``PaymentStatus``, claim the outcome in
the idempotency ledger, and only then ask the state machine for a
transition. Whichever arrives second is a no-op.

Usage:
    reconciler = PaymentReconciler(repository, StripePaymentsProvider())
    checkout = reconciler.initiate_checkout(booking_id, client_id)
    ...
    reconciler.reconcile_webhook(request.headers["Stripe-Signature"], request.body)
"""

import hashlib
import json
from typing import Any, Optional

from booking_engine.config import AppConfig, settings
from booking_engine.errors import (
    AuthenticationError,
    BookingEngineError,
    InvalidTransitionError,
    NotFoundError,
    PaymentRetryLimitExceeded,
    ProviderError,
    ValidationError,
)
from booking_engine.lifecycle.state_machine import (
    BookingEvent,
    BookingStateMachine,
    InvalidTransition,
    TransitionResult,
)
from booking_engine.lifecycle.store import BookingRepository, commit_transition
from booking_engine.logging_context import get_booking_logger, mask_identifier, set_booking_id
from booking_engine.payments.ledger import IdempotencyLedger
from booking_engine.payments.providers import (
    LoggingNotifier,
    Notifier,
    PaymentsProvider,
    send_notifications,
)
from booking_engine.payments.refunds import refund_idempotency_key
from booking_engine.payments.verifier import SignatureScheme, WebhookVerifier
from booking_engine.schemas.booking_schema import Booking, BookingState, PaymentStatus
from booking_engine.schemas.webhook_schema import (
    CheckoutParams,
    CheckoutResult,
    EventSource,
    PaymentEvent,
    ProviderSession,
    ReconcileOutcome,
)

logger = get_booking_logger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
ASYNC_PAYMENT_FAILED = "checkout.session.async_payment_failed"
CHECKOUT_EXPIRED = "checkout.session.expired"
PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"

HANDLED_EVENT_TYPES = (
    CHECKOUT_COMPLETED,
    ASYNC_PAYMENT_SUCCEEDED,
    ASYNC_PAYMENT_FAILED,
    CHECKOUT_EXPIRED,
    PAYMENT_INTENT_FAILED,
)

_PAID_CHECKOUT_STATUSES = ("paid", "no_payment_required")

# States in which a booking no longer wants a payment.
CLOSED_STATES = (
    BookingState.IDLE,
    BookingState.CANCELLATION_REQUESTED,
    BookingState.CANCELLED,
)

ATTEMPT_METADATA_KEY = "paymentAttempt"


def map_session_status(status: Optional[str], payment_status: Optional[str]) -> Optional[PaymentStatus]:
    """
    Map a checkout session's status onto the internal payment status.

    Returns None while the outcome is still open, e.g. an unfinished
    checkout or a completed one waiting on a delayed payment method.
    """
    if payment_status in _PAID_CHECKOUT_STATUSES and status in (None, "complete"):
        return PaymentStatus.PAID
    if status == "expired":
        return PaymentStatus.FAILED
    return None


def _webhook_outcome(event_type: str, obj: dict[str, Any]) -> Optional[PaymentStatus]:
    if event_type == CHECKOUT_COMPLETED:
        return map_session_status("complete", obj.get("payment_status"))
    if event_type == ASYNC_PAYMENT_SUCCEEDED:
        return PaymentStatus.PAID
    if event_type in (ASYNC_PAYMENT_FAILED, CHECKOUT_EXPIRED, PAYMENT_INTENT_FAILED):
        return PaymentStatus.FAILED
    return None


def parse_payment_event(payload: dict[str, Any]) -> Optional[PaymentEvent]:
    """
    Normalize a payments webhook body.

    Returns:
        The parsed event, or None for event types the engine ignores.

    Raises:
        ValidationError: If the body lacks an id, type, object or bookingId.
    """
    event_id = payload.get("id")
    event_type = payload.get("type")
    if not event_id or not event_type:
        raise ValidationError("Webhook payload is missing id or type")
    if event_type not in HANDLED_EVENT_TYPES:
        return None

    obj = (payload.get("data") or {}).get("object")
    if not isinstance(obj, dict):
        raise ValidationError("Webhook payload has no data object", event_id=event_id)

    metadata = obj.get("metadata") or {}
    booking_id = metadata.get("bookingId")
    if not booking_id:
        raise ValidationError(
            "Webhook payload metadata is missing bookingId",
            event_id=event_id, event_type=event_type,
        )

    if event_type == PAYMENT_INTENT_FAILED:
        session_id = None
        intent_id = obj.get("id")
        failure = (obj.get("last_payment_error") or {}).get("message")
    else:
        session_id = obj.get("id")
        intent_id = obj.get("payment_intent")
        failure = None
    if intent_id is not None and not isinstance(intent_id, str):
        intent_id = intent_id.get("id")
    attempt = _parse_attempt(metadata.get(ATTEMPT_METADATA_KEY), event_id)

    return PaymentEvent(
        event_id=event_id,
        event_type=event_type,
        source=EventSource.WEBHOOK,
        booking_id=booking_id,
        provider_session_id=session_id,
        payment_intent_id=intent_id,
        payment_attempt=attempt,
        payment_status=_webhook_outcome(event_type, obj),
        failure_message=failure,
    )


def _parse_attempt(raw: Any, event_id: Optional[str] = None) -> Optional[int]:
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError(
            f"Payment attempt metadata is not a number: {raw!r}", event_id=event_id,
        ) from None


def next_attempt(booking: Booking) -> int:
    """Attempt number the next checkout for ``booking`` belongs to."""
    if booking.state == BookingState.PAYMENT_FAILED:
        return booking.payment_retries + 1
    return booking.payment_retries


def checkout_idempotency_key(booking: Booking) -> str:
    """Deterministic key for one payment attempt of one booking.

    A network retry of the same attempt reuses the key, so the provider
    returns the original checkout instead of opening a second one. A retry
    after a decline is a new attempt and gets a new key.
    """
    raw = f"checkout:{booking.id}:{booking.client_id}:{next_attempt(booking)}"
    return "bk-" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:40]


class PaymentReconciler:
    """
    Opens checkouts and folds provider payment outcomes into bookings.

    The reconciler holds no per-booking state; every call works on the row
    fetched immediately before it, and writes through ``commit_transition``.
    """

    def __init__(
        self,
        repository: BookingRepository,
        provider: PaymentsProvider,
        machine: Optional[BookingStateMachine] = None,
        ledger: Optional[IdempotencyLedger] = None,
        verifier: Optional[WebhookVerifier] = None,
        notifier: Optional[Notifier] = None,
        config: Optional[AppConfig] = None,
    ) -> None:
        self._config = config or settings
        self._repository = repository
        self._provider = provider
        self._machine = machine or BookingStateMachine()
        self._ledger = ledger or IdempotencyLedger()
        self._verifier = verifier or WebhookVerifier(
            self._config.webhooks.stripe_webhook_secret,
            scheme=SignatureScheme.TIMESTAMPED,
            tolerance_seconds=self._config.webhooks.tolerance_seconds,
            allow_unsigned=self._config.is_development,
            provider="stripe",
        )
        self._notifier = notifier or LoggingNotifier()

    # --- Checkout ---

    def initiate_checkout(
        self,
        booking_id: str,
        client_id: str,
        idempotency_key: Optional[str] = None,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> CheckoutResult:
        """
        Open a checkout for a scheduled booking, or for a retry after a decline.

        The provider session is created before the booking moves to
        PAYMENT_PROCESSING, so a provider failure leaves the booking as it was.
        On a retry the declined checkout is expired first, so only one
        checkout per booking can take money at a time.

        Raises:
            NotFoundError: Unknown booking.
            AuthenticationError: ``client_id`` does not own the booking.
            ValidationError: The booking does not take payment.
            PaymentRetryLimitExceeded: A retry would exceed the configured cap.
            InvalidTransitionError: The booking is not awaiting payment, or
                the declined checkout turned out to be paid after all.
            TransientProviderError: The provider could not be reached.
        """
        set_booking_id(booking_id)
        booking = self._owned_booking(booking_id, client_id)

        if not booking.payment_required:
            raise ValidationError("Booking does not require payment", booking_id=booking_id)
        if booking.state == BookingState.PAYMENT_FAILED:
            self._check_retry_budget(booking)

        preview = self._machine.apply(booking, BookingEvent.PAYMENT_INITIATED)
        if isinstance(preview, InvalidTransition):
            raise preview.to_error()

        retrying = booking.state == BookingState.PAYMENT_FAILED
        if retrying and booking.stripe_session_id:
            self._close_declined_checkout(booking)

        attempt = next_attempt(booking)
        key = idempotency_key or checkout_idempotency_key(booking)
        params = CheckoutParams(
            booking_id=booking.id,
            client_id=booking.client_id,
            builder_id=booking.builder_id,
            session_type_id=booking.session_type_id,
            title=f"Session {booking.session_type_id}",
            amount=booking.amount,
            currency=booking.currency or self._config.payments.default_currency,
            start_time=booking.start_time.isoformat(),
            end_time=booking.end_time.isoformat(),
            timezone=booking.client_timezone,
            success_url=success_url or self._config.payments.success_url,
            cancel_url=cancel_url or self._config.payments.cancel_url,
            metadata={ATTEMPT_METADATA_KEY: str(attempt)},
        )
        session = self._provider.create_checkout_session(params, key)

        def plan(current: Booking) -> Optional[TransitionResult]:
            if (
                current.state == BookingState.PAYMENT_PROCESSING
                and current.stripe_session_id == session.id
            ):
                return None
            data: dict[str, Any] = {
                "stripe_session_id": session.id,
                "payment_retries": next_attempt(current),
            }
            if current.state == BookingState.PAYMENT_FAILED:
                data["stripe_payment_intent_id"] = None
            outcome = self._machine.apply(current, BookingEvent.PAYMENT_INITIATED, data)
            if isinstance(outcome, InvalidTransition):
                logger.error(
                    "Checkout %s opened for booking %s but the booking moved to %s; "
                    "session needs manual expiry",
                    mask_identifier(session.id), booking_id, current.state.value,
                )
                raise outcome.to_error()
            return outcome

        commit_transition(
            self._repository, booking_id, plan, self._config.payments.max_concurrency_retries,
        )
        logger.info("Checkout %s opened for booking %s", mask_identifier(session.id), booking_id)
        return CheckoutResult(checkout_url=session.url, provider_session_id=session.id)

    def retry_payment(
        self, booking_id: str, client_id: str, idempotency_key: Optional[str] = None,
    ) -> CheckoutResult:
        """Open a new checkout after a decline, within the retry cap."""
        set_booking_id(booking_id)
        booking = self._owned_booking(booking_id, client_id)
        if booking.state != BookingState.PAYMENT_FAILED:
            raise InvalidTransitionError(
                f"Booking {booking_id} has no failed payment to retry",
                state=booking.state.value, event=BookingEvent.PAYMENT_INITIATED.value,
            )
        return self.initiate_checkout(booking_id, client_id, idempotency_key)

    # --- Reconciliation ---

    def reconcile_webhook(self, signature_header: Optional[str], raw_payload: bytes) -> ReconcileOutcome:
        """
        Verify, parse and apply one webhook delivery.

        Verification happens before the body is parsed or any booking read.

        Raises:
            VerificationError: Bad or missing signature.
            ValidationError: Unparseable body or missing metadata.
        """
        self._verifier.verify(signature_header, raw_payload)
        try:
            payload = json.loads(raw_payload)
        except (ValueError, TypeError):
            raise ValidationError("Webhook body is not valid JSON") from None
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body is not a JSON object")

        event = parse_payment_event(payload)
        if event is None:
            logger.info("Ignoring webhook event type %s", payload.get("type"))
            return ReconcileOutcome(applied=False, reason="ignored event type")
        return self.reconcile(event)

    def reconcile_poll(
        self, booking_id: str, client_id: str, session_id: Optional[str] = None,
    ) -> ReconcileOutcome:
        """
        Pull the checkout status from the provider and apply it.

        Raises:
            NotFoundError: Unknown booking, or no checkout to look up.
            AuthenticationError: ``client_id`` does not own the booking, or
                the session belongs to a different booking.
        """
        set_booking_id(booking_id)
        booking = self._owned_booking(booking_id, client_id)
        session_id = session_id or booking.stripe_session_id
        if not session_id:
            raise NotFoundError(f"Booking {booking_id} has no checkout session", booking_id=booking_id)

        session = self._provider.retrieve_session(session_id)
        owner = session.metadata.get("bookingId")
        if owner and owner != booking_id:
            logger.warning(
                "Checkout %s belongs to booking %s, not %s",
                mask_identifier(session_id), owner, booking_id,
            )
            raise AuthenticationError("Checkout session does not belong to this booking")

        return self.reconcile(self._poll_event(booking_id, session))

    def reconcile(self, event: PaymentEvent) -> ReconcileOutcome:
        """
        Apply one payment outcome to its booking, at most once.

        Failures reported for a checkout the booking has since replaced are
        ignored. A payment the booking can no longer use, because it was
        cancelled, reset or already paid through another checkout, is
        refunded instead of applied.

        Returns:
            Whether a transition was persisted, and the booking's state after.

        Raises:
            NotFoundError: No local booking matches the event.
            InvalidTransitionError: The outcome does not fit the booking's state.
            ConcurrentUpdateError: The optimistic-concurrency budget ran out.
            TransientProviderError, ProviderError: Refunding an unusable
                payment failed.
        """
        set_booking_id(event.booking_id)
        booking = self._locate(event)
        set_booking_id(booking.id)
        if event.payment_status is None:
            logger.info("Payment for booking %s still pending (%s)", booking.id, event.event_type)
            return self._outcome(False, booking, "payment still pending")

        superseded = self._is_superseded(booking, event)
        if superseded and event.payment_status != PaymentStatus.PAID:
            logger.info(
                "Ignoring %s for replaced checkout %s of booking %s (current %s, attempt %s)",
                event.event_type, mask_identifier(event.provider_session_id or event.payment_intent_id),
                booking.id, mask_identifier(booking.stripe_session_id), booking.payment_retries,
            )
            return self._outcome(False, booking, "superseded checkout")

        key = event.ledger_key
        if not self._ledger.claim(key):
            logger.info(
                "Duplicate %s outcome for booking %s via %s; skipping",
                event.payment_status.value, booking.id, event.source.value,
            )
            return self._outcome(False, booking, "duplicate")

        if event.payment_status == PaymentStatus.PAID and self._is_orphaned(booking, superseded):
            return self._refund_orphaned_payment(booking, event, key)

        displaced = booking.stripe_session_id if superseded else None
        try:
            result = commit_transition(
                self._repository, booking.id,
                lambda current: self._plan_payment(current, event),
                self._config.payments.max_concurrency_retries,
            )
        except (InvalidTransitionError, NotFoundError):
            self._ledger.release(key)
            raise
        except BookingEngineError as exc:
            if exc.retryable:
                self._ledger.release(key)
            raise

        if result is None:
            current = self._repository.get(booking.id) or booking
            return self._outcome(False, current, "already applied")

        logger.info(
            "Booking %s: %s -> %s via %s (%s)",
            booking.id, result.previous_state.value, result.state.value,
            event.source.value, event.event_type,
        )
        if displaced and displaced != result.booking.stripe_session_id:
            self._expire_displaced_checkout(booking.id, displaced)
        send_notifications(self._notifier, result.booking, result.side_effects)
        return self._outcome(True, result.booking, "applied")

    # --- Internals ---

    @staticmethod
    def _is_superseded(booking: Booking, event: PaymentEvent) -> bool:
        """Whether ``event`` belongs to a checkout the booking has replaced."""
        if event.payment_attempt is not None and event.payment_attempt != booking.payment_retries:
            return True
        if event.provider_session_id:
            return bool(booking.stripe_session_id) and booking.stripe_session_id != event.provider_session_id
        return bool(
            event.payment_intent_id
            and booking.stripe_payment_intent_id
            and booking.stripe_payment_intent_id != event.payment_intent_id
        )

    @staticmethod
    def _is_orphaned(booking: Booking, superseded: bool) -> bool:
        """Whether a captured payment has no booking left to pay for."""
        settled = booking.payment_status in (PaymentStatus.PAID, PaymentStatus.REFUNDED)
        if booking.state in CLOSED_STATES:
            return superseded or not settled
        return superseded and settled

    def _refund_orphaned_payment(self, booking: Booking, event: PaymentEvent, key: str) -> ReconcileOutcome:
        intent = event.payment_intent_id
        try:
            if not intent and event.provider_session_id:
                intent = self._provider.retrieve_session(event.provider_session_id).payment_intent_id
            if not intent:
                raise ProviderError(
                    "Captured payment has no payment reference to refund", booking_id=booking.id,
                )
            refund_id = self._provider.refund(intent, refund_idempotency_key(booking.id, intent))
        except BookingEngineError:
            self._ledger.release(key)
            logger.error(
                "Payment %s on checkout %s for booking %s (state=%s) could not be refunded; "
                "needs manual reconciliation",
                mask_identifier(intent), mask_identifier(event.provider_session_id),
                booking.id, booking.state.value,
            )
            raise
        logger.warning(
            "Refunded payment %s on checkout %s: booking %s is %s (payment %s, holds %s); refund %s",
            mask_identifier(intent), mask_identifier(event.provider_session_id), booking.id,
            booking.state.value, booking.payment_status.value,
            mask_identifier(booking.stripe_session_id), refund_id,
        )
        return self._outcome(False, booking, "refunded")

    def _expire_displaced_checkout(self, booking_id: str, session_id: str) -> None:
        try:
            self._provider.expire_session(session_id)
        except BookingEngineError as exc:
            logger.error(
                "Booking %s was paid through another checkout but %s could not be expired: %s; "
                "needs manual expiry",
                booking_id, mask_identifier(session_id), exc,
            )

    def _close_declined_checkout(self, booking: Booking) -> None:
        session_id = booking.stripe_session_id
        try:
            self._provider.expire_session(session_id)
            return
        except NotFoundError:
            logger.info(
                "Declined checkout %s of booking %s no longer exists",
                mask_identifier(session_id), booking.id,
            )
            return
        except ProviderError as exc:
            logger.info(
                "Declined checkout %s of booking %s could not be expired (%s); checking its status",
                mask_identifier(session_id), booking.id, exc,
            )

        session = self._provider.retrieve_session(session_id)
        if map_session_status(session.status, session.payment_status) != PaymentStatus.PAID:
            return
        logger.warning(
            "Declined checkout %s of booking %s was paid after all; applying it instead of "
            "opening a new checkout",
            mask_identifier(session_id), booking.id,
        )
        outcome = self.reconcile(self._poll_event(booking.id, session))
        raise InvalidTransitionError(
            f"Booking {booking.id} was already paid by checkout {mask_identifier(session_id)}",
            state=outcome.state, event=BookingEvent.PAYMENT_INITIATED.value,
        )

    def _plan_payment(self, booking: Booking, event: PaymentEvent) -> Optional[TransitionResult]:
        if event.payment_status != PaymentStatus.PAID and self._is_superseded(booking, event):
            return None
        data: dict[str, Any] = {}
        if event.provider_session_id and event.provider_session_id != booking.stripe_session_id:
            data["stripe_session_id"] = event.provider_session_id
        if event.payment_intent_id:
            data["stripe_payment_intent_id"] = event.payment_intent_id

        if event.payment_status == PaymentStatus.PAID:
            if booking.payment_status in (PaymentStatus.PAID, PaymentStatus.REFUNDED):
                logger.info(
                    "Booking %s already %s; ignoring repeated success",
                    booking.id, booking.payment_status.value,
                )
                return None
            outcome = self._machine.apply_all(booking, [
                (BookingEvent.PAYMENT_CONFIRMED, data),
                BookingEvent.BOOKING_FINALIZED,
            ])
        else:
            if booking.payment_status in (PaymentStatus.PAID, PaymentStatus.REFUNDED):
                logger.info(
                    "Booking %s already %s; ignoring stale failure %s",
                    booking.id, booking.payment_status.value, event.event_type,
                )
                return None
            if booking.state == BookingState.PAYMENT_FAILED:
                return None
            if event.failure_message:
                logger.info("Payment declined for booking %s: %s", booking.id, event.failure_message)
            outcome = self._machine.apply(booking, BookingEvent.PAYMENT_DECLINED, data)

        if isinstance(outcome, InvalidTransition):
            logger.error(
                "Payment %s for booking %s in state %s cannot be applied; "
                "needs manual reconciliation (event=%s, session=%s)",
                event.payment_status.value, booking.id, booking.state.value,
                event.event_id, mask_identifier(event.provider_session_id),
            )
            raise outcome.to_error()
        return outcome

    def _locate(self, event: PaymentEvent) -> Booking:
        booking = None
        if event.booking_id:
            booking = self._repository.get(event.booking_id)
        if booking is None and event.provider_session_id:
            booking = self._repository.find_by_stripe_session(event.provider_session_id)
        if booking is None:
            raise NotFoundError(
                "No booking matches payment event",
                booking_id=event.booking_id, event_id=event.event_id,
            )
        return booking

    def _owned_booking(self, booking_id: str, client_id: str) -> Booking:
        booking = self._repository.get(booking_id)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found", booking_id=booking_id)
        if booking.client_id != client_id:
            logger.warning("Client %s denied access to booking %s", client_id, booking_id)
            raise AuthenticationError("Booking belongs to another client", booking_id=booking_id)
        return booking

    def _check_retry_budget(self, booking: Booking) -> None:
        cap = self._config.payments.max_payment_retries
        if booking.payment_retries >= cap:
            logger.warning(
                "Booking %s used all %d payment retries", booking.id, cap,
            )
            raise PaymentRetryLimitExceeded(
                f"Payment retry limit of {cap} reached",
                booking_id=booking.id, retries=booking.payment_retries,
            )

    @staticmethod
    def _poll_event(booking_id: str, session: ProviderSession) -> PaymentEvent:
        return PaymentEvent(
            event_id=f"poll:{session.id}",
            event_type="checkout.session.poll",
            source=EventSource.POLL,
            booking_id=booking_id,
            provider_session_id=session.id,
            payment_intent_id=session.payment_intent_id,
            payment_status=map_session_status(session.status, session.payment_status),
            payment_attempt=_parse_attempt(session.metadata.get(ATTEMPT_METADATA_KEY), session.id),
        )

    @staticmethod
    def _outcome(applied: bool, booking: Booking, reason: str) -> ReconcileOutcome:
        return ReconcileOutcome(
            applied=applied,
            booking_id=booking.id,
            state=booking.state.value,
            payment_status=booking.payment_status,
            reason=reason,
        )
