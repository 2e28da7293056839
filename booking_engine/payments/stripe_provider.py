"""Stripe adapter for the PaymentsProvider port.

The secret key is passed per request instead of through the ``stripe``
module global, so one process can hold several providers and tests can
patch the resource classes.
"""

import logging
from contextlib import contextmanager
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterator, Optional

import stripe

from booking_engine.config import PaymentConfig, settings
from booking_engine.errors import NotFoundError, ProviderError, TransientProviderError
from booking_engine.logging_context import mask_identifier
from booking_engine.schemas.webhook_schema import CheckoutParams, CheckoutSession, ProviderSession

logger = logging.getLogger(__name__)

# Currencies Stripe charges in whole units.
ZERO_DECIMAL_CURRENCIES = frozenset({
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
    "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
})


def to_minor_units(amount: Any, currency: str) -> int:
    """Convert a decimal amount to the integer unit Stripe expects."""
    value = Decimal(str(amount))
    if currency.lower() not in ZERO_DECIMAL_CURRENCIES:
        value = value * 100
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@contextmanager
def _translated_errors(operation: str, **context: Any) -> Iterator[None]:
    """Map Stripe SDK errors onto the booking engine taxonomy."""
    try:
        yield
    except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
        logger.warning("Stripe %s failed transiently: %s", operation, exc)
        raise TransientProviderError(f"Stripe {operation} failed: {exc}", **context) from exc
    except stripe.InvalidRequestError as exc:
        if exc.http_status == 404 or getattr(exc, "code", None) == "resource_missing":
            raise NotFoundError(f"Stripe {operation}: resource not found", **context) from exc
        logger.error("Stripe rejected %s: %s", operation, exc)
        raise ProviderError(f"Stripe {operation} rejected: {exc}", **context) from exc
    except stripe.StripeError as exc:
        if isinstance(exc, stripe.APIError) or (exc.http_status or 0) >= 500:
            logger.warning("Stripe %s failed with a server error: %s", operation, exc)
            raise TransientProviderError(f"Stripe {operation} failed: {exc}", **context) from exc
        logger.error("Stripe %s failed: %s", operation, exc)
        raise ProviderError(f"Stripe {operation} failed: {exc}", **context) from exc


class StripePaymentsProvider:
    """Checkout sessions, expiry and refunds through the Stripe API."""

    def __init__(self, api_key: Optional[str] = None, config: Optional[PaymentConfig] = None) -> None:
        self._config = config or settings.payments
        self._api_key = api_key or self._config.stripe_secret_key
        if not self._api_key:
            raise ValueError("STRIPE_SECRET_KEY is not configured")

    def create_checkout_session(self, params: CheckoutParams, idempotency_key: str) -> CheckoutSession:
        metadata = {
            "bookingId": params.booking_id,
            "clientId": params.client_id,
            "builderId": params.builder_id,
            "sessionTypeId": params.session_type_id,
            "startTime": params.start_time,
            "endTime": params.end_time,
            "timeZone": params.timezone,
            **params.metadata,
        }
        with _translated_errors("checkout creation", booking_id=params.booking_id):
            session = stripe.checkout.Session.create(
                api_key=self._api_key,
                idempotency_key=idempotency_key,
                mode="payment",
                payment_method_types=["card"],
                client_reference_id=params.booking_id,
                line_items=[{
                    "price_data": {
                        "currency": params.currency.lower(),
                        "product_data": {
                            "name": params.title,
                            "description": f"{params.start_time} ({params.timezone})",
                        },
                        "unit_amount": to_minor_units(params.amount, params.currency),
                    },
                    "quantity": 1,
                }],
                metadata=metadata,
                payment_intent_data={"metadata": {"bookingId": params.booking_id, **params.metadata}},
                success_url=params.success_url,
                cancel_url=params.cancel_url,
            )
        logger.info(
            "Created checkout session %s for booking %s",
            mask_identifier(session["id"]), params.booking_id,
        )
        return CheckoutSession(id=session["id"], url=session.get("url"))

    def retrieve_session(self, session_id: str) -> ProviderSession:
        with _translated_errors("session lookup", session_id=mask_identifier(session_id)):
            session = stripe.checkout.Session.retrieve(session_id, api_key=self._api_key)
        intent = session.get("payment_intent")
        if intent is not None and not isinstance(intent, str):
            intent = intent["id"]
        return ProviderSession(
            id=session["id"],
            status=session.get("status"),
            payment_status=session.get("payment_status"),
            payment_intent_id=intent,
            metadata={k: str(v) for k, v in (session.get("metadata") or {}).items()},
        )

    def expire_session(self, session_id: str) -> None:
        with _translated_errors("session expiry", session_id=mask_identifier(session_id)):
            stripe.checkout.Session.expire(session_id, api_key=self._api_key)
        logger.info("Expired checkout session %s", mask_identifier(session_id))

    def refund(
        self,
        payment_intent_id: str,
        idempotency_key: str,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
    ) -> str:
        """Refund a payment, in full unless ``amount`` is given."""
        extra: dict[str, Any] = {}
        if amount is not None:
            extra["amount"] = to_minor_units(amount, currency or self._config.default_currency)
        with _translated_errors("refund", payment_intent=mask_identifier(payment_intent_id)):
            refund = stripe.Refund.create(
                payment_intent=payment_intent_id,
                api_key=self._api_key,
                idempotency_key=idempotency_key,
                **extra,
            )
        logger.info(
            "Refund %s issued for payment %s", refund["id"], mask_identifier(payment_intent_id),
        )
        return refund["id"]
