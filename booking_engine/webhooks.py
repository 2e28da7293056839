"""
Framework-agnostic webhook endpoints.

Each handler takes the raw body and signature header, runs the matching
reconciler, and maps the outcome onto the status code the provider should
see. Providers redeliver on non-2xx: retryable failures answer 503, and a
booking that does not exist locally is acknowledged with 200 and logged.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from booking_engine.errors import (
    AuthenticationError,
    BookingEngineError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from booking_engine.lifecycle.service import BookingService
from booking_engine.logging_context import get_booking_id, set_booking_id
from booking_engine.payments.reconciler import PaymentReconciler
from booking_engine.schemas.webhook_schema import ReconcileOutcome

logger = logging.getLogger(__name__)


@dataclass
class WebhookResponse:
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)


def _respond(provider: str, handler: Callable[[], ReconcileOutcome]) -> WebhookResponse:
    set_booking_id(None)
    try:
        outcome = handler()
    except AuthenticationError as exc:
        logger.warning("Rejected %s webhook: %s", provider, exc.message)
        return WebhookResponse(401, {"error": "invalid signature"})
    except ValidationError as exc:
        logger.warning("Malformed %s webhook: %s %s", provider, exc.message, exc.context)
        return WebhookResponse(400, {"error": exc.message})
    except NotFoundError as exc:
        logger.warning("No local booking for %s webhook: %s %s", provider, exc.message, exc.context)
        return WebhookResponse(200, {"received": True, "applied": False, "reason": "booking not found"})
    except InvalidTransitionError as exc:
        logger.error(
            "%s webhook rejected by booking %s in state %s: %s",
            provider, get_booking_id(), exc.state, exc.message,
        )
        return WebhookResponse(409, {"error": exc.message, "state": exc.state})
    except BookingEngineError as exc:
        if exc.retryable:
            logger.warning("Deferring %s webhook for redelivery: %s", provider, exc.message)
            return WebhookResponse(503, {"error": "temporarily unavailable"})
        logger.error("Failed to process %s webhook: %s %s", provider, exc.message, exc.context)
        return WebhookResponse(500, {"error": exc.message})

    return WebhookResponse(200, {
        "received": True,
        "applied": outcome.applied,
        "reason": outcome.reason,
        "booking_id": outcome.booking_id,
        "state": outcome.state,
    })


def handle_payment_webhook(
    reconciler: PaymentReconciler, signature_header: Optional[str], raw_body: bytes,
) -> WebhookResponse:
    """Entry point for payments provider deliveries."""
    return _respond("stripe", lambda: reconciler.reconcile_webhook(signature_header, raw_body))


def handle_scheduling_webhook(
    service: BookingService, signature_header: Optional[str], raw_body: bytes,
) -> WebhookResponse:
    """Entry point for scheduling provider deliveries."""
    return _respond("calendly", lambda: service.handle_scheduling_webhook(signature_header, raw_body))
