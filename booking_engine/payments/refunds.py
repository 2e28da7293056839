"""
Refund policy for cancelled bookings.

A client cancelling with enough notice gets the whole payment back, a
late cancellation gets part of it, and a last-minute one gets nothing.
Cancellations the client did not ask for are always refunded in full.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from booking_engine.config import PaymentConfig
from booking_engine.schemas.booking_schema import Booking, PaymentStatus, RefundPolicy

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class RefundDecision:
    """How much of a booking's payment to give back, and why."""
    policy: RefundPolicy
    amount: Decimal
    reason: str

    @property
    def refunds(self) -> bool:
        return self.policy != RefundPolicy.NONE and self.amount > 0

    @property
    def is_full(self) -> bool:
        return self.policy == RefundPolicy.FULL

    def as_fields(self) -> dict:
        return {"refund_policy": self.policy, "refund_amount": self.amount}


def refund_idempotency_key(booking_id: str, payment_intent_id: str) -> str:
    """Key shared by every path that refunds the same payment."""
    return f"refund:{booking_id}:{payment_intent_id}"


def full_refund(booking: Booking, reason: str) -> RefundDecision:
    return RefundDecision(RefundPolicy.FULL, booking.amount, reason)


def calculate_refund(booking: Booking, now: datetime, config: PaymentConfig) -> RefundDecision:
    """
    Apply the notice-based policy to a client cancellation.

    Args:
        booking: The booking being cancelled.
        now: Time of the cancellation.
        config: Notice thresholds and the partial refund percentage.

    Returns:
        FULL at or above the full-notice threshold, PARTIAL at or above the
        partial threshold, NONE below it or when nothing was paid.
    """
    if booking.payment_status != PaymentStatus.PAID:
        return RefundDecision(RefundPolicy.NONE, Decimal("0"), "no captured payment")

    hours = (booking.start_time - now).total_seconds() / 3600
    if hours >= config.full_refund_notice_hours:
        return full_refund(
            booking, f"cancelled at least {config.full_refund_notice_hours:g}h in advance",
        )
    if hours >= config.partial_refund_notice_hours:
        share = Decimal(str(config.partial_refund_percent)) / 100
        amount = (booking.amount * share).quantize(_CENT, rounding=ROUND_HALF_UP)
        return RefundDecision(
            RefundPolicy.PARTIAL, amount,
            f"cancelled {config.partial_refund_notice_hours:g}-"
            f"{config.full_refund_notice_hours:g}h in advance "
            f"({config.partial_refund_percent:g}% refund)",
        )
    return RefundDecision(
        RefundPolicy.NONE, Decimal("0"),
        f"cancelled less than {config.partial_refund_notice_hours:g}h in advance",
    )
