from booking_engine.schemas.availability_schema import (
    AvailabilityException,
    AvailabilityRule,
    BuilderAvailability,
    TimeSlot,
)
from booking_engine.schemas.booking_schema import (
    Booking,
    BookingState,
    BookingStatus,
    PaymentPolicy,
    PaymentStatus,
    RefundPolicy,
    SessionType,
)
from booking_engine.schemas.webhook_schema import (
    CheckoutResult,
    EventSource,
    PaymentEvent,
    ReconcileOutcome,
    SchedulingEvent,
)

__all__ = [
    "AvailabilityRule",
    "AvailabilityException",
    "TimeSlot",
    "BuilderAvailability",
    "SessionType",
    "Booking",
    "BookingState",
    "BookingStatus",
    "PaymentStatus",
    "PaymentPolicy",
    "RefundPolicy",
    "EventSource",
    "PaymentEvent",
    "SchedulingEvent",
    "CheckoutResult",
    "ReconcileOutcome",
]
