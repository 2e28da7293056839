"""Session type and booking data models."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class PaymentStatus(str, Enum):
    UNPAID = "UNPAID"
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PaymentPolicy(str, Enum):
    """Whether a session type collects payment before confirmation."""

    REQUIRED = "REQUIRED"
    WAIVED = "WAIVED"


class RefundPolicy(str, Enum):
    """How much of a captured payment a cancellation gives back."""

    FULL = "FULL"
    PARTIAL = "PARTIAL"
    NONE = "NONE"


class BookingState(str, Enum):
    """All states in a booking's lifecycle."""

    IDLE = "IDLE"
    SESSION_TYPE_SELECTED = "SESSION_TYPE_SELECTED"
    SCHEDULING_INITIATED = "SCHEDULING_INITIATED"
    SCHEDULED = "SCHEDULED"
    PAYMENT_PROCESSING = "PAYMENT_PROCESSING"
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    BOOKING_CONFIRMED = "BOOKING_CONFIRMED"
    BOOKING_COMPLETED = "BOOKING_COMPLETED"
    CANCELLATION_REQUESTED = "CANCELLATION_REQUESTED"
    CANCELLED = "CANCELLED"


class SessionType(BaseModel):
    """A bookable offering published by a builder."""

    id: str
    builder_id: str
    title: str
    duration_minutes: int = Field(gt=0)
    price: Decimal = Field(ge=0)
    currency: str = "usd"
    is_active: bool = True
    payment_policy: PaymentPolicy = PaymentPolicy.REQUIRED
    calendly_event_type_id: Optional[str] = None
    calendly_event_type_uri: Optional[str] = None

    @property
    def requires_payment(self) -> bool:
        return self.payment_policy == PaymentPolicy.REQUIRED and self.price > 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Booking(BaseModel):
    """The central booking aggregate, as stored by a BookingRepository."""

    id: str
    builder_id: str
    client_id: str
    session_type_id: str
    start_time: datetime
    end_time: datetime
    state: BookingState = BookingState.IDLE
    status: BookingStatus = BookingStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    payment_required: bool = True
    amount: Decimal = Field(default=Decimal("0"), ge=0)
    currency: str = "usd"
    payment_retries: int = 0
    stripe_session_id: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    calendly_event_id: Optional[str] = None
    calendly_event_uri: Optional[str] = None
    calendly_invitee_uri: Optional[str] = None
    client_timezone: str = "UTC"
    builder_timezone: str = "UTC"
    notes: Optional[str] = None
    cancel_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    refund_policy: Optional[RefundPolicy] = None
    refund_amount: Optional[Decimal] = None
    version: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def blocks_calendar(self) -> bool:
        """Whether this booking still occupies its time on the builder's calendar."""
        return self.state not in (BookingState.IDLE, BookingState.CANCELLED)

    @property
    def is_terminal(self) -> bool:
        return self.state in (BookingState.CANCELLED, BookingState.BOOKING_COMPLETED)

    @field_validator("start_time", "end_time")
    @classmethod
    def _require_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None or value.utcoffset() is None:
            raise ValueError("booking instants must carry a timezone offset")
        return value

    @model_validator(mode="after")
    def _check_order(self) -> "Booking":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self
