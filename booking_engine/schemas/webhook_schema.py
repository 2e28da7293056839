"""Provider payloads normalized for reconciliation."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from booking_engine.schemas.booking_schema import PaymentStatus


class EventSource(str, Enum):
    WEBHOOK = "webhook"
    POLL = "poll"


class CheckoutParams(BaseModel):
    """Everything the payments provider needs to open a checkout."""

    booking_id: str
    client_id: str
    builder_id: str
    session_type_id: str
    title: str
    amount: Decimal
    currency: str
    start_time: str
    end_time: str
    timezone: str
    success_url: str
    cancel_url: str
    metadata: dict[str, str] = Field(default_factory=dict)


class CheckoutSession(BaseModel):
    """Provider checkout reference returned on creation."""

    id: str
    url: Optional[str] = None


class ProviderSession(BaseModel):
    """Checkout session state as reported by the payments provider."""

    id: str
    status: Optional[str] = None
    payment_status: Optional[str] = None
    payment_intent_id: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)


class CheckoutResult(BaseModel):
    checkout_url: Optional[str]
    provider_session_id: str


class PaymentEvent(BaseModel):
    """A payment outcome, whether pushed by webhook or pulled by a status poll."""

    event_id: str
    event_type: str
    source: EventSource
    booking_id: Optional[str] = None
    provider_session_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    payment_attempt: Optional[int] = None
    payment_status: Optional[PaymentStatus] = None
    failure_message: Optional[str] = None

    @property
    def ledger_key(self) -> str:
        """Key shared by the webhook and poll paths for the same outcome."""
        ref = self.provider_session_id or self.payment_intent_id or self.event_id
        outcome = self.payment_status.value if self.payment_status else "none"
        return f"payment:{ref}:{outcome}"


class SchedulingEvent(BaseModel):
    """A callback from the external scheduling provider."""

    event_type: str
    booking_id: Optional[str] = None
    calendly_event_id: Optional[str] = None
    calendly_event_uri: Optional[str] = None
    calendly_invitee_uri: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    cancelled_by: Optional[str] = None

    @property
    def ledger_key(self) -> str:
        ref = (
            self.calendly_invitee_uri or self.calendly_event_uri or self.calendly_event_id
            or f"booking:{self.booking_id}"
        )
        return f"scheduling:{ref}:{self.event_type}"


class ReconcileOutcome(BaseModel):
    """What a reconcile call did with an event."""

    applied: bool
    booking_id: Optional[str] = None
    state: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None
    reason: str = ""
