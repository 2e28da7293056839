from booking_engine.lifecycle.state_machine import (
    BookingEvent,
    BookingStateMachine,
    InvalidTransition,
    SideEffect,
    TransitionResult,
)
from booking_engine.lifecycle.store import (
    BookingRepository,
    InMemoryBookingRepository,
    commit_transition,
)

__all__ = [
    "BookingStateMachine",
    "BookingEvent",
    "SideEffect",
    "TransitionResult",
    "InvalidTransition",
    "BookingRepository",
    "InMemoryBookingRepository",
    "commit_transition",
]
