"""Booking ID logging context for tracing requests across modules.

Provides a booking-aware logger that attaches the booking being worked on
to every log message, making it easy to follow one booking through a
webhook delivery, a status poll and the state machine in between.

Usage:
    from booking_engine.logging_context import get_booking_logger, set_booking_id

    set_booking_id("bk_123")
    logger = get_booking_logger(__name__)
    logger.info("Reconciling payment")  # -> [bk_123] Reconciling payment
"""

import logging
from contextvars import ContextVar
from typing import Optional

_booking_id: ContextVar[str] = ContextVar("booking_id", default="-")


def set_booking_id(booking_id: Optional[str]) -> None:
    """Set the booking ID for the current request context."""
    _booking_id.set(booking_id or "-")


def get_booking_id() -> str:
    """Retrieve the current booking ID."""
    return _booking_id.get()


class BookingIdFilter(logging.Filter):
    """Injects booking_id into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.booking_id = _booking_id.get()  # type: ignore[attr-defined]
        return True


def get_booking_logger(name: str) -> logging.Logger:
    """Return a logger with the BookingIdFilter attached.

    The filter adds ``booking_id`` to each record so formatters can
    include ``%(booking_id)s`` in their format string.
    """
    logger = logging.getLogger(name)
    if not any(isinstance(f, BookingIdFilter) for f in logger.filters):
        logger.addFilter(BookingIdFilter())
    return logger


def mask_identifier(value: Optional[str], visible: int = 4) -> str:
    """Mask a provider identifier for log output.

    Examples:
        >>> mask_identifier("cs_test_a1b2c3d4e5f6")
        'cs_t...e5f6'
        >>> mask_identifier("abc")
        '***'
    """
    if not value:
        return ""
    if len(value) <= visible * 2:
        return "*" * len(value)
    return f"{value[:visible]}...{value[-visible:]}"
