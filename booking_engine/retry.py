"""Bounded exponential backoff for calls to external providers."""

import logging
import time
from typing import Callable, Optional, TypeVar

from booking_engine.errors import BookingEngineError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_with_backoff(
    operation: Callable[[], T],
    *,
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    backoff_factor: float = 2.0,
    operation_name: str = "provider call",
    booking_id: Optional[str] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run ``operation``, retrying retryable booking errors with exponential backoff.

    Non-retryable errors propagate immediately. After ``max_retries``
    retries the last error is re-raised.
    """
    attempt = 0
    delay = initial_delay
    while True:
        attempt += 1
        try:
            return operation()
        except BookingEngineError as exc:
            if not exc.retryable or attempt > max_retries:
                logger.error(
                    "Failed %s after %d attempt(s) (booking=%s): %s",
                    operation_name, attempt, booking_id, exc,
                )
                raise
            logger.warning(
                "Retrying %s (attempt %d/%d, booking=%s) in %.1fs: %s",
                operation_name, attempt, max_retries, booking_id, delay, exc,
            )
            sleep(delay)
            delay = min(delay * backoff_factor, max_delay)
