"""Error taxonomy shared by the resolver, state machine and reconciler."""

from typing import Any, Optional


class BookingEngineError(Exception):
    """Base class for all booking engine errors.

    ``retryable`` tells callers whether repeating the same request may
    succeed; ``context`` carries identifiers worth logging.
    """

    retryable = False

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = context


class ValidationError(BookingEngineError):
    """Malformed input. Never retried."""


class AuthenticationError(BookingEngineError):
    """Caller or webhook could not be authenticated. Never retried automatically."""


class VerificationError(AuthenticationError):
    """Webhook signature or timestamp verification failed."""


class NotFoundError(BookingEngineError):
    """A booking or provider session does not exist."""


class ProviderError(BookingEngineError):
    """A provider rejected the request in a way retrying will not fix."""


class TransientProviderError(BookingEngineError):
    """Network failure, rate limit or 5xx from a provider."""

    retryable = True


class InvalidTransitionError(BookingEngineError):
    """An event is not valid for the booking's current state."""

    def __init__(self, message: str, state: Optional[str] = None,
                 event: Optional[str] = None, **context: Any) -> None:
        super().__init__(message, **context)
        self.state = state
        self.event = event


class ConcurrentUpdateError(BookingEngineError):
    """Another request kept winning the conditional update on the same booking."""

    retryable = True


class PaymentRetryLimitExceeded(BookingEngineError):
    """The booking has used up its payment retries."""
