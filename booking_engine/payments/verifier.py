"""
HMAC-SHA256 webhook signature verification.

Two header schemes are supported:

- ``TIMESTAMPED``: ``t=<unix seconds>,v1=<hex>[,v1=<hex>...]`` signing
  ``"{t}.{payload}"``. Several ``v1`` entries may be present while a secret
  is being rotated. The timestamp must be within the tolerance window.
- ``PLAIN``: the hex digest of the payload, optionally prefixed ``sha256=``.

All digest comparisons are constant-time.
"""

import hashlib
import hmac
import logging
import time
from enum import Enum
from typing import Callable, Optional, Union

from booking_engine.config import settings
from booking_engine.errors import VerificationError

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300
SIGNATURE_TAG = "v1"

Payload = Union[bytes, str]


class SignatureScheme(str, Enum):
    TIMESTAMPED = "timestamped"
    PLAIN = "plain"


def _as_bytes(payload: Payload) -> bytes:
    return payload.encode("utf-8") if isinstance(payload, str) else payload


def compute_signature(secret: str, payload: Payload) -> str:
    """Hex HMAC-SHA256 of ``payload`` keyed by ``secret``."""
    return hmac.new(secret.encode("utf-8"), _as_bytes(payload), hashlib.sha256).hexdigest()


def _digest_equal(expected: str, candidate: str) -> bool:
    """Constant-time comparison that tolerates non-ASCII junk in the header."""
    return hmac.compare_digest(expected.encode("utf-8"), candidate.encode("utf-8"))


def sign(
    payload: Payload,
    secret: str,
    scheme: SignatureScheme = SignatureScheme.TIMESTAMPED,
    timestamp: Optional[int] = None,
) -> str:
    """Build the signature header a provider would send for ``payload``."""
    if scheme == SignatureScheme.PLAIN:
        return compute_signature(secret, payload)
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode("utf-8") + _as_bytes(payload)
    return f"t={ts},{SIGNATURE_TAG}={compute_signature(secret, signed)}"


def parse_timestamped_header(header: str) -> tuple[int, list[str]]:
    """Split a ``t=..,v1=..`` header into its timestamp and candidate signatures."""
    timestamp: Optional[int] = None
    signatures: list[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise VerificationError("Signature timestamp is not an integer") from None
        elif key == SIGNATURE_TAG and value:
            signatures.append(value)

    if timestamp is None:
        raise VerificationError("Signature header has no timestamp")
    if not signatures:
        raise VerificationError(f"Signature header has no {SIGNATURE_TAG} signature")
    return timestamp, signatures


class WebhookVerifier:
    """
    Authenticates inbound webhook deliveries for one provider.

    With no secret configured the verifier fails closed, unless it was
    built with ``allow_unsigned=True`` (development only), in which case
    it accepts and logs a warning on every delivery.
    """

    def __init__(
        self,
        secret: Optional[str] = None,
        scheme: SignatureScheme = SignatureScheme.TIMESTAMPED,
        tolerance_seconds: Optional[int] = None,
        allow_unsigned: Optional[bool] = None,
        provider: str = "webhook",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret or ""
        self._scheme = scheme
        self._tolerance = (
            tolerance_seconds if tolerance_seconds is not None
            else settings.webhooks.tolerance_seconds
        )
        self._allow_unsigned = (
            settings.is_development if allow_unsigned is None else allow_unsigned
        )
        self._provider = provider
        self._clock = clock

    @property
    def scheme(self) -> SignatureScheme:
        return self._scheme

    def verify(
        self,
        signature_header: Optional[str],
        raw_payload: Payload,
        secret: Optional[str] = None,
        scheme: Optional[SignatureScheme] = None,
    ) -> bool:
        """
        Verify a delivery's signature.

        Args:
            signature_header: The provider's signature header value.
            raw_payload: The request body exactly as received.
            secret: Overrides the configured secret.
            scheme: Overrides the configured scheme.

        Returns:
            True when the delivery is authentic.

        Raises:
            VerificationError: On a missing or malformed header, a
                signature mismatch, a stale timestamp, or no configured
                secret outside development.
        """
        secret = secret or self._secret
        scheme = scheme or self._scheme

        if not secret:
            if self._allow_unsigned:
                logger.warning(
                    "No %s signing secret configured; accepting unsigned delivery "
                    "(development mode)", self._provider,
                )
                return True
            logger.error("No %s signing secret configured; rejecting delivery", self._provider)
            raise VerificationError(
                f"{self._provider} webhook secret is not configured", provider=self._provider,
            )

        if not signature_header:
            logger.warning("Missing %s signature header", self._provider)
            raise VerificationError("Missing signature header", provider=self._provider)

        payload = _as_bytes(raw_payload)
        if scheme == SignatureScheme.PLAIN:
            return self._verify_plain(signature_header, payload, secret)
        return self._verify_timestamped(signature_header, payload, secret)

    def is_valid(
        self,
        signature_header: Optional[str],
        raw_payload: Payload,
        secret: Optional[str] = None,
        scheme: Optional[SignatureScheme] = None,
    ) -> bool:
        """Boolean form of ``verify`` that never raises."""
        try:
            return self.verify(signature_header, raw_payload, secret, scheme)
        except VerificationError:
            return False

    def _verify_plain(self, header: str, payload: bytes, secret: str) -> bool:
        candidate = header.strip()
        if candidate.startswith("sha256="):
            candidate = candidate[len("sha256="):]
        expected = compute_signature(secret, payload)
        if _digest_equal(expected, candidate.lower()):
            return True
        logger.warning("Invalid %s webhook signature", self._provider)
        raise VerificationError("Invalid signature", provider=self._provider)

    def _verify_timestamped(self, header: str, payload: bytes, secret: str) -> bool:
        timestamp, candidates = parse_timestamped_header(header)

        age = abs(self._clock() - timestamp)
        if age > self._tolerance:
            logger.warning(
                "Rejected %s webhook outside tolerance: %ds (max %ds)",
                self._provider, age, self._tolerance,
            )
            raise VerificationError(
                "Signature timestamp outside tolerance",
                provider=self._provider, age_seconds=int(age),
            )

        signed = f"{timestamp}.".encode("utf-8") + payload
        expected = compute_signature(secret, signed)
        matched = False
        for candidate in candidates:
            # Check every candidate, no early exit.
            matched |= _digest_equal(expected, candidate)
        if matched:
            return True
        logger.warning("Invalid %s webhook signature", self._provider)
        raise VerificationError("Invalid signature", provider=self._provider)


def verify(
    signature_header: Optional[str],
    raw_payload: Payload,
    secret: str,
    scheme: SignatureScheme = SignatureScheme.TIMESTAMPED,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
) -> bool:
    """One-shot verification with an explicit secret."""
    return WebhookVerifier(
        secret, scheme=scheme, tolerance_seconds=tolerance_seconds, allow_unsigned=False,
    ).verify(signature_header, raw_payload)
