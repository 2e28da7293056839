"""Short-lived record of already-applied provider events.

``claim`` is an atomic check-and-set: of any number of concurrent callers
presenting the same key, exactly one gets ``True``. Entries expire after
the configured TTL, which only needs to outlast the provider's redelivery
window.
"""

import logging
import threading
import time
from typing import Callable, Optional

from booking_engine.config import settings

logger = logging.getLogger(__name__)


class IdempotencyLedger:
    """In-process ledger of claimed keys."""

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds if ttl_seconds is not None else settings.webhooks.ledger_ttl_seconds
        self._clock = clock
        self._entries: dict[str, float] = {}
        self._lock = threading.Lock()

    def claim(self, key: str) -> bool:
        """Mark ``key`` as applied. Returns False if it already was."""
        now = self._clock()
        with self._lock:
            self._evict_expired(now)
            if key in self._entries:
                logger.debug("Ledger key already claimed: %s", key)
                return False
            self._entries[key] = now + self._ttl
            return True

    def release(self, key: str) -> None:
        """Forget ``key`` so a later redelivery can be applied."""
        with self._lock:
            self._entries.pop(key, None)

    def contains(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            expires = self._entries.get(key)
            return expires is not None and expires > now

    def __len__(self) -> int:
        with self._lock:
            self._evict_expired(self._clock())
            return len(self._entries)

    def _evict_expired(self, now: float) -> None:
        expired = [key for key, expires in self._entries.items() if expires <= now]
        for key in expired:
            del self._entries[key]
