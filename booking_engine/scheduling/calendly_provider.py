"""Calendly adapter for the SchedulingProvider port, plus webhook payload parsing."""

import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError as SchemaError

from booking_engine.config import SchedulingConfig, settings
from booking_engine.errors import (
    NotFoundError,
    ProviderError,
    TransientProviderError,
    ValidationError,
)
from booking_engine.schemas.webhook_schema import SchedulingEvent

logger = logging.getLogger(__name__)

INVITEE_CREATED = "invitee.created"
INVITEE_CANCELED = "invitee.canceled"
SUPPORTED_EVENTS = (INVITEE_CREATED, INVITEE_CANCELED)


class CalendlySchedulingProvider:
    """Cancels scheduled events through the Calendly REST API."""

    def __init__(
        self,
        api_token: Optional[str] = None,
        config: Optional[SchedulingConfig] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._config = config or settings.scheduling
        self._token = api_token or self._config.calendly_api_token
        if not self._token:
            raise ValueError("CALENDLY_API_TOKEN is not configured")
        self._client = client or httpx.Client(
            base_url=self._config.calendly_base_url,
            timeout=self._config.request_timeout_sec,
        )

    def cancel_event(self, event_uri: str, reason: Optional[str] = None) -> None:
        """Cancel the scheduled event at ``event_uri``.

        Raises:
            NotFoundError: The event does not exist (404).
            TransientProviderError: Network failure, 429 or 5xx.
            ProviderError: Any other rejection, e.g. already cancelled (403).
        """
        url = f"{event_uri.rstrip('/')}/cancellation"
        try:
            response = self._client.post(
                url,
                json={"reason": reason or "Cancelled"},
                headers={"Authorization": f"Bearer {self._token}"},
            )
        except httpx.TransportError as exc:
            logger.warning("Calendly cancellation request failed: %s", exc)
            raise TransientProviderError(
                f"Calendly cancellation failed: {exc}", event_uri=event_uri,
            ) from exc

        if response.status_code == 404:
            raise NotFoundError("Calendly event not found", event_uri=event_uri)
        if response.status_code == 429 or response.status_code >= 500:
            logger.warning("Calendly returned %d for %s", response.status_code, url)
            raise TransientProviderError(
                f"Calendly returned {response.status_code}",
                event_uri=event_uri, status_code=response.status_code,
            )
        if response.status_code >= 400:
            logger.error(
                "Calendly rejected cancellation of %s: %d %s",
                event_uri, response.status_code, response.text,
            )
            raise ProviderError(
                f"Calendly rejected cancellation ({response.status_code})",
                event_uri=event_uri, status_code=response.status_code,
            )
        logger.info("Cancelled Calendly event %s", event_uri)

    def close(self) -> None:
        self._client.close()


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def parse_scheduling_event(payload: dict[str, Any]) -> Optional[SchedulingEvent]:
    """
    Normalize a Calendly webhook body.

    The booking id travels in ``payload.tracking.utm_content``. The event
    reference may be a URI string or an object with ``uri``/``uuid``.

    Returns:
        The parsed event, or None for event types the engine ignores.

    Raises:
        ValidationError: On a body missing the fields the event needs.
    """
    event_type = payload.get("event")
    if not isinstance(event_type, str) or not event_type:
        raise ValidationError("Calendly webhook has no event type")
    if event_type not in SUPPORTED_EVENTS:
        return None

    body = _as_dict(payload.get("payload"))
    if not body:
        raise ValidationError("Calendly webhook has no payload", event_type=event_type)

    scheduled = body.get("scheduled_event") or body.get("event")
    if isinstance(scheduled, str):
        event_uri, event_id, start, end = scheduled, None, None, None
    else:
        scheduled = _as_dict(scheduled)
        event_uri = scheduled.get("uri")
        event_id = scheduled.get("uuid")
        start, end = scheduled.get("start_time"), scheduled.get("end_time")
    if event_uri and not event_id:
        event_id = event_uri.rstrip("/").rsplit("/", 1)[-1]

    booking_id = _as_dict(body.get("tracking")).get("utm_content")
    if not booking_id and not event_uri:
        raise ValidationError(
            "Calendly webhook carries neither a booking id nor an event reference",
            event_type=event_type,
        )

    cancellation = _as_dict(body.get("cancellation"))
    try:
        return SchedulingEvent(
            event_type=event_type,
            booking_id=booking_id or None,
            calendly_event_id=event_id,
            calendly_event_uri=event_uri,
            calendly_invitee_uri=body.get("uri"),
            start_time=start,
            end_time=end,
            cancel_reason=cancellation.get("reason"),
            cancelled_by=cancellation.get("canceled_by"),
        )
    except SchemaError as exc:
        raise ValidationError(
            f"Calendly webhook has malformed fields: {exc.error_count()} error(s)",
            event_type=event_type,
        ) from exc
