"""
Centralized configuration with environment variable overrides.

Availability defaults, payment retry limits, webhook secrets and provider
credentials are configurable here. Nothing is hardcoded in resolver,
state machine or reconciler logic.
"""

import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from booking_engine.logging_context import BookingIdFilter

load_dotenv()

logger = logging.getLogger(__name__)

KNOWN_ENVIRONMENTS = ("development", "test", "staging", "production")


def _safe_int(env_var: str, default: str) -> int:
    """Parse an integer from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid integer for {env_var}: {raw!r}"
        ) from None


def _safe_float(env_var: str, default: str) -> float:
    """Parse a float from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return float(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid float for {env_var}: {raw!r}"
        ) from None


@dataclass(frozen=True)
class AvailabilityConfig:
    """Slot generation defaults used when a builder or session type is silent."""

    default_buffer_minutes: int = _safe_int("AVAILABILITY_BUFFER_MINUTES", "0")
    default_slot_minutes: int = _safe_int("AVAILABILITY_SLOT_MINUTES", "30")
    max_range_days: int = _safe_int("AVAILABILITY_MAX_RANGE_DAYS", "30")


@dataclass(frozen=True)
class PaymentConfig:
    """Checkout and retry settings for the payments provider."""

    stripe_secret_key: str = os.getenv("STRIPE_SECRET_KEY", "")
    default_currency: str = os.getenv("PAYMENT_CURRENCY", "usd")
    success_url: str = os.getenv(
        "CHECKOUT_SUCCESS_URL",
        "http://localhost:3000/booking/confirmation?session_id={CHECKOUT_SESSION_ID}",
    )
    cancel_url: str = os.getenv("CHECKOUT_CANCEL_URL", "http://localhost:3000/booking/cancelled")
    max_payment_retries: int = _safe_int("MAX_PAYMENT_RETRIES", "2")
    max_concurrency_retries: int = _safe_int("MAX_CONCURRENCY_RETRIES", "3")
    full_refund_notice_hours: float = _safe_float("REFUND_FULL_NOTICE_HOURS", "24")
    partial_refund_notice_hours: float = _safe_float("REFUND_PARTIAL_NOTICE_HOURS", "12")
    partial_refund_percent: float = _safe_float("REFUND_PARTIAL_PERCENT", "50")


@dataclass(frozen=True)
class WebhookConfig:
    """Webhook signing secrets and replay protection."""

    stripe_webhook_secret: str = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    calendly_signing_key: str = os.getenv("CALENDLY_WEBHOOK_SIGNING_KEY", "")
    tolerance_seconds: int = _safe_int("WEBHOOK_TOLERANCE_SECONDS", "300")
    ledger_ttl_seconds: float = _safe_float("IDEMPOTENCY_LEDGER_TTL_SECONDS", "259200")


@dataclass(frozen=True)
class SchedulingConfig:
    """External scheduling provider credentials."""

    calendly_api_token: str = os.getenv("CALENDLY_API_TOKEN", "")
    calendly_base_url: str = os.getenv("CALENDLY_BASE_URL", "https://api.calendly.com")
    request_timeout_sec: float = _safe_float("SCHEDULING_REQUEST_TIMEOUT", "10.0")


@dataclass(frozen=True)
class AppConfig:
    """Root configuration aggregating all sub-configs."""

    availability: AvailabilityConfig = field(default_factory=AvailabilityConfig)
    payments: PaymentConfig = field(default_factory=PaymentConfig)
    webhooks: WebhookConfig = field(default_factory=WebhookConfig)
    scheduling: SchedulingConfig = field(default_factory=SchedulingConfig)
    environment: str = os.getenv("APP_ENV", "production")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    app_name: str = os.getenv("APP_NAME", "builder-booking-engine")

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


def _validate_config(config: AppConfig) -> None:
    """Validate configuration values are within acceptable ranges."""
    if config.environment not in KNOWN_ENVIRONMENTS:
        raise ValueError(
            f"APP_ENV must be one of {KNOWN_ENVIRONMENTS}, got {config.environment!r}"
        )
    if config.availability.default_buffer_minutes < 0:
        raise ValueError(
            "AVAILABILITY_BUFFER_MINUTES must be >= 0, "
            f"got {config.availability.default_buffer_minutes}"
        )
    if config.availability.default_slot_minutes < 1:
        raise ValueError(
            "AVAILABILITY_SLOT_MINUTES must be >= 1, "
            f"got {config.availability.default_slot_minutes}"
        )
    if config.availability.max_range_days < 1:
        raise ValueError(
            f"AVAILABILITY_MAX_RANGE_DAYS must be >= 1, got {config.availability.max_range_days}"
        )
    if config.payments.max_payment_retries < 0:
        raise ValueError(
            f"MAX_PAYMENT_RETRIES must be >= 0, got {config.payments.max_payment_retries}"
        )
    if config.payments.max_concurrency_retries < 1:
        raise ValueError(
            "MAX_CONCURRENCY_RETRIES must be >= 1, "
            f"got {config.payments.max_concurrency_retries}"
        )
    if not 0 <= config.payments.partial_refund_notice_hours <= config.payments.full_refund_notice_hours:
        raise ValueError(
            "REFUND_PARTIAL_NOTICE_HOURS must be between 0 and REFUND_FULL_NOTICE_HOURS, "
            f"got {config.payments.partial_refund_notice_hours}"
        )
    if not 0 <= config.payments.partial_refund_percent <= 100:
        raise ValueError(
            f"REFUND_PARTIAL_PERCENT must be between 0 and 100, got {config.payments.partial_refund_percent}"
        )
    if config.webhooks.tolerance_seconds <= 0:
        raise ValueError(
            f"WEBHOOK_TOLERANCE_SECONDS must be > 0, got {config.webhooks.tolerance_seconds}"
        )
    if config.webhooks.ledger_ttl_seconds <= 0:
        raise ValueError(
            "IDEMPOTENCY_LEDGER_TTL_SECONDS must be > 0, "
            f"got {config.webhooks.ledger_ttl_seconds}"
        )
    if config.scheduling.request_timeout_sec <= 0:
        raise ValueError(
            "SCHEDULING_REQUEST_TIMEOUT must be > 0, "
            f"got {config.scheduling.request_timeout_sec}"
        )


def load_config() -> AppConfig:
    """Load and validate application configuration."""
    config = AppConfig()
    _validate_config(config)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s [%(booking_id)s]: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, BookingIdFilter) for f in handler.filters):
            handler.addFilter(BookingIdFilter())
    logger.info("Configuration loaded for '%s' (%s)", config.app_name, config.environment)
    return config


# Singleton instance
settings = load_config()
