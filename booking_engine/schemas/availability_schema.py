"""Availability rule, exception and time slot models."""

import datetime as dt
from datetime import date, datetime, time
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class AvailabilityRule(BaseModel):
    """A recurring weekly window in the builder's local wall-clock time.

    ``day_of_week`` follows the 0 = Sunday ... 6 = Saturday convention.
    """

    builder_id: str
    day_of_week: int = Field(ge=0, le=6)
    start_time: time
    end_time: time
    is_recurring: bool = True
    effective_date: Optional[date] = None
    expiration_date: Optional[date] = None

    @model_validator(mode="after")
    def _check_window(self) -> "AvailabilityRule":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        if (
            self.effective_date is not None
            and self.expiration_date is not None
            and self.expiration_date < self.effective_date
        ):
            raise ValueError("expiration_date must not precede effective_date")
        return self

    def applies_on(self, day: date) -> bool:
        """True if the rule's validity window includes ``day`` (bounds inclusive)."""
        if self.effective_date is not None and day < self.effective_date:
            return False
        if self.expiration_date is not None and day > self.expiration_date:
            return False
        return True


class TimeSlot(BaseModel):
    """A bookable interval between two absolute instants."""

    start_time: datetime
    end_time: datetime
    is_booked: bool = False

    @field_validator("start_time", "end_time")
    @classmethod
    def _require_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None or value.utcoffset() is None:
            raise ValueError("slot instants must carry a timezone offset")
        return value

    @model_validator(mode="after")
    def _check_order(self) -> "TimeSlot":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self

    @property
    def duration_minutes(self) -> float:
        return (self.end_time - self.start_time).total_seconds() / 60


class AvailabilityException(BaseModel):
    """A date-specific override of the recurring rules.

    ``is_available=False`` blocks the whole day; ``True`` replaces the
    rules for that day with the explicit ``slots``.
    """

    builder_id: str
    date: dt.date
    is_available: bool = False
    slots: list[TimeSlot] = Field(default_factory=list)
    reason: Optional[str] = None


class BuilderAvailability(BaseModel):
    """Everything the resolver needs to know about one builder's calendar."""

    builder_id: str
    timezone: str
    rules: list[AvailabilityRule] = Field(default_factory=list)
    exceptions: list[AvailabilityException] = Field(default_factory=list)
    buffer_minutes: Optional[int] = Field(default=None, ge=0)
    slot_minutes: Optional[int] = Field(default=None, gt=0)
