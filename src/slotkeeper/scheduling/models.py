"""Schedule configuration owned by an account."""

from __future__ import annotations

import datetime as dt
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Account(BaseModel):
    """The business whose calendar is being booked."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: str | None = None
    business_name: str | None = None
    timezone: str = "UTC"

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown IANA timezone: {value!r}") from exc
        return value

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def display_name(self) -> str:
        return self.business_name or self.name or self.email


class AppointmentType(BaseModel):
    """A bookable service.  Read once per request and treated as a snapshot."""

    model_config = ConfigDict(frozen=True)

    id: str
    account_id: str
    name: str
    duration_minutes: int = Field(gt=0)
    buffer_before_minutes: int = Field(default=0, ge=0)
    buffer_after_minutes: int = Field(default=0, ge=0)
    active: bool = True
    location: str | None = None

    @property
    def duration(self) -> dt.timedelta:
        return dt.timedelta(minutes=self.duration_minutes)

    @property
    def buffer_before(self) -> dt.timedelta:
        return dt.timedelta(minutes=self.buffer_before_minutes)

    @property
    def buffer_after(self) -> dt.timedelta:
        return dt.timedelta(minutes=self.buffer_after_minutes)


class WorkingHoursRule(BaseModel):
    """Weekly working window.  ``day_of_week`` is 0 for Sunday through 6 for Saturday."""

    model_config = ConfigDict(frozen=True)

    day_of_week: int = Field(ge=0, le=6)
    start_time: dt.time
    end_time: dt.time
    enabled: bool = True


class DateOverride(BaseModel):
    """A single-date exception to the weekly rules.

    ``is_available=False`` closes the date.  ``is_available=True`` with both
    times set replaces the weekly window; otherwise the whole day is open.
    """

    model_config = ConfigDict(frozen=True)

    date: dt.date
    is_available: bool
    start_time: dt.time | None = None
    end_time: dt.time | None = None

    @property
    def is_all_day(self) -> bool:
        return self.is_available and (self.start_time is None or self.end_time is None)


def sunday_based_weekday(day: dt.date) -> int:
    """Return 0 for Sunday through 6 for Saturday."""
    return (day.weekday() + 1) % 7
