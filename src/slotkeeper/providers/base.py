"""Provider-agnostic calendar contract and event models."""

from __future__ import annotations

import abc
import enum
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from slotkeeper.errors import ProviderError, ProviderFatalError, ProviderTransientError
from slotkeeper.scheduling.intervals import Interval

RETRYABLE_STATUS_CODES = frozenset({429, 500, 503})


class EventStatus(enum.StrEnum):
    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


class ResponseStatus(enum.StrEnum):
    NEEDS_ACTION = "needsAction"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    TENTATIVE = "tentative"


class ReminderMethod(enum.StrEnum):
    EMAIL = "email"
    POPUP = "popup"


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class EventAttendee(BaseModel):
    model_config = ConfigDict(frozen=True)

    email: str = Field(min_length=3)
    display_name: str | None = None
    organizer: bool = False
    response_status: ResponseStatus = ResponseStatus.NEEDS_ACTION


class EventReminder(BaseModel):
    model_config = ConfigDict(frozen=True)

    method: ReminderMethod
    minutes: int = Field(ge=0)


class CalendarEvent(BaseModel):
    """An event read back from the external calendar.

    All-day events carry no timed start/end and never block slots.
    """

    id: str
    status: EventStatus = EventStatus.CONFIRMED
    summary: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool = False
    conferencing_uri: str | None = None

    @field_validator("start", "end")
    @classmethod
    def _normalize_timezone(cls, value: datetime | None) -> datetime | None:
        return _ensure_utc(value) if value is not None else None

    def busy_interval(self) -> Interval | None:
        """Return the blocked interval, or None when the event blocks nothing."""
        if self.status == EventStatus.CANCELLED or self.all_day:
            return None
        if self.start is None or self.end is None or self.end <= self.start:
            return None
        return Interval(self.start, self.end)


class EventDraft(BaseModel):
    """An event to be inserted into the external calendar."""

    summary: str = Field(min_length=1)
    description: str | None = None
    location: str | None = None
    start: datetime
    end: datetime
    timezone: str = "UTC"
    attendees: list[EventAttendee] = Field(default_factory=list)
    reminders: list[EventReminder] = Field(default_factory=list)

    @field_validator("start", "end")
    @classmethod
    def _normalize_timezone(cls, value: datetime) -> datetime:
        return _ensure_utc(value)

    @model_validator(mode="after")
    def _validate_window(self) -> EventDraft:
        if self.end <= self.start:
            raise ValueError("event end must be after start")
        return self


class EventPatch(BaseModel):
    """Partial update; unset fields are left untouched."""

    summary: str | None = None
    description: str | None = None
    location: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    timezone: str | None = None
    status: EventStatus | None = None

    @field_validator("start", "end")
    @classmethod
    def _normalize_timezone(cls, value: datetime | None) -> datetime | None:
        return _ensure_utc(value) if value is not None else None

    @model_validator(mode="after")
    def _validate_window(self) -> EventPatch:
        if self.start is not None and self.end is not None and self.end <= self.start:
            raise ValueError("event end must be after start")
        return self


class InsertedEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    conferencing_uri: str | None = None


class TokenGrant(BaseModel):
    """Result of a refresh-token exchange.

    ``refresh_token`` is None when the provider did not rotate it.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_at: datetime

    def __repr__(self) -> str:
        return f"TokenGrant(expires_at={self.expires_at.isoformat()!r}, tokens=<redacted>)"

    __str__ = __repr__


def classify_status(status_code: int, message: str) -> ProviderError:
    """Map a non-2xx status code onto the transient/fatal error split."""
    if status_code in RETRYABLE_STATUS_CODES:
        return ProviderTransientError(status_code=status_code, message=message)
    return ProviderFatalError(status_code=status_code, message=message)


class CalendarProvider(abc.ABC):
    """Contract every external calendar adapter implements.

    Methods receive a plaintext access token that is valid at call time; token
    storage and refresh coordination live outside the adapter.  Failures are
    raised as ``ProviderTransientError`` or ``ProviderFatalError``.
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier, e.g. ``"google"``."""

    @abc.abstractmethod
    async def list_events(
        self,
        *,
        access_token: str,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> list[CalendarEvent]:
        """Return events intersecting ``[time_min, time_max)``."""

    @abc.abstractmethod
    async def insert_event(
        self,
        *,
        access_token: str,
        calendar_id: str,
        draft: EventDraft,
        wants_conferencing: bool = False,
    ) -> InsertedEvent:
        """Create an event and notify its attendees."""

    @abc.abstractmethod
    async def patch_event(
        self,
        *,
        access_token: str,
        calendar_id: str,
        event_id: str,
        patch: EventPatch,
    ) -> None:
        """Apply a partial update to an existing event."""

    @abc.abstractmethod
    async def delete_event(
        self,
        *,
        access_token: str,
        calendar_id: str,
        event_id: str,
    ) -> None:
        """Delete an event.  Deleting an already-deleted event succeeds."""

    @abc.abstractmethod
    async def refresh_token(self, *, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a new access token."""

    async def shutdown(self) -> None:
        """Release provider resources."""
        return None
