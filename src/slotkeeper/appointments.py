"""Appointments and the storage contract that guards their overlap invariant."""

from __future__ import annotations

import enum
import re
import uuid
from datetime import UTC, datetime, timedelta
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field, field_validator

from slotkeeper.scheduling.intervals import Interval

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class AppointmentStatus(enum.StrEnum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class VisitorInfo(BaseModel):
    """Who is booking."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, max_length=200)
    email: str = Field(max_length=320)
    phone: str | None = Field(default=None, max_length=50)
    notes: str | None = Field(default=None, max_length=2000)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("visitor name must not be blank")
        return stripped

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        normalized = value.strip()
        if not _EMAIL_PATTERN.match(normalized):
            raise ValueError(f"invalid visitor email: {value!r}")
        return normalized


class Appointment(BaseModel):
    """A booking.  Cancelled rather than deleted.

    Buffer lengths are copied from the appointment type at booking time so
    later edits to the type never change what an existing booking reserves.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    account_id: str
    appointment_type_id: str
    start: datetime
    end: datetime
    buffer_before_minutes: int = Field(default=0, ge=0)
    buffer_after_minutes: int = Field(default=0, ge=0)
    timezone: str = "UTC"
    visitor_name: str
    visitor_email: str
    visitor_phone: str | None = None
    notes: str | None = None
    status: AppointmentStatus = AppointmentStatus.CONFIRMED
    cancellation_token: str
    calendar_event_id: str | None = None
    conferencing_uri: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    cancelled_at: datetime | None = None

    @field_validator("start", "end", "created_at", "cancelled_at")
    @classmethod
    def _require_timezone(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    @property
    def is_active(self) -> bool:
        return self.status != AppointmentStatus.CANCELLED

    @property
    def interval(self) -> Interval:
        return Interval(self.start, self.end)

    @property
    def buffered_interval(self) -> Interval:
        return self.interval.padded(
            timedelta(minutes=self.buffer_before_minutes),
            timedelta(minutes=self.buffer_after_minutes),
        )

    def __repr__(self) -> str:
        return (
            f"Appointment(id={self.id!r}, account_id={self.account_id!r}, "
            f"start={self.start.isoformat()!r}, end={self.end.isoformat()!r}, "
            f"status={self.status.value!r})"
        )

    __str__ = __repr__


class AppointmentStore(Protocol):
    """Persistence for appointments.

    ``insert_if_free`` is the only write path for new appointments and must be
    atomic: check that no non-cancelled appointment of the account has a
    buffered interval overlapping the candidate's, then insert, with no
    interleaving writer in between.
    """

    async def list_active(
        self, account_id: str, start: datetime, end: datetime
    ) -> list[Appointment]:
        """Non-cancelled appointments whose buffered interval meets ``[start, end)``."""
        ...

    async def insert_if_free(self, appointment: Appointment) -> bool: ...

    async def set_calendar_event(
        self,
        appointment_id: str,
        *,
        event_id: str,
        conferencing_uri: str | None,
    ) -> None: ...

    async def get(self, account_id: str, appointment_id: str) -> Appointment | None: ...

    async def get_by_cancellation_token(self, token: str) -> Appointment | None: ...

    async def mark_cancelled(self, appointment_id: str) -> Appointment | None:
        """Cancel a confirmed appointment; returns None if it was not confirmed."""
        ...
