"""Booking and cancellation request/response models."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from slotkeeper.appointments import Appointment, AppointmentStatus, VisitorInfo
from slotkeeper.booking import BookingResult


class BookingRequest(BaseModel):
    account_id: str
    appointment_type_id: str
    start: datetime
    timezone: str | None = None
    visitor: VisitorInfo


class BookingModel(BaseModel):
    """A confirmed booking as returned to the visitor."""

    appointment_id: str
    start: datetime
    end: datetime
    timezone: str
    status: AppointmentStatus
    cancellation_token: str
    calendar_created: bool
    calendar_event_id: str | None = None
    conferencing_uri: str | None = None

    @classmethod
    def from_result(cls, result: BookingResult) -> BookingModel:
        appointment = result.appointment
        return cls(
            appointment_id=appointment.id,
            start=appointment.start,
            end=appointment.end,
            timezone=appointment.timezone,
            status=appointment.status,
            cancellation_token=appointment.cancellation_token,
            calendar_created=result.calendar_created,
            calendar_event_id=result.calendar_event_id,
            conferencing_uri=result.conferencing_uri,
        )


class CancelRequest(BaseModel):
    token: str


class CancellationModel(BaseModel):
    appointment_id: str
    status: AppointmentStatus
    cancelled_at: datetime | None = None

    @classmethod
    def from_appointment(cls, appointment: Appointment) -> CancellationModel:
        return cls(
            appointment_id=appointment.id,
            status=appointment.status,
            cancelled_at=appointment.cancelled_at,
        )
