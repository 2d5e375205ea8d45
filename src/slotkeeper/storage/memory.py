"""In-memory storage backends.

Used by tests and single-process deployments.  ``InMemoryAppointmentStore``
serialises its check-then-insert behind an ``asyncio.Lock``, which is enough
for the overlap invariant inside one event loop.
"""

from __future__ import annotations

import asyncio
import datetime as dt
from collections import defaultdict
from collections.abc import Iterable

from slotkeeper.appointments import Appointment, AppointmentStatus
from slotkeeper.booking import UsageCheck
from slotkeeper.connections import DEFAULT_PROVIDER, CalendarConnection
from slotkeeper.crypto import EncryptedValue
from slotkeeper.scheduling.intervals import Interval
from slotkeeper.scheduling.models import Account, AppointmentType, DateOverride, WorkingHoursRule


class InMemoryScheduleStore:
    def __init__(self) -> None:
        self.accounts: dict[str, Account] = {}
        self.appointment_types: dict[str, AppointmentType] = {}
        self.working_hours: dict[str, list[WorkingHoursRule]] = defaultdict(list)
        self.date_overrides: dict[str, list[DateOverride]] = defaultdict(list)
        self.team_members: dict[str, list[str]] = defaultdict(list)

    def add_account(
        self,
        account: Account,
        *,
        working_hours: Iterable[WorkingHoursRule] = (),
        overrides: Iterable[DateOverride] = (),
        appointment_types: Iterable[AppointmentType] = (),
        team_members: Iterable[str] = (),
    ) -> None:
        self.accounts[account.id] = account
        self.working_hours[account.id].extend(working_hours)
        self.date_overrides[account.id].extend(overrides)
        for appointment_type in appointment_types:
            self.appointment_types[appointment_type.id] = appointment_type
        self.team_members[account.id].extend(team_members)

    async def get_account(self, account_id: str) -> Account | None:
        return self.accounts.get(account_id)

    async def get_appointment_type(
        self, account_id: str, appointment_type_id: str
    ) -> AppointmentType | None:
        appointment_type = self.appointment_types.get(appointment_type_id)
        if appointment_type is None or appointment_type.account_id != account_id:
            return None
        return appointment_type

    async def list_working_hours(self, account_id: str) -> list[WorkingHoursRule]:
        return list(self.working_hours.get(account_id, []))

    async def list_date_overrides(
        self, account_id: str, start: dt.date, end: dt.date
    ) -> list[DateOverride]:
        return [
            override
            for override in self.date_overrides.get(account_id, [])
            if start <= override.date <= end
        ]

    async def list_team_members(self, account_id: str) -> list[str]:
        return [member for member in self.team_members.get(account_id, []) if member != account_id]


class InMemoryAppointmentStore:
    def __init__(self) -> None:
        self.appointments: dict[str, Appointment] = {}
        self._lock = asyncio.Lock()

    async def list_active(
        self, account_id: str, start: dt.datetime, end: dt.datetime
    ) -> list[Appointment]:
        window = Interval(start, end)
        return sorted(
            (
                appointment
                for appointment in self.appointments.values()
                if appointment.account_id == account_id
                and appointment.is_active
                and appointment.buffered_interval.overlaps(window)
            ),
            key=lambda appointment: appointment.start,
        )

    async def insert_if_free(self, appointment: Appointment) -> bool:
        async with self._lock:
            candidate = appointment.buffered_interval
            for existing in self.appointments.values():
                if (
                    existing.account_id == appointment.account_id
                    and existing.is_active
                    and existing.buffered_interval.overlaps(candidate)
                ):
                    return False
            self.appointments[appointment.id] = appointment
            return True

    async def set_calendar_event(
        self,
        appointment_id: str,
        *,
        event_id: str,
        conferencing_uri: str | None,
    ) -> None:
        appointment = self.appointments.get(appointment_id)
        if appointment is not None:
            self.appointments[appointment_id] = appointment.model_copy(
                update={"calendar_event_id": event_id, "conferencing_uri": conferencing_uri}
            )

    async def get(self, account_id: str, appointment_id: str) -> Appointment | None:
        appointment = self.appointments.get(appointment_id)
        if appointment is None or appointment.account_id != account_id:
            return None
        return appointment

    async def get_by_cancellation_token(self, token: str) -> Appointment | None:
        for appointment in self.appointments.values():
            if appointment.cancellation_token == token:
                return appointment
        return None

    async def mark_cancelled(self, appointment_id: str) -> Appointment | None:
        async with self._lock:
            appointment = self.appointments.get(appointment_id)
            if appointment is None or not appointment.is_active:
                return None
            cancelled = appointment.model_copy(
                update={
                    "status": AppointmentStatus.CANCELLED,
                    "cancelled_at": dt.datetime.now(dt.UTC),
                }
            )
            self.appointments[appointment_id] = cancelled
            return cancelled


class InMemoryConnectionStore:
    def __init__(self) -> None:
        self.connections: dict[str, CalendarConnection] = {}

    async def get_primary(
        self, account_id: str, provider: str = DEFAULT_PROVIDER
    ) -> CalendarConnection | None:
        for connection in self.connections.values():
            if (
                connection.account_id == account_id
                and connection.provider == provider
                and connection.is_primary
            ):
                return connection
        return None

    async def upsert(self, connection: CalendarConnection) -> CalendarConnection:
        existing = await self.get_primary(connection.account_id, connection.provider)
        if existing is not None and connection.is_primary:
            del self.connections[existing.id]
        self.connections[connection.id] = connection
        return connection

    async def save_tokens(
        self,
        connection_id: str,
        *,
        access_token: EncryptedValue,
        refresh_token: EncryptedValue,
        expires_at: dt.datetime,
    ) -> None:
        connection = self.connections[connection_id]
        self.connections[connection_id] = connection.with_tokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )

    async def delete(self, account_id: str, provider: str = DEFAULT_PROVIDER) -> bool:
        doomed = [
            connection_id
            for connection_id, connection in self.connections.items()
            if connection.account_id == account_id and connection.provider == provider
        ]
        for connection_id in doomed:
            del self.connections[connection_id]
        return bool(doomed)


class InMemoryUsageMeter:
    """Counts bookings per account against an optional limit."""

    def __init__(self, *, limit: int | None = None) -> None:
        self.limit = limit
        self.counts: dict[str, int] = defaultdict(int)

    async def check(self, account_id: str) -> UsageCheck:
        current = self.counts[account_id]
        allowed = self.limit is None or current < self.limit
        return UsageCheck(allowed=allowed, limit=self.limit, current=current)

    async def increment(self, account_id: str) -> None:
        self.counts[account_id] += 1
