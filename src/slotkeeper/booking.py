"""Booking writer: the authoritative path from a chosen slot to a confirmed appointment.

``book()`` order of operations:

1. Resolve the account and the active appointment type.
2. Check the account's booking allowance.
3. Optionally re-check the external calendar for the buffered interval with
   a fresh (uncached) fetch.  A failed fetch fails open unless configured
   otherwise.
4. Conditionally insert the appointment; the store rejects it when another
   non-cancelled appointment's buffered interval overlaps.  This is the
   only step that decides a race.
5. Record usage and invalidate the account's cached busy periods.
6. Create the external calendar event, best effort and time-bounded.
7. Send notifications, best effort.

Once step 4 succeeds the booking stands; nothing after it rolls back.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

from slotkeeper.appointments import Appointment, AppointmentStore, VisitorInfo
from slotkeeper.cache import AvailabilityCache
from slotkeeper.client import CalendarClient
from slotkeeper.core.logging import account_context
from slotkeeper.core.metrics import EngineMetrics, get_engine_metrics
from slotkeeper.errors import (
    AvailabilityUnavailableError,
    BookingConflictError,
    CalendarNotConnectedError,
    ResourceNotFoundError,
    SlotkeeperError,
    UsageLimitExceededError,
)
from slotkeeper.scheduling.conflicts import ConflictSource
from slotkeeper.scheduling.intervals import Interval, overlaps_any
from slotkeeper.scheduling.models import Account, AppointmentType
from slotkeeper.scheduling.store import ScheduleStore

logger = logging.getLogger(__name__)

CANCELLATION_TOKEN_BYTES = 64
DEFAULT_EVENT_TIMEOUT_SECONDS = 15.0


@dataclass(frozen=True)
class UsageCheck:
    allowed: bool
    limit: int | None = None
    current: int = 0


class UsageMeter(Protocol):
    async def check(self, account_id: str) -> UsageCheck: ...

    async def increment(self, account_id: str) -> None: ...


class NotificationSender(Protocol):
    async def booking_confirmed(
        self, account: Account, appointment_type: AppointmentType, appointment: Appointment
    ) -> None: ...

    async def booking_cancelled(self, account: Account, appointment: Appointment) -> None: ...


class UnlimitedUsageMeter:
    """Usage meter for deployments without booking allowances."""

    async def check(self, account_id: str) -> UsageCheck:
        return UsageCheck(allowed=True)

    async def increment(self, account_id: str) -> None:
        return None


class LoggingNotificationSender:
    """Notification sender that records notifications in the log only."""

    async def booking_confirmed(
        self, account: Account, appointment_type: AppointmentType, appointment: Appointment
    ) -> None:
        logger.info(
            "Booking confirmed: appointment=%s type=%s start=%s",
            appointment.id,
            appointment_type.name,
            appointment.start.isoformat(),
        )

    async def booking_cancelled(self, account: Account, appointment: Appointment) -> None:
        logger.info("Booking cancelled: appointment=%s", appointment.id)


@dataclass(frozen=True)
class BookingResult:
    appointment: Appointment
    calendar_created: bool
    calendar_event_id: str | None = None
    conferencing_uri: str | None = None


def build_event_description(visitor: VisitorInfo) -> str:
    lines = [f"Appointment with {visitor.name}", f"Email: {visitor.email}"]
    if visitor.phone:
        lines.append(f"Phone: {visitor.phone}")
    description = "\n".join(lines)
    if visitor.notes:
        description += f"\n\nNotes: {visitor.notes}"
    return description


class BookingWriter:
    """Creates and cancels appointments."""

    def __init__(
        self,
        *,
        schedule: ScheduleStore,
        appointments: AppointmentStore,
        cache: AvailabilityCache,
        calendar: CalendarClient | None = None,
        usage: UsageMeter | None = None,
        notifications: NotificationSender | None = None,
        check_external_calendar: bool = True,
        fail_open_on_calendar_error: bool = True,
        event_timeout_seconds: float = DEFAULT_EVENT_TIMEOUT_SECONDS,
        wants_conferencing: bool = False,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        metrics: EngineMetrics | None = None,
    ) -> None:
        self._schedule = schedule
        self._appointments = appointments
        self._cache = cache
        self._calendar = calendar
        self._usage = usage or UnlimitedUsageMeter()
        self._notifications = notifications or LoggingNotificationSender()
        self._check_external_calendar = check_external_calendar
        self._fail_open = fail_open_on_calendar_error
        self._event_timeout_seconds = event_timeout_seconds
        self._wants_conferencing = wants_conferencing
        self._clock = clock
        self._metrics = metrics or get_engine_metrics()

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    async def book(
        self,
        *,
        account_id: str,
        appointment_type_id: str,
        start: datetime,
        visitor: VisitorInfo,
        timezone: str | None = None,
    ) -> BookingResult:
        """Book *start* for *visitor*.

        Raises
        ------
        ResourceNotFoundError
            Unknown account, or unknown/inactive appointment type.
        UsageLimitExceededError
            The account has used up its booking allowance.
        ValueError
            *start* is naive or in the past.
        BookingConflictError
            The buffered interval overlaps a booking or an external busy period.
        AvailabilityUnavailableError
            The external pre-check failed and failing open is disabled.
        """
        with account_context(account_id):
            account = await self._schedule.get_account(account_id)
            if account is None:
                raise ResourceNotFoundError(f"Account {account_id} not found")

            appointment_type = await self._schedule.get_appointment_type(
                account_id, appointment_type_id
            )
            if appointment_type is None or not appointment_type.active:
                raise ResourceNotFoundError(
                    f"Appointment type {appointment_type_id} not found or inactive"
                )

            usage = await self._usage.check(account_id)
            if not usage.allowed:
                raise UsageLimitExceededError(
                    f"Booking limit reached ({usage.limit} bookings per period)"
                )

            if start.tzinfo is None:
                raise ValueError("start must be timezone-aware")
            start = start.astimezone(UTC)
            if start <= self._clock():
                raise ValueError("Cannot book a time in the past")

            appointment = Appointment(
                account_id=account_id,
                appointment_type_id=appointment_type.id,
                start=start,
                end=start + appointment_type.duration,
                buffer_before_minutes=appointment_type.buffer_before_minutes,
                buffer_after_minutes=appointment_type.buffer_after_minutes,
                timezone=timezone or account.timezone,
                visitor_name=visitor.name,
                visitor_email=visitor.email,
                visitor_phone=visitor.phone,
                notes=visitor.notes,
                cancellation_token=secrets.token_hex(CANCELLATION_TOKEN_BYTES),
            )

            if self._check_external_calendar and self._calendar is not None:
                await self._precheck_calendar(
                    self._calendar, account_id, appointment.buffered_interval
                )

            if not await self._appointments.insert_if_free(appointment):
                self._metrics.record_booking("conflict")
                logger.info(
                    "Booking rejected, slot taken: account=%s start=%s",
                    account_id,
                    start.isoformat(),
                )
                raise BookingConflictError(source=ConflictSource.APPOINTMENT)

            self._metrics.record_booking("confirmed")
            logger.info(
                "Appointment %s confirmed for %s",
                appointment.id,
                appointment.start.isoformat(),
            )

            try:
                await self._usage.increment(account_id)
            except Exception:
                logger.exception("Failed to record booking usage for account %s", account_id)

            self._cache.invalidate_account(account_id)

            result = await self._create_calendar_event(
                account, appointment_type, appointment, visitor
            )

            try:
                await self._notifications.booking_confirmed(
                    account, appointment_type, result.appointment
                )
            except Exception:
                logger.exception("Failed to send booking notifications for %s", appointment.id)

            return result

    async def _precheck_calendar(
        self, calendar: CalendarClient, account_id: str, buffered: Interval
    ) -> None:
        try:
            busy = await calendar.list_busy_intervals(account_id, buffered.start, buffered.end)
        except CalendarNotConnectedError:
            return
        except SlotkeeperError as exc:
            if not self._fail_open:
                raise AvailabilityUnavailableError(
                    "Could not verify calendar availability"
                ) from exc
            logger.warning(
                "Calendar pre-check failed for account %s, proceeding without it: %s",
                account_id,
                type(exc).__name__,
            )
            return

        if overlaps_any(buffered, busy):
            self._metrics.record_booking("conflict")
            raise BookingConflictError(
                "Slot conflicts with the owner's calendar", source=ConflictSource.CALENDAR
            )

    async def _create_calendar_event(
        self,
        account: Account,
        appointment_type: AppointmentType,
        appointment: Appointment,
        visitor: VisitorInfo,
    ) -> BookingResult:
        if self._calendar is None:
            self._metrics.record_calendar_sync("skipped")
            return BookingResult(appointment=appointment, calendar_created=False)

        try:
            inserted = await asyncio.wait_for(
                self._calendar.insert_event(
                    account.id,
                    owner=account,
                    visitor_email=visitor.email,
                    visitor_name=visitor.name,
                    summary=f"{appointment_type.name} - {visitor.name}",
                    description=build_event_description(visitor),
                    location=appointment_type.location,
                    start=appointment.start,
                    end=appointment.end,
                    timezone=appointment.timezone,
                    wants_conferencing=self._wants_conferencing,
                ),
                timeout=self._event_timeout_seconds,
            )
        except CalendarNotConnectedError:
            self._metrics.record_calendar_sync("skipped")
            return BookingResult(appointment=appointment, calendar_created=False)
        except Exception as exc:
            self._metrics.record_calendar_sync("failed")
            logger.error(
                "Calendar event creation failed for appointment %s: %s",
                appointment.id,
                type(exc).__name__,
            )
            return BookingResult(appointment=appointment, calendar_created=False)

        try:
            await self._appointments.set_calendar_event(
                appointment.id,
                event_id=inserted.id,
                conferencing_uri=inserted.conferencing_uri,
            )
        except Exception:
            # The event exists; only the stored link to it is missing.
            logger.exception(
                "Failed to record calendar event %s on appointment %s",
                inserted.id,
                appointment.id,
            )
        self._metrics.record_calendar_sync("created")
        updated = appointment.model_copy(
            update={
                "calendar_event_id": inserted.id,
                "conferencing_uri": inserted.conferencing_uri,
            }
        )
        return BookingResult(
            appointment=updated,
            calendar_created=True,
            calendar_event_id=inserted.id,
            conferencing_uri=inserted.conferencing_uri,
        )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_by_token(self, token: str) -> Appointment:
        """Cancel the appointment identified by its visitor cancellation token."""
        appointment = await self._appointments.get_by_cancellation_token(token)
        if appointment is None:
            raise ResourceNotFoundError("Appointment not found")
        return await self._cancel(appointment)

    async def cancel(self, account_id: str, appointment_id: str) -> Appointment:
        """Cancel one of the account's appointments on the owner's behalf."""
        appointment = await self._appointments.get(account_id, appointment_id)
        if appointment is None:
            raise ResourceNotFoundError(f"Appointment {appointment_id} not found")
        return await self._cancel(appointment)

    async def _cancel(self, appointment: Appointment) -> Appointment:
        if not appointment.is_active:
            raise ValueError("Appointment is already cancelled")

        with account_context(appointment.account_id):
            cancelled = await self._appointments.mark_cancelled(appointment.id)
            if cancelled is None:
                raise ValueError("Appointment is already cancelled")

            self._cache.invalidate_account(appointment.account_id)
            logger.info("Appointment %s cancelled", appointment.id)

            if self._calendar is not None and appointment.calendar_event_id:
                try:
                    await self._calendar.delete_event(
                        appointment.account_id, appointment.calendar_event_id
                    )
                except Exception as exc:
                    logger.error(
                        "Failed to delete calendar event for appointment %s: %s",
                        appointment.id,
                        type(exc).__name__,
                    )

            account = await self._schedule.get_account(appointment.account_id)
            if account is not None:
                try:
                    await self._notifications.booking_cancelled(account, cancelled)
                except Exception:
                    logger.exception("Failed to send cancellation notice for %s", appointment.id)

            return cancelled
