"""Slot lookups: available dates, slots for a date, team slots, and cache prewarm."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from slotkeeper.appointments import AppointmentStore
from slotkeeper.cache import AvailabilityCache
from slotkeeper.client import CalendarClient
from slotkeeper.core.logging import account_context
from slotkeeper.errors import (
    AvailabilityUnavailableError,
    CalendarNotConnectedError,
    ResourceNotFoundError,
    SlotkeeperError,
)
from slotkeeper.scheduling.conflicts import collect_team_busy, resolve_conflicts
from slotkeeper.scheduling.hours import local_day_bounds, resolve_windows
from slotkeeper.scheduling.intervals import Interval
from slotkeeper.scheduling.models import Account, AppointmentType, DateOverride, WorkingHoursRule
from slotkeeper.scheduling.slots import generate_day_slots
from slotkeeper.scheduling.store import ScheduleStore

logger = logging.getLogger(__name__)

DEFAULT_DAYS_AHEAD = 14
DEFAULT_PREWARM_DAYS = 5


def format_local_time(value: dt.datetime, zone: dt.tzinfo) -> str:
    """Render *value* as ``"9:00 AM"`` in *zone*."""
    return value.astimezone(zone).strftime("%I:%M %p").lstrip("0")


@dataclass(frozen=True)
class SlotView:
    start: dt.datetime
    end: dt.datetime
    start_local: str
    end_local: str
    available: bool


@dataclass(frozen=True)
class DayAvailability:
    date: dt.date
    timezone: str
    slots: list[SlotView] = field(default_factory=list)
    calendar_synced: bool = True

    @property
    def has_open_slot(self) -> bool:
        return any(slot.available for slot in self.slots)


@dataclass(frozen=True)
class BusyLookup:
    intervals: list[Interval]
    synced: bool


class AvailabilityService:
    """Computes bookable slots from working hours, bookings, and calendar busy periods."""

    def __init__(
        self,
        *,
        schedule: ScheduleStore,
        appointments: AppointmentStore,
        cache: AvailabilityCache,
        calendar: CalendarClient | None = None,
        fail_open_on_calendar_error: bool = True,
        prewarm_days: int = DEFAULT_PREWARM_DAYS,
        clock: Callable[[], dt.datetime] = lambda: dt.datetime.now(dt.UTC),
    ) -> None:
        self._schedule = schedule
        self._appointments = appointments
        self._cache = cache
        self._calendar = calendar
        self._fail_open = fail_open_on_calendar_error
        self._prewarm_days = prewarm_days
        self._clock = clock

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def list_slots(
        self,
        account_id: str,
        appointment_type_id: str,
        day: dt.date,
    ) -> DayAvailability:
        """Every candidate slot for *day*, each marked available or not."""
        with account_context(account_id):
            account, appointment_type, rules = await self._load(account_id, appointment_type_id)
            overrides = await self._schedule.list_date_overrides(account_id, day, day)
            return await self._compute_day(account, appointment_type, day, rules, overrides)

    async def list_team_slots(
        self,
        account_id: str,
        appointment_type_id: str,
        day: dt.date,
    ) -> DayAvailability:
        """Like :meth:`list_slots`, with busy periods merged across the account's team."""
        with account_context(account_id):
            account, appointment_type, rules = await self._load(account_id, appointment_type_id)
            overrides = await self._schedule.list_date_overrides(account_id, day, day)
            return await self._compute_day(
                account, appointment_type, day, rules, overrides, team=True
            )

    async def list_available_dates(
        self,
        account_id: str,
        appointment_type_id: str,
        *,
        start_date: dt.date | None = None,
        days_ahead: int = DEFAULT_DAYS_AHEAD,
    ) -> list[dt.date]:
        """Dates in ``[start_date, start_date + days_ahead)`` with at least one open slot."""
        if days_ahead < 1:
            raise ValueError("days_ahead must be at least 1")

        with account_context(account_id):
            account, appointment_type, rules = await self._load(account_id, appointment_type_id)
            first = start_date or self._clock().astimezone(account.zone).date()
            days = [first + dt.timedelta(days=offset) for offset in range(days_ahead)]
            overrides = await self._schedule.list_date_overrides(account_id, days[0], days[-1])

            candidates = [
                day for day in days if resolve_windows(day, rules, overrides, account.zone)
            ]
            results = await asyncio.gather(
                *(
                    self._compute_day(account, appointment_type, day, rules, overrides)
                    for day in candidates
                )
            )
            return [result.date for result in results if result.has_open_slot]

    async def prewarm(
        self,
        account_id: str,
        *,
        days_ahead: int | None = None,
    ) -> asyncio.Task | None:
        """Start loading busy periods for the next working days in the background.

        Returns the background task, or None when there is nothing to warm.
        """
        calendar = self._calendar
        if calendar is None:
            return None

        with account_context(account_id):
            account = await self._schedule.get_account(account_id)
            if account is None:
                raise ResourceNotFoundError(f"Account {account_id} not found")
            if not await calendar.is_connected(account_id):
                logger.debug("Skipping prewarm, account %s has no calendar", account_id)
                return None

            count = days_ahead if days_ahead is not None else self._prewarm_days
            if count < 1:
                return None
            today = self._clock().astimezone(account.zone).date()
            days = [today + dt.timedelta(days=offset) for offset in range(count)]
            rules = await self._schedule.list_working_hours(account_id)
            overrides = await self._schedule.list_date_overrides(account_id, days[0], days[-1])
            working_days = [
                day for day in days if resolve_windows(day, rules, overrides, account.zone)
            ]

            zone = account.zone

            async def load(target_account: str, day: dt.date) -> list[Interval]:
                return await self._fetch_busy(calendar, target_account, day, zone)

            return self._cache.prewarm(account_id, working_days, load)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load(
        self, account_id: str, appointment_type_id: str
    ) -> tuple[Account, AppointmentType, list[WorkingHoursRule]]:
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
        rules = await self._schedule.list_working_hours(account_id)
        return account, appointment_type, rules

    async def _compute_day(
        self,
        account: Account,
        appointment_type: AppointmentType,
        day: dt.date,
        rules: list[WorkingHoursRule],
        overrides: list[DateOverride],
        *,
        team: bool = False,
    ) -> DayAvailability:
        zone = account.zone
        windows = resolve_windows(day, rules, overrides, zone)
        slots = generate_day_slots(windows, appointment_type, not_before=self._clock())
        if not slots:
            return DayAvailability(date=day, timezone=account.timezone)

        booked = await self._appointments.list_active(
            account.id,
            min(slot.buffered.start for slot in slots),
            max(slot.buffered.end for slot in slots),
        )
        if team:
            lookup = await self._team_busy(account.id, day, zone)
        else:
            lookup = await self._busy_for_day(account.id, day, zone)

        resolved = resolve_conflicts(
            slots,
            [appointment.buffered_interval for appointment in booked],
            lookup.intervals,
        )
        return DayAvailability(
            date=day,
            timezone=account.timezone,
            calendar_synced=lookup.synced,
            slots=[
                SlotView(
                    start=item.slot.start,
                    end=item.slot.end,
                    start_local=format_local_time(item.slot.start, zone),
                    end_local=format_local_time(item.slot.end, zone),
                    available=item.available,
                )
                for item in resolved
            ],
        )

    async def _fetch_busy(
        self, calendar: CalendarClient, account_id: str, day: dt.date, zone: dt.tzinfo
    ) -> list[Interval]:
        """Fetch busy periods for the local *day* and cache them."""
        generation = self._cache.generation(account_id)
        bounds = local_day_bounds(day, zone)
        intervals = await calendar.list_busy_intervals(account_id, bounds.start, bounds.end)
        self._cache.set(account_id, day, intervals, generation=generation)
        return intervals

    async def _busy_for_day(self, account_id: str, day: dt.date, zone: dt.tzinfo) -> BusyLookup:
        if self._calendar is None:
            return BusyLookup(intervals=[], synced=False)

        cached = self._cache.get(account_id, day)
        if cached is not None:
            return BusyLookup(intervals=cached, synced=True)

        try:
            intervals = await self._fetch_busy(self._calendar, account_id, day, zone)
        except CalendarNotConnectedError:
            return BusyLookup(intervals=[], synced=False)
        except SlotkeeperError as exc:
            if not self._fail_open:
                raise AvailabilityUnavailableError(
                    "Calendar availability is temporarily unavailable"
                ) from exc
            logger.warning(
                "Busy-period fetch failed for account %s on %s, showing slots unchecked: %s",
                account_id,
                day.isoformat(),
                type(exc).__name__,
            )
            return BusyLookup(intervals=[], synced=False)
        return BusyLookup(intervals=intervals, synced=True)

    async def _team_busy(self, account_id: str, day: dt.date, zone: dt.tzinfo) -> BusyLookup:
        members = [account_id, *await self._schedule.list_team_members(account_id)]
        synced: list[bool] = []

        async def fetch(member_id: str) -> list[Interval]:
            lookup = await self._busy_for_day(member_id, day, zone)
            synced.append(lookup.synced)
            return lookup.intervals

        intervals = await collect_team_busy(members, fetch)
        return BusyLookup(intervals=intervals, synced=bool(synced) and all(synced))
