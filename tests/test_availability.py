"""Unit tests for slotkeeper.availability.AvailabilityService."""

from __future__ import annotations

import datetime as dt

import pytest

from slotkeeper.appointments import Appointment
from slotkeeper.availability import AvailabilityService, format_local_time
from slotkeeper.crypto import CredentialCipher
from slotkeeper.errors import (
    AvailabilityUnavailableError,
    ProviderFatalError,
    ProviderTransientError,
    ResourceNotFoundError,
)
from slotkeeper.providers.base import CalendarEvent
from slotkeeper.scheduling.models import DateOverride

from conftest import (
    BEFORE_MONDAY,
    MONDAY,
    FakeCalendarProvider,
    Services,
    at,
    make_account,
    make_appointment_type,
    make_connection,
    make_services,
    weekday_hours,
)

pytestmark = pytest.mark.unit

SATURDAY = dt.date(2030, 6, 8)


def _service(services: Services, *, clock=lambda: BEFORE_MONDAY, **kwargs) -> AvailabilityService:
    return AvailabilityService(
        schedule=services.schedule,
        appointments=services.appointments,
        cache=services.cache,
        calendar=services.calendar,
        clock=clock,
        **kwargs,
    )


def _free_starts(day) -> list[dt.datetime]:
    return [slot.start for slot in day.slots if slot.available]


def _booked(start: dt.datetime, minutes: int = 30, **kwargs) -> Appointment:
    return Appointment(
        account_id="acct-1",
        appointment_type_id="consult",
        start=start,
        end=start + dt.timedelta(minutes=minutes),
        visitor_name="Pat",
        visitor_email="pat@example.com",
        cancellation_token="a" * 128,
        **kwargs,
    )


class TestFormatting:
    def test_local_time_label(self) -> None:
        assert format_local_time(at(9), dt.UTC) == "9:00 AM"
        assert format_local_time(at(13, 30), dt.UTC) == "1:30 PM"


class TestListSlots:
    async def test_open_day_lists_every_slot(
        self, cipher: CredentialCipher, provider: FakeCalendarProvider
    ) -> None:
        day = await _service(await make_services(cipher, provider)).list_slots(
            "acct-1", "consult", MONDAY
        )

        assert len(day.slots) == 16
        assert day.slots[0].start_local == "9:00 AM"
        assert day.timezone == "UTC"
        assert day.calendar_synced is True
        assert day.has_open_slot

    async def test_bookings_and_busy_periods_block_slots(
        self, cipher: CredentialCipher, provider: FakeCalendarProvider
    ) -> None:
        provider.events = [CalendarEvent(id="lunch", start=at(12), end=at(13))]
        services = await make_services(cipher, provider)
        await services.appointments.insert_if_free(_booked(at(10)))

        day = await _service(services).list_slots("acct-1", "consult", MONDAY)

        blocked = {slot.start for slot in day.slots if not slot.available}
        assert blocked == {at(10), at(12), at(12, 30)}

    async def test_buffered_existing_booking_example(
        self, cipher: CredentialCipher, provider: FakeCalendarProvider
    ) -> None:
        services = await make_services(
            cipher, provider, appointment_type=make_appointment_type(before=5, after=5)
        )
        await services.appointments.insert_if_free(
            _booked(at(10), buffer_before_minutes=5, buffer_after_minutes=5)
        )

        day = await _service(services).list_slots("acct-1", "consult", MONDAY)

        status = {slot.start: slot.available for slot in day.slots}
        assert status[at(9)] is True
        assert status[at(9, 30)] is False
        assert status[at(10)] is False
        assert status[at(10, 30)] is False
        assert status[at(11)] is True

    async def test_slots_before_now_are_hidden(
        self, cipher: CredentialCipher, provider: FakeCalendarProvider
    ) -> None:
        services = await make_services(cipher, provider)

        day = await _service(services, clock=lambda: at(15, 10)).list_slots(
            "acct-1", "consult", MONDAY
        )

        assert [slot.start for slot in day.slots] == [at(15, 30), at(16), at(16, 30)]

    async def test_closed_day_has_no_slots(
        self, cipher: CredentialCipher, provider: FakeCalendarProvider
    ) -> None:
        services = await make_services(cipher, provider)

        day = await _service(services).list_slots("acct-1", "consult", SATURDAY)

        assert day.slots == []
        assert provider.calls == []

    async def test_unknown_type_raises(
        self, cipher: CredentialCipher, provider: FakeCalendarProvider
    ) -> None:
        service = _service(await make_services(cipher, provider))
        with pytest.raises(ResourceNotFoundError):
            await service.list_slots("acct-1", "missing", MONDAY)
        with pytest.raises(ResourceNotFoundError):
            await service.list_slots("nobody", "consult", MONDAY)

    async def test_busy_periods_are_served_from_cache(
        self, cipher: CredentialCipher, provider: FakeCalendarProvider
    ) -> None:
        service = _service(await make_services(cipher, provider))

        await service.list_slots("acct-1", "consult", MONDAY)
        await service.list_slots("acct-1", "consult", MONDAY)

        assert len(provider.calls_named("list_events")) == 1
        call = provider.calls_named("list_events")[0]
        assert (call["time_min"], call["time_max"]) == (at(0), at(0, day=MONDAY + dt.timedelta(1)))


class TestCalendarFailures:
    async def test_fetch_failure_fails_open(
        self, cipher: CredentialCipher, provider: FakeCalendarProvider
    ) -> None:
        provider.failures = [ProviderFatalError(status_code=400, message="bad")]
        services = await make_services(cipher, provider)

        day = await _service(services).list_slots("acct-1", "consult", MONDAY)

        assert len(_free_starts(day)) == 16
        assert day.calendar_synced is False
        assert not services.cache.contains("acct-1", MONDAY)

    async def test_fetch_failure_fails_closed_when_configured(
        self, cipher: CredentialCipher, provider: FakeCalendarProvider
    ) -> None:
        provider.failures = [
            ProviderTransientError(status_code=503, message="down") for _ in range(4)
        ]
        services = await make_services(cipher, provider)

        with pytest.raises(AvailabilityUnavailableError):
            await _service(services, fail_open_on_calendar_error=False).list_slots(
                "acct-1", "consult", MONDAY
            )
        assert len(provider.calls_named("list_events")) == 4

    async def test_unconnected_account_shows_unchecked_slots(
        self, cipher: CredentialCipher, provider: FakeCalendarProvider
    ) -> None:
        services = await make_services(cipher, provider, connected=False)

        day = await _service(services).list_slots("acct-1", "consult", MONDAY)

        assert len(_free_starts(day)) == 16
        assert day.calendar_synced is False

    async def test_without_calendar_client(
        self, cipher: CredentialCipher, provider: FakeCalendarProvider
    ) -> None:
        services = await make_services(cipher, provider)
        service = AvailabilityService(
            schedule=services.schedule,
            appointments=services.appointments,
            cache=services.cache,
            clock=lambda: BEFORE_MONDAY,
        )

        day = await service.list_slots("acct-1", "consult", MONDAY)

        assert len(day.slots) == 16
        assert await service.prewarm("acct-1") is None


class TestAvailableDates:
    async def test_skips_closed_and_fully_booked_days(
        self, cipher: CredentialCipher, provider: FakeCalendarProvider
    ) -> None:
        services = await make_services(cipher, provider)
        tuesday = MONDAY + dt.timedelta(days=1)
        services.schedule.date_overrides["acct-1"].append(
            DateOverride(date=tuesday, is_available=False)
        )
        provider.events = [
            CalendarEvent(
                id="offsite",
                start=at(9, day=MONDAY + dt.timedelta(days=2)),
                end=at(17, day=MONDAY + dt.timedelta(days=2)),
            )
        ]

        dates = await _service(services).list_available_dates(
            "acct-1", "consult", start_date=dt.date(2030, 6, 2), days_ahead=7
        )

        assert dates == [MONDAY, dt.date(2030, 6, 6), dt.date(2030, 6, 7)]

    async def test_defaults_to_today_in_account_zone(
        self, cipher: CredentialCipher, provider: FakeCalendarProvider
    ) -> None:
        services = await make_services(cipher, provider)

        dates = await _service(services).list_available_dates("acct-1", "consult", days_ahead=2)

        # Sunday is closed, so only Monday remains.
        assert dates == [MONDAY]

    async def test_rejects_non_positive_range(
        self, cipher: CredentialCipher, provider: FakeCalendarProvider
    ) -> None:
        service = _service(await make_services(cipher, provider))
        with pytest.raises(ValueError):
            await service.list_available_dates("acct-1", "consult", days_ahead=0)


class TestTeamSlots:
    async def test_member_busy_periods_block_team_slots(
        self, cipher: CredentialCipher, provider: FakeCalendarProvider
    ) -> None:
        services = await make_services(cipher, provider)
        services.schedule.add_account(
            make_account("acct-2"), working_hours=weekday_hours(), team_members=[]
        )
        services.schedule.team_members["acct-1"].append("acct-2")
        await services.connections.upsert(make_connection(cipher, "acct-2"))
        provider.events = [CalendarEvent(id="shared", start=at(9), end=at(10))]

        day = await _service(services).list_team_slots("acct-1", "consult", MONDAY)

        calendars = {call["calendar_id"] for call in provider.calls_named("list_events")}
        assert calendars == {"acct-1@example.com", "acct-2@example.com"}
        assert _free_starts(day)[0] == at(10)
        assert day.calendar_synced is True

    async def test_unconnected_member_marks_team_view_unsynced(
        self, cipher: CredentialCipher, provider: FakeCalendarProvider
    ) -> None:
        services = await make_services(cipher, provider)
        services.schedule.team_members["acct-1"].append("acct-3")

        day = await _service(services).list_team_slots("acct-1", "consult", MONDAY)

        assert day.has_open_slot
        assert day.calendar_synced is False


class TestPrewarm:
    async def test_prewarms_working_days(
        self, cipher: CredentialCipher, provider: FakeCalendarProvider
    ) -> None:
        services = await make_services(cipher, provider)
        service = _service(services)

        task = await service.prewarm("acct-1", days_ahead=3)
        assert task is not None
        await task

        # Sunday 2 June is closed; Monday and Tuesday are warmed.
        assert services.cache.contains("acct-1", MONDAY)
        assert services.cache.contains("acct-1", MONDAY + dt.timedelta(days=1))
        assert len(provider.calls_named("list_events")) == 2

    @pytest.mark.parametrize("prewarm_days,days_ahead", [(0, None), (5, 0)])
    async def test_empty_range_skips_prewarm(
        self,
        cipher: CredentialCipher,
        provider: FakeCalendarProvider,
        prewarm_days: int,
        days_ahead: int | None,
    ) -> None:
        services = await make_services(cipher, provider)
        service = _service(services, prewarm_days=prewarm_days)

        assert await service.prewarm("acct-1", days_ahead=days_ahead) is None
        assert provider.calls_named("list_events") == []

    async def test_unconnected_account_skips_prewarm(
        self, cipher: CredentialCipher, provider: FakeCalendarProvider
    ) -> None:
        service = _service(await make_services(cipher, provider, connected=False))

        assert await service.prewarm("acct-1") is None

    async def test_unknown_account_raises(
        self, cipher: CredentialCipher, provider: FakeCalendarProvider
    ) -> None:
        service = _service(await make_services(cipher, provider))
        with pytest.raises(ResourceNotFoundError):
            await service.prewarm("nobody")
