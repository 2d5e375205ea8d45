"""Shared test fixtures for the slotkeeper test suite.

Provides a deterministic cipher, a recording in-memory calendar provider,
and builders for accounts, appointment types, and connections.
"""

from __future__ import annotations

import asyncio
import datetime as dt
from collections.abc import Callable
from dataclasses import dataclass, field

import pytest

from slotkeeper.cache import AvailabilityCache
from slotkeeper.client import CalendarClient
from slotkeeper.connections import CalendarConnection
from slotkeeper.core.metrics import EngineMetrics
from slotkeeper.crypto import CredentialCipher
from slotkeeper.errors import ProviderError
from slotkeeper.locks import InMemoryLockBackend
from slotkeeper.providers.base import (
    CalendarEvent,
    CalendarProvider,
    EventDraft,
    EventPatch,
    InsertedEvent,
    TokenGrant,
)
from slotkeeper.providers.retry import RetryPolicy
from slotkeeper.scheduling.models import Account, AppointmentType, WorkingHoursRule
from slotkeeper.storage.memory import (
    InMemoryAppointmentStore,
    InMemoryConnectionStore,
    InMemoryScheduleStore,
    InMemoryUsageMeter,
)
from slotkeeper.token_refresh import TokenRefreshCoordinator

TEST_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"

# Monday 3 June 2030
MONDAY = dt.date(2030, 6, 3)
BEFORE_MONDAY = dt.datetime(2030, 6, 2, 12, 0, tzinfo=dt.UTC)


def at(hour: int, minute: int = 0, day: dt.date = MONDAY) -> dt.datetime:
    """UTC instant on *day*."""
    return dt.datetime.combine(day, dt.time(hour, minute), tzinfo=dt.UTC)


@dataclass
class FakeCalendarProvider(CalendarProvider):
    """Calendar provider double that records calls and replays queued failures."""

    events: list[CalendarEvent] = field(default_factory=list)
    failures: list[ProviderError] = field(default_factory=list)
    refresh_failures: list[ProviderError] = field(default_factory=list)
    refresh_delay: float = 0.0
    insert_delay: float = 0.0
    calls: list[tuple[str, dict]] = field(default_factory=list)
    refresh_calls: int = 0
    next_event_id: int = 1
    grant_lifetime: dt.timedelta = dt.timedelta(hours=1)
    rotate_refresh_token: bool = False

    @property
    def name(self) -> str:
        return "google"

    def _maybe_fail(self) -> None:
        if self.failures:
            raise self.failures.pop(0)

    def calls_named(self, name: str) -> list[dict]:
        return [kwargs for call_name, kwargs in self.calls if call_name == name]

    async def list_events(self, *, access_token, calendar_id, time_min, time_max):
        self.calls.append(
            (
                "list_events",
                {
                    "access_token": access_token,
                    "calendar_id": calendar_id,
                    "time_min": time_min,
                    "time_max": time_max,
                },
            )
        )
        self._maybe_fail()
        return [
            event
            for event in self.events
            if event.start is None
            or event.end is None
            or (event.start < time_max and event.end > time_min)
        ]

    async def insert_event(self, *, access_token, calendar_id, draft: EventDraft, wants_conferencing=False):
        self.calls.append(
            (
                "insert_event",
                {
                    "access_token": access_token,
                    "calendar_id": calendar_id,
                    "draft": draft,
                    "wants_conferencing": wants_conferencing,
                },
            )
        )
        if self.insert_delay:
            await asyncio.sleep(self.insert_delay)
        self._maybe_fail()
        event_id = f"evt-{self.next_event_id}"
        self.next_event_id += 1
        uri = "https://meet.google.com/abc-defg-hij" if wants_conferencing else None
        return InsertedEvent(id=event_id, conferencing_uri=uri)

    async def patch_event(self, *, access_token, calendar_id, event_id, patch: EventPatch):
        self.calls.append(("patch_event", {"event_id": event_id, "patch": patch}))
        self._maybe_fail()

    async def delete_event(self, *, access_token, calendar_id, event_id):
        self.calls.append(("delete_event", {"event_id": event_id}))
        self._maybe_fail()

    async def refresh_token(self, *, refresh_token: str) -> TokenGrant:
        self.refresh_calls += 1
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_failures:
            raise self.refresh_failures.pop(0)
        return TokenGrant(
            access_token=f"access-{self.refresh_calls}",
            refresh_token=f"refresh-{self.refresh_calls}" if self.rotate_refresh_token else None,
            expires_at=dt.datetime.now(dt.UTC) + self.grant_lifetime,
        )


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_account(account_id: str = "acct-1", *, timezone: str = "UTC") -> Account:
    return Account(
        id=account_id,
        email=f"{account_id}@example.com",
        name="Dana Owner",
        business_name="Dana's Studio",
        timezone=timezone,
    )


def make_appointment_type(
    account_id: str = "acct-1",
    *,
    type_id: str = "consult",
    duration: int = 30,
    before: int = 0,
    after: int = 0,
    active: bool = True,
) -> AppointmentType:
    return AppointmentType(
        id=type_id,
        account_id=account_id,
        name="Consultation",
        duration_minutes=duration,
        buffer_before_minutes=before,
        buffer_after_minutes=after,
        active=active,
    )


def weekday_hours(start: dt.time = dt.time(9), end: dt.time = dt.time(17)) -> list[WorkingHoursRule]:
    """Monday through Friday working hours."""
    return [
        WorkingHoursRule(day_of_week=day, start_time=start, end_time=end) for day in range(1, 6)
    ]


def make_connection(
    cipher: CredentialCipher,
    account_id: str = "acct-1",
    *,
    expires_at: dt.datetime | None = None,
    access_token: str = "initial-access",
    refresh_token: str = "initial-refresh",
) -> CalendarConnection:
    return CalendarConnection(
        account_id=account_id,
        access_token=cipher.encrypt(access_token),
        refresh_token=cipher.encrypt(refresh_token),
        expires_at=expires_at or dt.datetime.now(dt.UTC) + dt.timedelta(hours=1),
        email=f"{account_id}@example.com",
    )


async def no_sleep(_seconds: float) -> None:
    return None


@dataclass
class Services:
    """In-memory stores wired to a calendar client over a fake provider."""

    schedule: InMemoryScheduleStore
    appointments: InMemoryAppointmentStore
    connections: InMemoryConnectionStore
    usage: InMemoryUsageMeter
    cache: AvailabilityCache
    calendar: CalendarClient
    provider: FakeCalendarProvider


async def make_services(
    cipher: CredentialCipher,
    provider: FakeCalendarProvider,
    *,
    connected: bool = True,
    appointment_type: AppointmentType | None = None,
    usage_limit: int | None = None,
    clock: Callable[[], float] | None = None,
) -> Services:
    """One account (acct-1) with weekday 9-17 UTC hours and a 30 minute type."""
    schedule = InMemoryScheduleStore()
    schedule.add_account(
        make_account(),
        working_hours=weekday_hours(),
        appointment_types=[appointment_type or make_appointment_type()],
    )
    connections = InMemoryConnectionStore()
    if connected:
        await connections.upsert(make_connection(cipher))
    metrics = EngineMetrics()
    calendar = CalendarClient(
        provider=provider,
        coordinator=TokenRefreshCoordinator(
            store=connections,
            cipher=cipher,
            provider=provider,
            lock_backend=InMemoryLockBackend(),
            metrics=metrics,
        ),
        retry_policy=RetryPolicy(max_jitter_ms=0),
        sleep=no_sleep,
        metrics=metrics,
    )
    cache_kwargs = {"clock": clock} if clock is not None else {}
    return Services(
        schedule=schedule,
        appointments=InMemoryAppointmentStore(),
        connections=connections,
        usage=InMemoryUsageMeter(limit=usage_limit),
        cache=AvailabilityCache(ttl_seconds=900, metrics=metrics, **cache_kwargs),
        calendar=calendar,
        provider=provider,
    )


@pytest.fixture
def cipher() -> CredentialCipher:
    return CredentialCipher(TEST_KEY)


@pytest.fixture
def provider() -> FakeCalendarProvider:
    return FakeCalendarProvider()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def metrics() -> EngineMetrics:
    return EngineMetrics()


@pytest.fixture
def cache(fake_clock: FakeClock, metrics: EngineMetrics) -> AvailabilityCache:
    return AvailabilityCache(ttl_seconds=900, clock=fake_clock, metrics=metrics)


@pytest.fixture
def fixed_now() -> Callable[[], dt.datetime]:
    return lambda: BEFORE_MONDAY
