"""Account-aware calendar client.

Wraps a :class:`~slotkeeper.providers.base.CalendarProvider` with the pieces
every call needs: a valid access token from the refresh coordinator, the
retry policy for transient failures, tracing and metrics.  Event creation
adds the organizer and visitor attendees and the default reminders.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime
from typing import TypeVar

from slotkeeper.core.metrics import EngineMetrics, get_engine_metrics
from slotkeeper.core.telemetry import provider_span
from slotkeeper.errors import ProviderError
from slotkeeper.providers.base import (
    CalendarEvent,
    CalendarProvider,
    EventAttendee,
    EventDraft,
    EventPatch,
    EventReminder,
    InsertedEvent,
    ReminderMethod,
    ResponseStatus,
)
from slotkeeper.providers.retry import RetryPolicy, execute_with_retry
from slotkeeper.scheduling.intervals import Interval
from slotkeeper.scheduling.models import Account
from slotkeeper.token_refresh import TokenRefreshCoordinator

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_REMINDERS: tuple[EventReminder, ...] = (
    EventReminder(method=ReminderMethod.EMAIL, minutes=0),
    EventReminder(method=ReminderMethod.POPUP, minutes=30),
)


def build_attendees(
    owner: Account,
    visitor_email: str,
    visitor_name: str | None = None,
) -> list[EventAttendee]:
    """Owner as accepted organizer plus the visitor, auto-accepted."""
    return [
        EventAttendee(
            email=owner.email,
            display_name=owner.display_name,
            organizer=True,
            response_status=ResponseStatus.ACCEPTED,
        ),
        EventAttendee(
            email=visitor_email,
            display_name=visitor_name,
            response_status=ResponseStatus.ACCEPTED,
        ),
    ]


class CalendarClient:
    """Provider calls on behalf of an account."""

    def __init__(
        self,
        *,
        provider: CalendarProvider,
        coordinator: TokenRefreshCoordinator,
        retry_policy: RetryPolicy | None = None,
        reminders: Sequence[EventReminder] = DEFAULT_REMINDERS,
        deadline_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        metrics: EngineMetrics | None = None,
    ) -> None:
        self._provider = provider
        self._coordinator = coordinator
        self._retry_policy = retry_policy or RetryPolicy()
        self._reminders = list(reminders)
        self._deadline_seconds = deadline_seconds
        self._sleep = sleep
        self._metrics = metrics or get_engine_metrics()

    @property
    def provider(self) -> CalendarProvider:
        return self._provider

    async def is_connected(self, account_id: str) -> bool:
        return await self._coordinator.get_connection(account_id) is not None

    async def _call(
        self,
        operation_name: str,
        account_id: str,
        call: Callable[[str, str], Awaitable[T]],
    ) -> T:
        async def attempt() -> T:
            # Resolved per attempt; a backoff can outlive the token.
            connection, access_token = await self._coordinator.get_access_token(account_id)
            try:
                result = await call(access_token, connection.calendar_id)
            except ProviderError:
                self._metrics.record_provider_request(operation_name, "error")
                raise
            self._metrics.record_provider_request(operation_name, "ok")
            return result

        deadline = None
        if self._deadline_seconds is not None:
            deadline = time.monotonic() + self._deadline_seconds
        with provider_span(operation_name, account_id=account_id, provider=self._provider.name):
            return await execute_with_retry(
                attempt,
                policy=self._retry_policy,
                operation_name=operation_name,
                deadline=deadline,
                on_retry=lambda _exc, _n: self._metrics.record_provider_retry(operation_name),
                sleep=self._sleep,
            )

    async def list_events(
        self,
        account_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> list[CalendarEvent]:
        return await self._call(
            "list_events",
            account_id,
            lambda token, calendar_id: self._provider.list_events(
                access_token=token,
                calendar_id=calendar_id,
                time_min=time_min,
                time_max=time_max,
            ),
        )

    async def list_busy_intervals(
        self,
        account_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> list[Interval]:
        """Busy periods in ``[time_min, time_max)``.

        Cancelled events and events without a timed start and end are ignored.
        """
        events = await self.list_events(account_id, time_min, time_max)
        intervals = []
        for event in events:
            interval = event.busy_interval()
            if interval is not None:
                intervals.append(interval)
        return intervals

    async def insert_event(
        self,
        account_id: str,
        *,
        owner: Account,
        visitor_email: str,
        visitor_name: str | None,
        summary: str,
        start: datetime,
        end: datetime,
        timezone: str,
        description: str | None = None,
        location: str | None = None,
        wants_conferencing: bool = False,
    ) -> InsertedEvent:
        draft = EventDraft(
            summary=summary,
            description=description,
            location=location,
            start=start,
            end=end,
            timezone=timezone,
            attendees=build_attendees(owner, visitor_email, visitor_name),
            reminders=self._reminders,
        )
        return await self._call(
            "insert_event",
            account_id,
            lambda token, calendar_id: self._provider.insert_event(
                access_token=token,
                calendar_id=calendar_id,
                draft=draft,
                wants_conferencing=wants_conferencing,
            ),
        )

    async def patch_event(self, account_id: str, event_id: str, patch: EventPatch) -> None:
        await self._call(
            "patch_event",
            account_id,
            lambda token, calendar_id: self._provider.patch_event(
                access_token=token,
                calendar_id=calendar_id,
                event_id=event_id,
                patch=patch,
            ),
        )

    async def delete_event(self, account_id: str, event_id: str) -> None:
        await self._call(
            "delete_event",
            account_id,
            lambda token, calendar_id: self._provider.delete_event(
                access_token=token,
                calendar_id=calendar_id,
                event_id=event_id,
            ),
        )
