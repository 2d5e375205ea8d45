"""External calendar providers."""

from slotkeeper.providers.base import (
    CalendarEvent,
    CalendarProvider,
    EventAttendee,
    EventDraft,
    EventPatch,
    EventReminder,
    EventStatus,
    InsertedEvent,
    ReminderMethod,
    ResponseStatus,
    TokenGrant,
    classify_status,
)
from slotkeeper.providers.google import GoogleCalendarProvider
from slotkeeper.providers.retry import RetryPolicy, execute_with_retry

__all__ = [
    "CalendarEvent",
    "CalendarProvider",
    "EventAttendee",
    "EventDraft",
    "EventPatch",
    "EventReminder",
    "EventStatus",
    "GoogleCalendarProvider",
    "InsertedEvent",
    "ReminderMethod",
    "ResponseStatus",
    "RetryPolicy",
    "TokenGrant",
    "classify_status",
    "execute_with_retry",
]
