"""Resolve weekly rules and date overrides into concrete working windows."""

from __future__ import annotations

import datetime as dt
from collections.abc import Iterable
from zoneinfo import ZoneInfo

from slotkeeper.scheduling.intervals import Interval
from slotkeeper.scheduling.models import DateOverride, WorkingHoursRule, sunday_based_weekday


def find_override(day: dt.date, overrides: Iterable[DateOverride]) -> DateOverride | None:
    match: DateOverride | None = None
    for override in overrides:
        if override.date == day:
            match = override
    return match


def resolve_windows(
    day: dt.date,
    rules: Iterable[WorkingHoursRule],
    overrides: Iterable[DateOverride],
    zone: ZoneInfo,
) -> list[Interval]:
    """Return the working windows for *day*, as aware datetimes in *zone*.

    A date override wins over the weekly rules for its date.  Windows whose
    end is not after their start are dropped.  Results are sorted by start.
    """
    override = find_override(day, overrides)
    if override is not None:
        if not override.is_available:
            return []
        start_time, end_time = override.start_time, override.end_time
        if start_time is None or end_time is None:
            return [local_day_bounds(day, zone)]
        spans = [(start_time, end_time)]
    else:
        weekday = sunday_based_weekday(day)
        spans = [
            (rule.start_time, rule.end_time)
            for rule in rules
            if rule.enabled and rule.day_of_week == weekday
        ]

    windows = []
    for start_time, end_time in spans:
        start = dt.datetime.combine(day, start_time, tzinfo=zone)
        end = dt.datetime.combine(day, end_time, tzinfo=zone)
        if end.astimezone(dt.UTC) <= start.astimezone(dt.UTC):
            continue
        windows.append(Interval(start, end))
    return sorted(windows)


def has_working_hours(
    day: dt.date,
    rules: Iterable[WorkingHoursRule],
    overrides: Iterable[DateOverride],
    zone: ZoneInfo,
) -> bool:
    return bool(resolve_windows(day, rules, overrides, zone))


def local_day_bounds(day: dt.date, zone: ZoneInfo) -> Interval:
    """Return ``[local midnight, next local midnight)`` for *day*."""
    start = dt.datetime.combine(day, dt.time.min, tzinfo=zone)
    end = dt.datetime.combine(day + dt.timedelta(days=1), dt.time.min, tzinfo=zone)
    return Interval(start, end)
