"""Unit tests for slotkeeper.scheduling.hours."""

from __future__ import annotations

import datetime as dt
from zoneinfo import ZoneInfo

import pytest

from slotkeeper.scheduling.hours import (
    find_override,
    has_working_hours,
    local_day_bounds,
    resolve_windows,
)
from slotkeeper.scheduling.intervals import Interval
from slotkeeper.scheduling.models import DateOverride, WorkingHoursRule, sunday_based_weekday

from conftest import MONDAY, at, weekday_hours

pytestmark = pytest.mark.unit

UTC_ZONE = ZoneInfo("UTC")


class TestWeekday:
    @pytest.mark.parametrize(
        "day,expected",
        [
            (dt.date(2030, 6, 2), 0),
            (MONDAY, 1),
            (dt.date(2030, 6, 8), 6),
        ],
        ids=["sunday", "monday", "saturday"],
    )
    def test_sunday_is_zero(self, day: dt.date, expected: int) -> None:
        assert sunday_based_weekday(day) == expected


class TestResolveWindows:
    def test_weekly_rule_applies(self) -> None:
        windows = resolve_windows(MONDAY, weekday_hours(), [], UTC_ZONE)
        assert windows == [Interval(at(9), at(17))]

    def test_weekend_has_no_windows(self) -> None:
        sunday = dt.date(2030, 6, 2)
        assert resolve_windows(sunday, weekday_hours(), [], UTC_ZONE) == []
        assert not has_working_hours(sunday, weekday_hours(), [], UTC_ZONE)

    def test_disabled_rule_ignored(self) -> None:
        rules = [
            WorkingHoursRule(
                day_of_week=1, start_time=dt.time(9), end_time=dt.time(17), enabled=False
            )
        ]
        assert resolve_windows(MONDAY, rules, [], UTC_ZONE) == []

    def test_split_day_is_sorted(self) -> None:
        rules = [
            WorkingHoursRule(day_of_week=1, start_time=dt.time(14), end_time=dt.time(17)),
            WorkingHoursRule(day_of_week=1, start_time=dt.time(9), end_time=dt.time(12)),
        ]
        assert resolve_windows(MONDAY, rules, [], UTC_ZONE) == [
            Interval(at(9), at(12)),
            Interval(at(14), at(17)),
        ]

    def test_window_ending_before_it_starts_is_dropped(self) -> None:
        rules = [WorkingHoursRule(day_of_week=1, start_time=dt.time(17), end_time=dt.time(9))]
        assert resolve_windows(MONDAY, rules, [], UTC_ZONE) == []

    def test_local_times_in_account_zone(self) -> None:
        windows = resolve_windows(MONDAY, weekday_hours(), [], ZoneInfo("America/New_York"))
        # EDT is UTC-4 in June.
        assert windows[0].start == at(13)
        assert windows[0].end == at(21)


class TestOverrides:
    def test_unavailable_override_closes_the_day(self) -> None:
        overrides = [DateOverride(date=MONDAY, is_available=False)]
        assert resolve_windows(MONDAY, weekday_hours(), overrides, UTC_ZONE) == []

    def test_override_replaces_weekly_hours(self) -> None:
        overrides = [
            DateOverride(
                date=MONDAY, is_available=True, start_time=dt.time(12), end_time=dt.time(14)
            )
        ]
        assert resolve_windows(MONDAY, weekday_hours(), overrides, UTC_ZONE) == [
            Interval(at(12), at(14))
        ]

    def test_available_override_without_times_opens_whole_day(self) -> None:
        sunday = dt.date(2030, 6, 2)
        overrides = [DateOverride(date=sunday, is_available=True)]
        windows = resolve_windows(sunday, weekday_hours(), overrides, UTC_ZONE)
        assert windows == [Interval(at(0, day=sunday), at(0, day=MONDAY))]

    def test_override_for_other_date_is_ignored(self) -> None:
        overrides = [DateOverride(date=dt.date(2030, 6, 4), is_available=False)]
        assert resolve_windows(MONDAY, weekday_hours(), overrides, UTC_ZONE) == [
            Interval(at(9), at(17))
        ]

    def test_last_matching_override_wins(self) -> None:
        closed = DateOverride(date=MONDAY, is_available=False)
        opened = DateOverride(date=MONDAY, is_available=True)
        assert find_override(MONDAY, [closed, opened]) is opened


class TestLocalDayBounds:
    def test_dst_day_is_23_hours(self) -> None:
        # US spring-forward.
        bounds = local_day_bounds(dt.date(2030, 3, 10), ZoneInfo("America/New_York"))
        elapsed = bounds.end.astimezone(dt.UTC) - bounds.start.astimezone(dt.UTC)
        assert elapsed == dt.timedelta(hours=23)
