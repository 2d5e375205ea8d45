"""Unit tests for slotkeeper.scheduling.conflicts."""

from __future__ import annotations

from datetime import timedelta

import pytest

from slotkeeper.errors import ProviderTransientError
from slotkeeper.scheduling.conflicts import (
    ConflictSource,
    collect_team_busy,
    find_conflict,
    resolve_conflicts,
)
from slotkeeper.scheduling.intervals import Interval
from slotkeeper.scheduling.slots import generate_slots

from conftest import at, make_appointment_type

pytestmark = pytest.mark.unit


def _availability_by_start(results) -> dict:
    return {result.slot.start: result for result in results}


class TestResolveConflicts:
    def test_buffered_booking_blocks_neighbouring_slots(self) -> None:
        appointment_type = make_appointment_type(duration=30, before=5, after=5)
        slots = generate_slots(Interval(at(9), at(17)), appointment_type)
        existing = Interval(at(10), at(10, 30)).padded(
            timedelta(minutes=5), timedelta(minutes=5)
        )

        by_start = _availability_by_start(resolve_conflicts(slots, [existing], []))

        assert by_start[at(9)].available
        assert not by_start[at(9, 30)].available
        assert not by_start[at(10)].available
        assert not by_start[at(10, 30)].available
        assert by_start[at(11)].available
        assert by_start[at(9, 30)].conflict == ConflictSource.APPOINTMENT

    def test_touching_boundaries_do_not_conflict(self) -> None:
        slots = generate_slots(Interval(at(9), at(11)), make_appointment_type(duration=30))
        booked = [Interval(at(10), at(10, 30))]

        by_start = _availability_by_start(resolve_conflicts(slots, booked, []))

        assert by_start[at(9, 30)].available
        assert not by_start[at(10)].available
        assert by_start[at(10, 30)].available

    def test_calendar_busy_periods_block(self) -> None:
        slots = generate_slots(Interval(at(9), at(10)), make_appointment_type(duration=30))
        busy = [Interval(at(9, 15), at(9, 20))]

        results = resolve_conflicts(slots, [], busy)

        assert [result.available for result in results] == [False, True]
        assert results[0].conflict == ConflictSource.CALENDAR

    def test_booking_takes_precedence_as_conflict_source(self) -> None:
        window = Interval(at(9), at(9, 30))
        assert find_conflict(window, [window], [window]) == ConflictSource.APPOINTMENT
        assert find_conflict(window, [], []) is None

    def test_output_preserves_slot_order(self) -> None:
        slots = generate_slots(Interval(at(9), at(12)), make_appointment_type(duration=60))
        results = resolve_conflicts(slots, [], [])
        assert [result.slot for result in results] == slots
        assert all(result.available for result in results)


class TestCollectTeamBusy:
    async def test_merges_member_busy_periods(self) -> None:
        calendars = {
            "owner": [Interval(at(9), at(10))],
            "ana": [Interval(at(9, 30), at(11))],
            "ben": [Interval(at(14), at(15))],
        }

        async def fetch(member_id: str):
            return calendars[member_id]

        busy = await collect_team_busy(["owner", "ana", "ben"], fetch)

        assert busy == [Interval(at(9), at(11)), Interval(at(14), at(15))]

    async def test_failed_and_unconnected_members_are_skipped(self) -> None:
        async def fetch(member_id: str):
            if member_id == "broken":
                raise ProviderTransientError(status_code=503, message="down")
            if member_id == "offline":
                return None
            return [Interval(at(12), at(13))]

        busy = await collect_team_busy(["owner", "broken", "offline"], fetch)

        assert busy == [Interval(at(12), at(13))]

    async def test_empty_team(self) -> None:
        async def fetch(member_id: str):
            raise AssertionError("not called")

        assert await collect_team_busy([], fetch) == []
