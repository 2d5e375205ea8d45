"""Mark candidate slots free or blocked against bookings and busy periods."""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass

from slotkeeper.scheduling.intervals import Interval, merge_intervals
from slotkeeper.scheduling.slots import Slot

logger = logging.getLogger(__name__)


class ConflictSource(enum.StrEnum):
    APPOINTMENT = "appointment"
    CALENDAR = "calendar"


@dataclass(frozen=True)
class SlotAvailability:
    slot: Slot
    available: bool
    conflict: ConflictSource | None = None


def find_conflict(
    buffered: Interval,
    booked: Iterable[Interval],
    busy: Iterable[Interval],
) -> ConflictSource | None:
    """Return what blocks *buffered*, or None when it is free."""
    for interval in booked:
        if buffered.overlaps(interval):
            return ConflictSource.APPOINTMENT
    for interval in busy:
        if buffered.overlaps(interval):
            return ConflictSource.CALENDAR
    return None


def resolve_conflicts(
    slots: Sequence[Slot],
    booked: Iterable[Interval],
    busy: Iterable[Interval],
) -> list[SlotAvailability]:
    """Check every slot's buffered interval against both blocking sources.

    *booked* holds the buffered intervals of existing non-cancelled
    appointments; *busy* holds external calendar busy periods.  Intervals are
    half-open, so touching boundaries do not block.
    """
    booked_list = merge_intervals(booked)
    busy_list = merge_intervals(busy)
    results = []
    for slot in slots:
        conflict = find_conflict(slot.buffered, booked_list, busy_list)
        results.append(SlotAvailability(slot=slot, available=conflict is None, conflict=conflict))
    return results


async def collect_team_busy(
    member_ids: Sequence[str],
    fetch: Callable[[str], Awaitable[Sequence[Interval] | None]],
) -> list[Interval]:
    """Fetch every member's busy periods in parallel and merge them.

    Members without a calendar (``fetch`` returns None) contribute nothing.
    A member whose fetch fails is logged and skipped so one broken calendar
    does not hide the rest of the team.
    """
    results = await asyncio.gather(
        *(fetch(member_id) for member_id in member_ids),
        return_exceptions=True,
    )
    collected: list[Interval] = []
    for member_id, result in zip(member_ids, results, strict=True):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            logger.warning(
                "Skipping busy periods for team member %s: %s",
                member_id,
                type(result).__name__,
            )
            continue
        if result:
            collected.extend(result)
    return merge_intervals(collected)
