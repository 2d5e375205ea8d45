"""Fixed tiling of a working window into candidate slots."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from slotkeeper.scheduling.intervals import Interval
from slotkeeper.scheduling.models import AppointmentType


@dataclass(frozen=True, order=True)
class Slot:
    """A candidate appointment ``[start, end)``.

    ``buffered`` is the interval actually reserved once buffers are applied.
    It drives conflict checks and is never shown to visitors.
    """

    start: datetime
    end: datetime
    buffered: Interval = field(compare=False, repr=False)

    @property
    def interval(self) -> Interval:
        return Interval(self.start, self.end)


def tile_window(
    window: Interval,
    duration: timedelta,
    buffer_before: timedelta = timedelta(0),
    buffer_after: timedelta = timedelta(0),
) -> list[Slot]:
    if duration <= timedelta(0):
        raise ValueError("slot duration must be positive")

    # Absolute-time arithmetic: local wall-clock addition drifts across DST.
    cursor = window.start.astimezone(UTC)
    window_end = window.end.astimezone(UTC)
    slots: list[Slot] = []
    while cursor + duration <= window_end:
        end = cursor + duration
        slots.append(
            Slot(
                start=cursor,
                end=end,
                buffered=Interval(cursor - buffer_before, end + buffer_after),
            )
        )
        cursor = end
    return slots


def generate_slots(
    window: Interval,
    appointment_type: AppointmentType,
    *,
    not_before: datetime | None = None,
) -> list[Slot]:
    """Tile *window* with back-to-back slots of the appointment's duration.

    Slots start at the window start and advance by exactly one duration; a
    trailing slot that would end past the window is discarded.  Buffers widen
    each slot's reserved interval but never shift the tiling.  Slots starting
    before *not_before* are filtered out.  Output is ascending and
    deterministic.
    """
    slots = tile_window(
        window,
        appointment_type.duration,
        appointment_type.buffer_before,
        appointment_type.buffer_after,
    )
    if not_before is not None:
        slots = [slot for slot in slots if slot.start >= not_before]
    return slots


def generate_day_slots(
    windows: Iterable[Interval],
    appointment_type: AppointmentType,
    *,
    not_before: datetime | None = None,
) -> list[Slot]:
    slots: list[Slot] = []
    for window in windows:
        slots.extend(generate_slots(window, appointment_type, not_before=not_before))
    return sorted(slots)
