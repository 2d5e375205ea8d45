"""Pure slot computation: working hours, tiling, and conflict checks."""

from slotkeeper.scheduling.conflicts import (
    ConflictSource,
    SlotAvailability,
    collect_team_busy,
    resolve_conflicts,
)
from slotkeeper.scheduling.hours import local_day_bounds, resolve_windows
from slotkeeper.scheduling.intervals import Interval, merge_intervals
from slotkeeper.scheduling.models import Account, AppointmentType, DateOverride, WorkingHoursRule
from slotkeeper.scheduling.slots import Slot, generate_day_slots, generate_slots

__all__ = [
    "Account",
    "AppointmentType",
    "ConflictSource",
    "DateOverride",
    "Interval",
    "Slot",
    "SlotAvailability",
    "WorkingHoursRule",
    "collect_team_busy",
    "generate_day_slots",
    "generate_slots",
    "local_day_bounds",
    "merge_intervals",
    "resolve_conflicts",
    "resolve_windows",
]
