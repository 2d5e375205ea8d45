"""Read-side contract for an account's schedule configuration."""

from __future__ import annotations

import datetime as dt
from typing import Protocol

from slotkeeper.scheduling.models import Account, AppointmentType, DateOverride, WorkingHoursRule


class ScheduleStore(Protocol):
    async def get_account(self, account_id: str) -> Account | None: ...

    async def get_appointment_type(
        self, account_id: str, appointment_type_id: str
    ) -> AppointmentType | None: ...

    async def list_working_hours(self, account_id: str) -> list[WorkingHoursRule]: ...

    async def list_date_overrides(
        self, account_id: str, start: dt.date, end: dt.date
    ) -> list[DateOverride]:
        """Overrides dated within ``[start, end]``."""
        ...

    async def list_team_members(self, account_id: str) -> list[str]:
        """Account ids of active team members, excluding the owner."""
        ...
