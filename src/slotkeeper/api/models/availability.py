"""Availability request/response models."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, Field

from slotkeeper.availability import DayAvailability


class SlotModel(BaseModel):
    start: datetime
    end: datetime
    start_local: str
    end_local: str
    available: bool


class DaySlotsModel(BaseModel):
    """Slots for one local date, all instants in UTC."""

    date: date
    timezone: str
    calendar_synced: bool
    slots: list[SlotModel] = Field(default_factory=list)

    @classmethod
    def from_day(cls, day: DayAvailability) -> DaySlotsModel:
        return cls(
            date=day.date,
            timezone=day.timezone,
            calendar_synced=day.calendar_synced,
            slots=[
                SlotModel(
                    start=slot.start,
                    end=slot.end,
                    start_local=slot.start_local,
                    end_local=slot.end_local,
                    available=slot.available,
                )
                for slot in day.slots
            ],
        )


class AvailableDatesModel(BaseModel):
    dates: list[date]


class PrewarmRequest(BaseModel):
    account_id: str
    days_ahead: int | None = Field(default=None, ge=1, le=31)


class PrewarmResponse(BaseModel):
    scheduled: bool
