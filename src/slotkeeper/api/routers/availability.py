"""Availability endpoints.

Provides:

- ``GET /api/availability/dates``: dates with at least one open slot
- ``GET /api/availability/slots``: every slot for a date (``team=true`` merges
  the busy periods of the account's team)
- ``POST /api/availability/prewarm``: start loading busy periods in the background
"""

from __future__ import annotations

import logging
from datetime import date

from fastapi import APIRouter, Depends, Query

from slotkeeper.api.deps import get_availability
from slotkeeper.api.models import ApiResponse
from slotkeeper.api.models.availability import (
    AvailableDatesModel,
    DaySlotsModel,
    PrewarmRequest,
    PrewarmResponse,
)
from slotkeeper.availability import DEFAULT_DAYS_AHEAD, AvailabilityService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/availability", tags=["availability"])


@router.get("/dates", response_model=ApiResponse[AvailableDatesModel])
async def list_available_dates(
    account_id: str = Query(...),
    appointment_type_id: str = Query(...),
    start_date: date | None = Query(None),
    days_ahead: int = Query(DEFAULT_DAYS_AHEAD, ge=1, le=90),
    service: AvailabilityService = Depends(get_availability),
) -> ApiResponse[AvailableDatesModel]:
    dates = await service.list_available_dates(
        account_id,
        appointment_type_id,
        start_date=start_date,
        days_ahead=days_ahead,
    )
    return ApiResponse[AvailableDatesModel](data=AvailableDatesModel(dates=dates))


@router.get("/slots", response_model=ApiResponse[DaySlotsModel])
async def list_slots(
    account_id: str = Query(...),
    appointment_type_id: str = Query(...),
    day: date = Query(..., alias="date"),
    team: bool = Query(False),
    service: AvailabilityService = Depends(get_availability),
) -> ApiResponse[DaySlotsModel]:
    if team:
        result = await service.list_team_slots(account_id, appointment_type_id, day)
    else:
        result = await service.list_slots(account_id, appointment_type_id, day)
    return ApiResponse[DaySlotsModel](data=DaySlotsModel.from_day(result))


@router.post("/prewarm", status_code=202, response_model=ApiResponse[PrewarmResponse])
async def prewarm(
    request: PrewarmRequest,
    service: AvailabilityService = Depends(get_availability),
) -> ApiResponse[PrewarmResponse]:
    task = await service.prewarm(request.account_id, days_ahead=request.days_ahead)
    return ApiResponse[PrewarmResponse](data=PrewarmResponse(scheduled=task is not None))
