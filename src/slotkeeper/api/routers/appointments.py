"""Booking and cancellation endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from slotkeeper.api.deps import get_booking
from slotkeeper.api.models import ApiResponse
from slotkeeper.api.models.appointment import (
    BookingModel,
    BookingRequest,
    CancellationModel,
    CancelRequest,
)
from slotkeeper.booking import BookingWriter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/appointments", tags=["appointments"])


@router.post("/book", status_code=201, response_model=ApiResponse[BookingModel])
async def book(
    request: BookingRequest,
    writer: BookingWriter = Depends(get_booking),
) -> ApiResponse[BookingModel]:
    result = await writer.book(
        account_id=request.account_id,
        appointment_type_id=request.appointment_type_id,
        start=request.start,
        visitor=request.visitor,
        timezone=request.timezone,
    )
    return ApiResponse[BookingModel](data=BookingModel.from_result(result))


@router.post("/cancel", response_model=ApiResponse[CancellationModel])
async def cancel(
    request: CancelRequest,
    writer: BookingWriter = Depends(get_booking),
) -> ApiResponse[CancellationModel]:
    appointment = await writer.cancel_by_token(request.token)
    return ApiResponse[CancellationModel](data=CancellationModel.from_appointment(appointment))
