"""FastAPI dependencies.

The engine is attached to ``app.state.engine`` either by ``create_app`` (when
one is passed in) or by the lifespan handler at startup.
"""

from __future__ import annotations

from fastapi import Request

from slotkeeper.availability import AvailabilityService
from slotkeeper.booking import BookingWriter
from slotkeeper.engine import Engine


def get_engine(request: Request) -> Engine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise RuntimeError("Engine not initialized")
    return engine


def get_availability(request: Request) -> AvailabilityService:
    return get_engine(request).availability


def get_booking(request: Request) -> BookingWriter:
    return get_engine(request).booking
