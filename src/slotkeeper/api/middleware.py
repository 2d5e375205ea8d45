"""API error handling middleware: consistent error responses.

Registers FastAPI exception handlers that convert engine exceptions into
standardised ``{"error": {"code": "...", "message": "...", "details": ...}}``
JSON responses.

Status code mapping:
- ``BookingConflictError`` → 409 ``SLOT_UNAVAILABLE``
- ``CredentialError`` → 409 ``CALENDAR_RECONNECT_REQUIRED``
- ``ResourceNotFoundError`` → 404 ``NOT_FOUND``
- ``UsageLimitExceededError`` → 429 ``USAGE_LIMIT_EXCEEDED``
- ``ProviderFatalError`` → 502 ``CALENDAR_PROVIDER_ERROR``
- ``ProviderTransientError`` / ``AvailabilityUnavailableError`` → 503
  ``AVAILABILITY_TEMPORARILY_UNAVAILABLE``
- ``ValueError`` → 400 ``VALIDATION_ERROR``
- Any other ``Exception`` → 500 ``INTERNAL_ERROR``
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from slotkeeper.api.models import ErrorDetail, ErrorResponse
from slotkeeper.errors import (
    AvailabilityUnavailableError,
    BookingConflictError,
    CredentialError,
    ProviderFatalError,
    ProviderTransientError,
    ResourceNotFoundError,
    UsageLimitExceededError,
    redact_secrets,
)

logger = logging.getLogger(__name__)


def _error(status_code: int, code: str, message: str, details: dict | None = None) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, details=details))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_booking_conflict(request: Request, exc: BookingConflictError) -> JSONResponse:
    """Return 409 when the slot was taken; the client should re-query slots."""
    details = {"source": exc.source} if exc.source else None
    return _error(409, "SLOT_UNAVAILABLE", str(exc), details)


async def _handle_credential_error(request: Request, exc: CredentialError) -> JSONResponse:
    logger.warning("Calendar credentials unusable: %s", type(exc).__name__)
    return _error(
        409,
        "CALENDAR_RECONNECT_REQUIRED",
        "The calendar connection must be re-established",
    )


async def _handle_not_found(request: Request, exc: ResourceNotFoundError) -> JSONResponse:
    return _error(404, "NOT_FOUND", str(exc))


async def _handle_usage_limit(request: Request, exc: UsageLimitExceededError) -> JSONResponse:
    return _error(429, "USAGE_LIMIT_EXCEEDED", str(exc))


async def _handle_provider_fatal(request: Request, exc: ProviderFatalError) -> JSONResponse:
    logger.warning(
        "Calendar provider rejected %s (status=%s)", exc.operation or "request", exc.status_code
    )
    return _error(
        502,
        "CALENDAR_PROVIDER_ERROR",
        redact_secrets(str(exc)),
        {"status_code": exc.status_code},
    )


async def _handle_unavailable(request: Request, exc: Exception) -> JSONResponse:
    logger.warning("Availability temporarily unavailable: %s", type(exc).__name__)
    return _error(
        503,
        "AVAILABILITY_TEMPORARILY_UNAVAILABLE",
        "Availability is temporarily unavailable, please retry",
    )


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    return _error(400, "VALIDATION_ERROR", str(exc))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    Sits above the Starlette exception handler layer so that exceptions not
    caught by ``add_exception_handler`` still get the standard error envelope.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application."""
    app.add_exception_handler(BookingConflictError, _handle_booking_conflict)  # type: ignore[arg-type]
    app.add_exception_handler(CredentialError, _handle_credential_error)  # type: ignore[arg-type]
    app.add_exception_handler(ResourceNotFoundError, _handle_not_found)  # type: ignore[arg-type]
    app.add_exception_handler(UsageLimitExceededError, _handle_usage_limit)  # type: ignore[arg-type]
    app.add_exception_handler(ProviderFatalError, _handle_provider_fatal)  # type: ignore[arg-type]
    app.add_exception_handler(ProviderTransientError, _handle_unavailable)
    app.add_exception_handler(AvailabilityUnavailableError, _handle_unavailable)
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
