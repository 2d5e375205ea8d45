"""Error taxonomy for the availability and calendar-sync engine.

Every error raised by slotkeeper derives from :class:`SlotkeeperError` so the
HTTP layer can map the whole family in one place.  Lock contention during a
token refresh is deliberately absent: it is an internal wait condition, not an
error.
"""

from __future__ import annotations

import re


class SlotkeeperError(RuntimeError):
    """Base error for the slotkeeper engine."""


class CredentialError(SlotkeeperError):
    """Raised when a stored credential cannot be decrypted or refreshed.

    The account's calendar must be reconnected by its owner.
    """


class CalendarNotConnectedError(CredentialError):
    """Raised when an account has no primary calendar connection."""

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(f"No calendar connection for account {account_id}")


class ProviderError(SlotkeeperError):
    """Raised when a calendar provider request fails.

    ``operation`` and ``attempts`` are filled in by the retry loop once the
    request has been given up on.
    """

    def __init__(self, *, status_code: int | None, message: str) -> None:
        self.status_code = status_code
        self.message = message
        self.operation: str | None = None
        self.attempts: int = 0
        if status_code is None:
            detail = message
        else:
            detail = f"({status_code}): {message}"
        super().__init__(f"Calendar provider request failed {detail}")


class ProviderTransientError(ProviderError):
    """Rate limiting, provider-side failure, or a transport error."""


class ProviderFatalError(ProviderError):
    """Any provider failure that retrying will not fix."""

    @property
    def requires_reconnect(self) -> bool:
        return self.status_code in (401, 403)


class AvailabilityUnavailableError(SlotkeeperError):
    """Raised when busy periods cannot be fetched and failing open is disabled."""


class BookingConflictError(SlotkeeperError):
    """Raised when the requested slot overlaps an existing booking or busy period."""

    def __init__(self, message: str = "Slot is no longer available", *, source: str = "") -> None:
        self.source = source
        super().__init__(message)


class ResourceNotFoundError(SlotkeeperError):
    """Raised when an account, appointment type, or appointment does not exist."""


class UsageLimitExceededError(SlotkeeperError):
    """Raised when an account has used up its booking allowance."""


# ---------------------------------------------------------------------------
# Message sanitisation
# ---------------------------------------------------------------------------

_SECRET_KEYS = r"client_secret|refresh_token|access_token|id_token|token"


def redact_secrets(message: str) -> str:
    """Redact credential-looking values from *message*."""
    redacted = re.sub(
        rf"(?i)\b({_SECRET_KEYS})\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        rf"""(?i)(['"]?(?:{_SECRET_KEYS})['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(
        r"(?i)\bBearer\s+[A-Za-z0-9._~+/=-]+",
        "Bearer [REDACTED]",
        redacted,
    )
    return redacted


def sanitize_message(message: str, *, limit: int = 200) -> str:
    """Redact, collapse whitespace, and truncate *message*."""
    return " ".join(redact_secrets(message).split())[:limit]
