"""Calendar connection records and the storage contract they live behind.

A :class:`CalendarConnection` links an account to an external calendar.  Its
token pair is only ever held in encrypted form; the refresh coordinator is
the sole writer of token updates after the connection is first registered.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol

from slotkeeper.crypto import CredentialCipher, EncryptedValue

if TYPE_CHECKING:
    from slotkeeper.cache import AvailabilityCache

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "google"
DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)


@dataclass(frozen=True)
class CalendarConnection:
    """Link between an account and an external calendar."""

    account_id: str
    access_token: EncryptedValue
    refresh_token: EncryptedValue
    expires_at: datetime
    provider: str = DEFAULT_PROVIDER
    email: str | None = None
    is_primary: bool = True
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def is_expired(self, now: datetime | None = None) -> bool:
        current = now or datetime.now(UTC)
        return current >= self.expires_at

    @property
    def calendar_id(self) -> str:
        return self.email or "primary"

    def with_tokens(
        self,
        *,
        access_token: EncryptedValue,
        refresh_token: EncryptedValue,
        expires_at: datetime,
    ) -> CalendarConnection:
        return replace(
            self,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )

    def to_storage(self) -> dict[str, Any]:
        """Return the persisted layout (camelCase, encrypted token objects)."""
        return {
            "accessToken": self.access_token.model_dump(by_alias=True),
            "refreshToken": self.refresh_token.model_dump(by_alias=True),
            "expiresAt": self.expires_at.astimezone(UTC).isoformat(),
            "isPrimary": self.is_primary,
            "provider": self.provider,
        }

    @classmethod
    def from_storage(
        cls,
        payload: dict[str, Any],
        *,
        account_id: str,
        id: str | None = None,
        email: str | None = None,
    ) -> CalendarConnection:
        expires_at = datetime.fromisoformat(payload["expiresAt"])
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        return cls(
            id=id or str(uuid.uuid4()),
            account_id=account_id,
            email=email,
            provider=payload.get("provider", DEFAULT_PROVIDER),
            is_primary=bool(payload.get("isPrimary", True)),
            access_token=EncryptedValue.model_validate(payload["accessToken"]),
            refresh_token=EncryptedValue.model_validate(payload["refreshToken"]),
            expires_at=expires_at,
        )

    def __repr__(self) -> str:
        return (
            f"CalendarConnection(id={self.id!r}, account_id={self.account_id!r}, "
            f"provider={self.provider!r}, email={self.email!r}, "
            f"expires_at={self.expires_at.isoformat()!r}, tokens=<redacted>)"
        )

    __str__ = __repr__


class ConnectionStore(Protocol):
    """Persistence for calendar connections."""

    async def get_primary(
        self, account_id: str, provider: str = DEFAULT_PROVIDER
    ) -> CalendarConnection | None: ...

    async def upsert(self, connection: CalendarConnection) -> CalendarConnection: ...

    async def save_tokens(
        self,
        connection_id: str,
        *,
        access_token: EncryptedValue,
        refresh_token: EncryptedValue,
        expires_at: datetime,
    ) -> None: ...

    async def delete(self, account_id: str, provider: str = DEFAULT_PROVIDER) -> bool: ...


async def register_connection(
    store: ConnectionStore,
    cipher: CredentialCipher,
    *,
    account_id: str,
    access_token: str,
    refresh_token: str,
    expires_at: datetime | None = None,
    email: str | None = None,
    provider: str = DEFAULT_PROVIDER,
    cache: AvailabilityCache | None = None,
) -> CalendarConnection:
    """Encrypt a freshly consented token pair and store it as the primary connection.

    Called once the OAuth consent flow has exchanged its authorization code.
    Any cached busy periods for the account are discarded since they were
    computed without (or with a different) calendar.
    """
    connection = CalendarConnection(
        account_id=account_id,
        provider=provider,
        email=email,
        is_primary=True,
        access_token=cipher.encrypt(access_token),
        refresh_token=cipher.encrypt(refresh_token),
        expires_at=expires_at or datetime.now(UTC) + DEFAULT_TOKEN_LIFETIME,
    )
    stored = await store.upsert(connection)
    if cache is not None:
        cache.invalidate_account(account_id)
    logger.info("Calendar connected for account %s (provider=%s)", account_id, provider)
    return stored


async def disconnect_connection(
    store: ConnectionStore,
    *,
    account_id: str,
    provider: str = DEFAULT_PROVIDER,
    cache: AvailabilityCache | None = None,
) -> bool:
    """Remove an account's connection and drop its cached busy periods."""
    removed = await store.delete(account_id, provider)
    if cache is not None:
        cache.invalidate_account(account_id)
    if removed:
        logger.info("Calendar disconnected for account %s (provider=%s)", account_id, provider)
    return removed
