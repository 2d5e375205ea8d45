"""Single-flight OAuth token refresh across processes.

Every request that needs an external calendar asks the coordinator for a
connection with a valid access token.  When the stored token has expired,
exactly one caller per account (cluster-wide, through the lock backend)
performs the refresh; everyone else waits, re-reading the connection until
the winner has persisted new tokens or the wait budget runs out.

Lock protocol for account ``A``:

1. ``set_if_absent("refresh:A", owner, ttl)`` with a random owner token.
2. Winner re-reads the connection.  If another process refreshed while it was
   acquiring, the fresh connection is returned without calling the provider.
3. Winner exchanges the refresh token, encrypts and stores the new pair.
4. Winner deletes the lock only when it still holds ``owner``; the TTL
   covers crashes.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from slotkeeper.connections import CalendarConnection, ConnectionStore
from slotkeeper.core.metrics import EngineMetrics, get_engine_metrics
from slotkeeper.crypto import CredentialCipher
from slotkeeper.errors import CalendarNotConnectedError, CredentialError, ProviderError
from slotkeeper.locks import LockBackend, LockBackendUnavailableError
from slotkeeper.providers.base import CalendarProvider

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL_SECONDS = 10.0
DEFAULT_WAIT_DELAY_SECONDS = 0.5
DEFAULT_MAX_WAIT_ATTEMPTS = 6


def refresh_lock_key(account_id: str) -> str:
    return f"refresh:{account_id}"


class TokenRefreshCoordinator:
    """Hands out connections whose access token is valid, refreshing at most once per account."""

    def __init__(
        self,
        *,
        store: ConnectionStore,
        cipher: CredentialCipher,
        provider: CalendarProvider,
        lock_backend: LockBackend,
        lock_ttl_seconds: float = DEFAULT_LOCK_TTL_SECONDS,
        wait_delay_seconds: float = DEFAULT_WAIT_DELAY_SECONDS,
        max_wait_attempts: int = DEFAULT_MAX_WAIT_ATTEMPTS,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        metrics: EngineMetrics | None = None,
    ) -> None:
        if max_wait_attempts < 1:
            raise ValueError("max_wait_attempts must be at least 1")
        self._store = store
        self._cipher = cipher
        self._provider = provider
        self._lock_backend = lock_backend
        self._lock_ttl_seconds = lock_ttl_seconds
        self._wait_delay_seconds = wait_delay_seconds
        self._max_wait_attempts = max_wait_attempts
        self._clock = clock
        self._sleep = sleep
        self._metrics = metrics or get_engine_metrics()

    @property
    def provider_name(self) -> str:
        return self._provider.name

    async def get_connection(self, account_id: str) -> CalendarConnection | None:
        """Return the stored primary connection without refreshing it."""
        return await self._store.get_primary(account_id, self._provider.name)

    async def get_valid_connection(self, account_id: str) -> CalendarConnection:
        """Return the account's primary connection with an unexpired access token.

        Raises
        ------
        CalendarNotConnectedError
            If the account has no primary connection.
        CredentialError
            If the refresh fails or the wait for another refresher times out.
        """
        connection = await self.get_connection(account_id)
        if connection is None:
            raise CalendarNotConnectedError(account_id)
        if not connection.is_expired(self._clock()):
            return connection
        return await self._refresh(connection)

    async def get_access_token(self, account_id: str) -> tuple[CalendarConnection, str]:
        """Return the valid connection and its decrypted access token."""
        connection = await self.get_valid_connection(account_id)
        return connection, self._cipher.decrypt(connection.access_token)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def _refresh(self, stale: CalendarConnection) -> CalendarConnection:
        account_id = stale.account_id
        key = refresh_lock_key(account_id)
        owner = secrets.token_hex(16)

        try:
            acquired = await self._lock_backend.set_if_absent(key, owner, self._lock_ttl_seconds)
        except LockBackendUnavailableError as exc:
            logger.warning(
                "Refresh lock unavailable for account %s, refreshing without a lock: %s",
                account_id,
                exc,
            )
            return await self._perform_refresh(stale)

        if not acquired:
            return await self._wait_for_refresh(account_id)

        try:
            current = await self.get_connection(account_id)
            if current is None:
                raise CalendarNotConnectedError(account_id)
            if not current.is_expired(self._clock()):
                logger.debug("Token for account %s already refreshed by another worker", account_id)
                return current
            return await self._perform_refresh(current)
        finally:
            await self._release(key, owner)

    async def _wait_for_refresh(self, account_id: str) -> CalendarConnection:
        for attempt in range(1, self._max_wait_attempts + 1):
            await self._sleep(self._wait_delay_seconds)
            connection = await self.get_connection(account_id)
            if connection is None:
                raise CalendarNotConnectedError(account_id)
            if not connection.is_expired(self._clock()):
                logger.debug(
                    "Token for account %s refreshed by lock holder (waited %d round(s))",
                    account_id,
                    attempt,
                )
                self._metrics.record_token_refresh("waited")
                return connection

        self._metrics.record_token_refresh("failed")
        raise CredentialError(
            f"Timed out waiting for token refresh of account {account_id} "
            f"after {self._max_wait_attempts} attempt(s)"
        )

    async def _perform_refresh(self, connection: CalendarConnection) -> CalendarConnection:
        account_id = connection.account_id
        refresh_token = self._cipher.decrypt(connection.refresh_token)

        try:
            grant = await self._provider.refresh_token(refresh_token=refresh_token)
        except ProviderError as exc:
            self._metrics.record_token_refresh("failed")
            logger.error(
                "Token refresh failed for account %s (status=%s): %s",
                account_id,
                exc.status_code,
                exc.message,
            )
            raise CredentialError(
                f"Token refresh failed for account {account_id}; reconnect the calendar"
            ) from exc

        access_sealed = self._cipher.encrypt(grant.access_token)
        # Providers that do not rotate refresh tokens return none.
        if grant.refresh_token is not None:
            refresh_sealed = self._cipher.encrypt(grant.refresh_token)
        else:
            refresh_sealed = connection.refresh_token

        await self._store.save_tokens(
            connection.id,
            access_token=access_sealed,
            refresh_token=refresh_sealed,
            expires_at=grant.expires_at,
        )
        self._metrics.record_token_refresh("refreshed")
        logger.info(
            "Refreshed access token for account %s (expires_at=%s)",
            account_id,
            grant.expires_at.isoformat(),
        )
        return connection.with_tokens(
            access_token=access_sealed,
            refresh_token=refresh_sealed,
            expires_at=grant.expires_at,
        )

    async def _release(self, key: str, owner: str) -> None:
        try:
            if await self._lock_backend.get(key) == owner:
                await self._lock_backend.delete(key)
        except LockBackendUnavailableError as exc:
            logger.warning("Failed to release refresh lock %s; it will expire: %s", key, exc)
