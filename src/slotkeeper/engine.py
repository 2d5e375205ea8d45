"""Component wiring.

:func:`build_engine` turns a :class:`~slotkeeper.config.SlotkeeperConfig`
into the running object graph:

    crypto -> token refresh (+ lock backend) -> calendar client
        -> availability cache -> availability service / booking writer

With ``database.url`` set the PostgreSQL stores are used; otherwise
everything lives in memory, which suits tests and single-process demos.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

from slotkeeper.appointments import AppointmentStore
from slotkeeper.availability import AvailabilityService
from slotkeeper.booking import BookingWriter, UsageMeter
from slotkeeper.cache import AvailabilityCache
from slotkeeper.client import CalendarClient
from slotkeeper.config import LockBackendKind, SlotkeeperConfig
from slotkeeper.connections import (
    CalendarConnection,
    ConnectionStore,
    disconnect_connection,
    register_connection,
)
from slotkeeper.crypto import CredentialCipher
from slotkeeper.db import Database
from slotkeeper.locks import InMemoryLockBackend, LockBackend, NoopLockBackend, PostgresLockBackend
from slotkeeper.providers.base import CalendarProvider
from slotkeeper.providers.google import GoogleCalendarProvider
from slotkeeper.scheduling.store import ScheduleStore
from slotkeeper.storage.memory import (
    InMemoryAppointmentStore,
    InMemoryConnectionStore,
    InMemoryScheduleStore,
    InMemoryUsageMeter,
)
from slotkeeper.storage.postgres import (
    PostgresAppointmentStore,
    PostgresConnectionStore,
    PostgresScheduleStore,
    PostgresUsageMeter,
    ensure_schema,
)
from slotkeeper.token_refresh import TokenRefreshCoordinator

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    config: SlotkeeperConfig
    schedule: ScheduleStore
    appointments: AppointmentStore
    connections: ConnectionStore
    usage: UsageMeter
    cipher: CredentialCipher
    provider: CalendarProvider
    lock_backend: LockBackend
    coordinator: TokenRefreshCoordinator
    calendar: CalendarClient
    cache: AvailabilityCache
    availability: AvailabilityService
    booking: BookingWriter
    database: Database | None = None

    @property
    def storage_backend(self) -> str:
        return "postgres" if isinstance(self.appointments, PostgresAppointmentStore) else "memory"

    async def connect_calendar(
        self,
        account_id: str,
        *,
        access_token: str,
        refresh_token: str,
        expires_at: datetime | None = None,
        email: str | None = None,
    ) -> CalendarConnection:
        """Store the token pair from a completed OAuth consent as the primary connection."""
        return await register_connection(
            self.connections,
            self.cipher,
            account_id=account_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            email=email,
            provider=self.provider.name,
            cache=self.cache,
        )

    async def disconnect_calendar(self, account_id: str) -> bool:
        return await disconnect_connection(
            self.connections,
            account_id=account_id,
            provider=self.provider.name,
            cache=self.cache,
        )

    async def close(self) -> None:
        """Drain background prewarm work and release network resources."""
        await self.cache.drain()
        await self.provider.shutdown()
        if self.database is not None:
            await self.database.close()


def _select_lock_backend(config: SlotkeeperConfig, pool: Any | None) -> LockBackend:
    kind = config.refresh.lock_backend
    if kind is LockBackendKind.NONE:
        logger.warning("Token refresh locking disabled; concurrent refreshes are not coordinated")
        return NoopLockBackend()
    if kind is LockBackendKind.POSTGRES:
        if pool is not None:
            return PostgresLockBackend(pool)
        logger.warning("No database configured; token refresh locks are process-local")
    return InMemoryLockBackend()


async def build_engine(
    config: SlotkeeperConfig,
    *,
    pool: Any | None = None,
    cipher: CredentialCipher | None = None,
    provider: CalendarProvider | None = None,
    http_client: httpx.AsyncClient | None = None,
    ensure_tables: bool = True,
) -> Engine:
    """Build the engine from *config*.

    Parameters
    ----------
    pool:
        An existing asyncpg pool.  When omitted and ``database.url`` is set,
        a pool is created and owned by the engine.
    cipher, provider, http_client:
        Overrides, mainly for tests.
    ensure_tables:
        Run the idempotent schema DDL on the pool before use.
    """
    database: Database | None = None
    if pool is None and config.database.url:
        database = Database(
            config.database.url,
            min_pool_size=config.database.min_pool_size,
            max_pool_size=config.database.max_pool_size,
        )
        pool = await database.connect()

    if pool is not None:
        if ensure_tables:
            await ensure_schema(pool)
        schedule: ScheduleStore = PostgresScheduleStore(pool)
        appointments: AppointmentStore = PostgresAppointmentStore(pool)
        connections: ConnectionStore = PostgresConnectionStore(pool)
        usage: UsageMeter = PostgresUsageMeter(pool, monthly_limit=config.booking.monthly_limit)
    else:
        schedule = InMemoryScheduleStore()
        appointments = InMemoryAppointmentStore()
        connections = InMemoryConnectionStore()
        usage = InMemoryUsageMeter(limit=config.booking.monthly_limit)

    cipher = cipher or CredentialCipher.from_env(config.encryption.key_env)

    if provider is None:
        if not config.google.client_id or not config.google.client_secret:
            logger.warning("Google OAuth client is not configured; token refresh will fail")
        provider = GoogleCalendarProvider(
            client_id=config.google.client_id,
            client_secret=config.google.client_secret,
            http_client=http_client,
            timeout=config.google.timeout_seconds,
        )

    lock_backend = _select_lock_backend(config, pool)
    coordinator = TokenRefreshCoordinator(
        store=connections,
        cipher=cipher,
        provider=provider,
        lock_backend=lock_backend,
        lock_ttl_seconds=config.refresh.lock_ttl_seconds,
        wait_delay_seconds=config.refresh.wait_delay_seconds,
        max_wait_attempts=config.refresh.max_wait_attempts,
    )
    calendar = CalendarClient(
        provider=provider,
        coordinator=coordinator,
        retry_policy=config.retry.to_policy(),
        deadline_seconds=config.retry.deadline_seconds,
    )
    cache = AvailabilityCache(ttl_seconds=config.cache.busy_ttl_seconds)
    availability = AvailabilityService(
        schedule=schedule,
        appointments=appointments,
        cache=cache,
        calendar=calendar,
        fail_open_on_calendar_error=config.booking.fail_open_on_calendar_error,
        prewarm_days=config.cache.prewarm_days,
    )
    booking = BookingWriter(
        schedule=schedule,
        appointments=appointments,
        cache=cache,
        calendar=calendar,
        usage=usage,
        check_external_calendar=config.booking.check_external_calendar,
        fail_open_on_calendar_error=config.booking.fail_open_on_calendar_error,
        event_timeout_seconds=config.booking.event_timeout_seconds,
        wants_conferencing=config.booking.wants_conferencing,
    )

    logger.info(
        "Engine built (storage=%s, lock_backend=%s)",
        "postgres" if pool is not None else "memory",
        type(lock_backend).__name__,
    )
    return Engine(
        config=config,
        schedule=schedule,
        appointments=appointments,
        connections=connections,
        usage=usage,
        cipher=cipher,
        provider=provider,
        lock_backend=lock_backend,
        coordinator=coordinator,
        calendar=calendar,
        cache=cache,
        availability=availability,
        booking=booking,
        database=database,
    )
