"""PostgreSQL storage backends (asyncpg).

All stores share one pool.  ``ensure_schema()`` creates every table with
``CREATE TABLE IF NOT EXISTS`` so it is safe to run on each startup.

The appointment overlap invariant is enforced inside
``PostgresAppointmentStore.insert_if_free``: a transaction-scoped advisory
lock per account serialises concurrent bookings for that account, then the
buffered-overlap query and the insert run under it.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
from typing import Any

from slotkeeper.appointments import Appointment, AppointmentStatus
from slotkeeper.booking import UsageCheck
from slotkeeper.connections import DEFAULT_PROVIDER, CalendarConnection
from slotkeeper.crypto import EncryptedValue
from slotkeeper.locks import CREATE_REFRESH_LOCKS_TABLE
from slotkeeper.scheduling.models import Account, AppointmentType, DateOverride, WorkingHoursRule

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_ACCOUNTS_DDL = """
CREATE TABLE IF NOT EXISTS accounts (
    id            TEXT PRIMARY KEY,
    email         TEXT NOT NULL,
    name          TEXT,
    business_name TEXT,
    timezone      TEXT NOT NULL DEFAULT 'UTC',
    created_at    TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

_APPOINTMENT_TYPES_DDL = """
CREATE TABLE IF NOT EXISTS appointment_types (
    id                    TEXT PRIMARY KEY,
    account_id            TEXT NOT NULL REFERENCES accounts (id) ON DELETE CASCADE,
    name                  TEXT NOT NULL,
    duration_minutes      INTEGER NOT NULL CHECK (duration_minutes > 0),
    buffer_before_minutes INTEGER NOT NULL DEFAULT 0 CHECK (buffer_before_minutes >= 0),
    buffer_after_minutes  INTEGER NOT NULL DEFAULT 0 CHECK (buffer_after_minutes >= 0),
    active                BOOLEAN NOT NULL DEFAULT true,
    location              TEXT
)
"""

_WORKING_HOURS_DDL = """
CREATE TABLE IF NOT EXISTS working_hours (
    id          BIGSERIAL PRIMARY KEY,
    account_id  TEXT NOT NULL REFERENCES accounts (id) ON DELETE CASCADE,
    day_of_week SMALLINT NOT NULL CHECK (day_of_week BETWEEN 0 AND 6),
    start_time  TIME NOT NULL,
    end_time    TIME NOT NULL,
    enabled     BOOLEAN NOT NULL DEFAULT true
)
"""

_DATE_OVERRIDES_DDL = """
CREATE TABLE IF NOT EXISTS date_overrides (
    id            BIGSERIAL PRIMARY KEY,
    account_id    TEXT NOT NULL REFERENCES accounts (id) ON DELETE CASCADE,
    override_date DATE NOT NULL,
    is_available  BOOLEAN NOT NULL,
    start_time    TIME,
    end_time      TIME,
    UNIQUE (account_id, override_date)
)
"""

_TEAM_MEMBERS_DDL = """
CREATE TABLE IF NOT EXISTS team_members (
    account_id        TEXT NOT NULL REFERENCES accounts (id) ON DELETE CASCADE,
    member_account_id TEXT NOT NULL REFERENCES accounts (id) ON DELETE CASCADE,
    active            BOOLEAN NOT NULL DEFAULT true,
    PRIMARY KEY (account_id, member_account_id)
)
"""

_CALENDAR_CONNECTIONS_DDL = """
CREATE TABLE IF NOT EXISTS calendar_connections (
    id          TEXT PRIMARY KEY,
    account_id  TEXT NOT NULL REFERENCES accounts (id) ON DELETE CASCADE,
    provider    TEXT NOT NULL DEFAULT 'google',
    email       TEXT,
    credentials JSONB NOT NULL,
    expires_at  TIMESTAMPTZ NOT NULL,
    is_primary  BOOLEAN NOT NULL DEFAULT true,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

_CALENDAR_CONNECTIONS_PRIMARY_INDEX_DDL = """
CREATE UNIQUE INDEX IF NOT EXISTS ux_calendar_connections_primary
ON calendar_connections (account_id, provider)
WHERE is_primary
"""

_APPOINTMENTS_DDL = """
CREATE TABLE IF NOT EXISTS appointments (
    id                    TEXT PRIMARY KEY,
    account_id            TEXT NOT NULL REFERENCES accounts (id) ON DELETE CASCADE,
    appointment_type_id   TEXT NOT NULL,
    start_at              TIMESTAMPTZ NOT NULL,
    end_at                TIMESTAMPTZ NOT NULL,
    buffer_before_minutes INTEGER NOT NULL DEFAULT 0,
    buffer_after_minutes  INTEGER NOT NULL DEFAULT 0,
    timezone              TEXT NOT NULL,
    visitor_name          TEXT NOT NULL,
    visitor_email         TEXT NOT NULL,
    visitor_phone         TEXT,
    notes                 TEXT,
    status                TEXT NOT NULL DEFAULT 'confirmed',
    cancellation_token    TEXT NOT NULL UNIQUE,
    calendar_event_id     TEXT,
    conferencing_uri      TEXT,
    created_at            TIMESTAMPTZ NOT NULL DEFAULT now(),
    cancelled_at          TIMESTAMPTZ
)
"""

_APPOINTMENTS_ACCOUNT_INDEX_DDL = """
CREATE INDEX IF NOT EXISTS ix_appointments_account_start
ON appointments (account_id, start_at)
WHERE status <> 'cancelled'
"""

_BOOKING_USAGE_DDL = """
CREATE TABLE IF NOT EXISTS booking_usage (
    account_id TEXT NOT NULL,
    period     DATE NOT NULL,
    bookings   INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (account_id, period)
)
"""

SCHEMA_DDL: tuple[str, ...] = (
    _ACCOUNTS_DDL,
    _APPOINTMENT_TYPES_DDL,
    _WORKING_HOURS_DDL,
    _DATE_OVERRIDES_DDL,
    _TEAM_MEMBERS_DDL,
    _CALENDAR_CONNECTIONS_DDL,
    _CALENDAR_CONNECTIONS_PRIMARY_INDEX_DDL,
    _APPOINTMENTS_DDL,
    _APPOINTMENTS_ACCOUNT_INDEX_DDL,
    _BOOKING_USAGE_DDL,
    CREATE_REFRESH_LOCKS_TABLE,
)


async def ensure_schema(pool: Any) -> None:
    """Create all slotkeeper tables if they do not exist."""
    async with pool.acquire() as conn:
        async with conn.transaction():
            for statement in SCHEMA_DDL:
                await conn.execute(statement)
    logger.info("Database schema ensured (%d statements)", len(SCHEMA_DDL))


# ---------------------------------------------------------------------------
# Schedule
# ---------------------------------------------------------------------------


class PostgresScheduleStore:
    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def get_account(self, account_id: str) -> Account | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT id, email, name, business_name, timezone FROM accounts WHERE id = $1",
                account_id,
            )
        if row is None:
            return None
        return Account(
            id=row["id"],
            email=row["email"],
            name=row["name"],
            business_name=row["business_name"],
            timezone=row["timezone"],
        )

    async def get_appointment_type(
        self, account_id: str, appointment_type_id: str
    ) -> AppointmentType | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, account_id, name, duration_minutes, buffer_before_minutes,
                       buffer_after_minutes, active, location
                FROM appointment_types
                WHERE id = $1 AND account_id = $2
                """,
                appointment_type_id,
                account_id,
            )
        if row is None:
            return None
        return AppointmentType(**dict(row))

    async def list_working_hours(self, account_id: str) -> list[WorkingHoursRule]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT day_of_week, start_time, end_time, enabled
                FROM working_hours
                WHERE account_id = $1
                ORDER BY day_of_week, start_time
                """,
                account_id,
            )
        return [WorkingHoursRule(**dict(row)) for row in rows]

    async def list_date_overrides(
        self, account_id: str, start: dt.date, end: dt.date
    ) -> list[DateOverride]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT override_date, is_available, start_time, end_time
                FROM date_overrides
                WHERE account_id = $1 AND override_date BETWEEN $2 AND $3
                ORDER BY override_date
                """,
                account_id,
                start,
                end,
            )
        return [
            DateOverride(
                date=row["override_date"],
                is_available=row["is_available"],
                start_time=row["start_time"],
                end_time=row["end_time"],
            )
            for row in rows
        ]

    async def list_team_members(self, account_id: str) -> list[str]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT member_account_id
                FROM team_members
                WHERE account_id = $1 AND active AND member_account_id <> $1
                ORDER BY member_account_id
                """,
                account_id,
            )
        return [row["member_account_id"] for row in rows]


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------

_APPOINTMENT_COLUMNS = """
    id, account_id, appointment_type_id, start_at, end_at, buffer_before_minutes,
    buffer_after_minutes, timezone, visitor_name, visitor_email, visitor_phone, notes,
    status, cancellation_token, calendar_event_id, conferencing_uri, created_at, cancelled_at
"""

_BUFFERED_OVERLAP_PREDICATE = """
    account_id = $1
    AND status <> 'cancelled'
    AND start_at - make_interval(mins => buffer_before_minutes) < $3
    AND end_at + make_interval(mins => buffer_after_minutes) > $2
"""


def _appointment_from_row(row: Any) -> Appointment:
    return Appointment(
        id=row["id"],
        account_id=row["account_id"],
        appointment_type_id=row["appointment_type_id"],
        start=row["start_at"],
        end=row["end_at"],
        buffer_before_minutes=row["buffer_before_minutes"],
        buffer_after_minutes=row["buffer_after_minutes"],
        timezone=row["timezone"],
        visitor_name=row["visitor_name"],
        visitor_email=row["visitor_email"],
        visitor_phone=row["visitor_phone"],
        notes=row["notes"],
        status=AppointmentStatus(row["status"]),
        cancellation_token=row["cancellation_token"],
        calendar_event_id=row["calendar_event_id"],
        conferencing_uri=row["conferencing_uri"],
        created_at=row["created_at"],
        cancelled_at=row["cancelled_at"],
    )


class PostgresAppointmentStore:
    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def list_active(
        self, account_id: str, start: dt.datetime, end: dt.datetime
    ) -> list[Appointment]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_APPOINTMENT_COLUMNS} FROM appointments "
                f"WHERE {_BUFFERED_OVERLAP_PREDICATE} ORDER BY start_at",
                account_id,
                start,
                end,
            )
        return [_appointment_from_row(row) for row in rows]

    async def insert_if_free(self, appointment: Appointment) -> bool:
        buffered = appointment.buffered_interval
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext($1))",
                    f"booking:{appointment.account_id}",
                )
                conflict = await conn.fetchval(
                    f"SELECT 1 FROM appointments WHERE {_BUFFERED_OVERLAP_PREDICATE} LIMIT 1",
                    appointment.account_id,
                    buffered.start,
                    buffered.end,
                )
                if conflict is not None:
                    return False
                await conn.execute(
                    f"""
                    INSERT INTO appointments ({_APPOINTMENT_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12,
                            $13, $14, $15, $16, $17, $18)
                    """,
                    appointment.id,
                    appointment.account_id,
                    appointment.appointment_type_id,
                    appointment.start,
                    appointment.end,
                    appointment.buffer_before_minutes,
                    appointment.buffer_after_minutes,
                    appointment.timezone,
                    appointment.visitor_name,
                    appointment.visitor_email,
                    appointment.visitor_phone,
                    appointment.notes,
                    appointment.status.value,
                    appointment.cancellation_token,
                    appointment.calendar_event_id,
                    appointment.conferencing_uri,
                    appointment.created_at,
                    appointment.cancelled_at,
                )
        return True

    async def set_calendar_event(
        self,
        appointment_id: str,
        *,
        event_id: str,
        conferencing_uri: str | None,
    ) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                "UPDATE appointments SET calendar_event_id = $2, conferencing_uri = $3 "
                "WHERE id = $1",
                appointment_id,
                event_id,
                conferencing_uri,
            )

    async def get(self, account_id: str, appointment_id: str) -> Appointment | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_APPOINTMENT_COLUMNS} FROM appointments "
                "WHERE id = $1 AND account_id = $2",
                appointment_id,
                account_id,
            )
        return _appointment_from_row(row) if row is not None else None

    async def get_by_cancellation_token(self, token: str) -> Appointment | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_APPOINTMENT_COLUMNS} FROM appointments WHERE cancellation_token = $1",
                token,
            )
        return _appointment_from_row(row) if row is not None else None

    async def mark_cancelled(self, appointment_id: str) -> Appointment | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE appointments
                SET status = 'cancelled', cancelled_at = now()
                WHERE id = $1 AND status <> 'cancelled'
                RETURNING {_APPOINTMENT_COLUMNS}
                """,
                appointment_id,
            )
        return _appointment_from_row(row) if row is not None else None


# ---------------------------------------------------------------------------
# Calendar connections
# ---------------------------------------------------------------------------


def _connection_from_row(row: Any) -> CalendarConnection:
    credentials = row["credentials"]
    if isinstance(credentials, str):
        credentials = json.loads(credentials)
    return CalendarConnection.from_storage(
        credentials,
        account_id=row["account_id"],
        id=row["id"],
        email=row["email"],
    )


class PostgresConnectionStore:
    """Calendar connections; the token pair is stored as encrypted JSONB only."""

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def get_primary(
        self, account_id: str, provider: str = DEFAULT_PROVIDER
    ) -> CalendarConnection | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, account_id, provider, email, credentials, expires_at, is_primary
                FROM calendar_connections
                WHERE account_id = $1 AND provider = $2 AND is_primary
                """,
                account_id,
                provider,
            )
        return _connection_from_row(row) if row is not None else None

    async def upsert(self, connection: CalendarConnection) -> CalendarConnection:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "DELETE FROM calendar_connections "
                    "WHERE account_id = $1 AND provider = $2 AND is_primary AND id <> $3",
                    connection.account_id,
                    connection.provider,
                    connection.id,
                )
                await conn.execute(
                    """
                    INSERT INTO calendar_connections
                        (id, account_id, provider, email, credentials, expires_at, is_primary)
                    VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7)
                    ON CONFLICT (id) DO UPDATE
                        SET email = EXCLUDED.email,
                            credentials = EXCLUDED.credentials,
                            expires_at = EXCLUDED.expires_at,
                            is_primary = EXCLUDED.is_primary,
                            updated_at = now()
                    """,
                    connection.id,
                    connection.account_id,
                    connection.provider,
                    connection.email,
                    json.dumps(connection.to_storage()),
                    connection.expires_at,
                    connection.is_primary,
                )
        logger.debug("Stored calendar connection %s (tokens not logged)", connection.id)
        return connection

    async def save_tokens(
        self,
        connection_id: str,
        *,
        access_token: EncryptedValue,
        refresh_token: EncryptedValue,
        expires_at: dt.datetime,
    ) -> None:
        patch = {
            "accessToken": access_token.model_dump(by_alias=True),
            "refreshToken": refresh_token.model_dump(by_alias=True),
            "expiresAt": expires_at.astimezone(dt.UTC).isoformat(),
        }
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE calendar_connections
                SET credentials = credentials || $2::jsonb,
                    expires_at = $3,
                    updated_at = now()
                WHERE id = $1
                """,
                connection_id,
                json.dumps(patch),
                expires_at,
            )

    async def delete(self, account_id: str, provider: str = DEFAULT_PROVIDER) -> bool:
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM calendar_connections WHERE account_id = $1 AND provider = $2",
                account_id,
                provider,
            )
        # asyncpg returns the command tag, e.g. "DELETE 1"
        return not str(result).endswith(" 0")


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


def _current_period(now: dt.datetime | None = None) -> dt.date:
    current = now or dt.datetime.now(dt.UTC)
    return current.date().replace(day=1)


class PostgresUsageMeter:
    """Monthly booking counter per account."""

    def __init__(self, pool: Any, *, monthly_limit: int | None = None) -> None:
        self._pool = pool
        self._monthly_limit = monthly_limit

    async def check(self, account_id: str) -> UsageCheck:
        async with self._pool.acquire() as conn:
            current = await conn.fetchval(
                "SELECT bookings FROM booking_usage WHERE account_id = $1 AND period = $2",
                account_id,
                _current_period(),
            )
        current = int(current or 0)
        allowed = self._monthly_limit is None or current < self._monthly_limit
        return UsageCheck(allowed=allowed, limit=self._monthly_limit, current=current)

    async def increment(self, account_id: str) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO booking_usage (account_id, period, bookings)
                VALUES ($1, $2, 1)
                ON CONFLICT (account_id, period) DO UPDATE
                    SET bookings = booking_usage.bookings + 1
                """,
                account_id,
                _current_period(),
            )
