"""Distributed lock backends used to single-flight OAuth token refreshes.

A backend only needs three primitives: an atomic set-if-absent with a TTL, a
read, and a delete.  Ownership checks are done by the caller (compare the
stored value with its own random owner token before deleting).

Backends
--------
``InMemoryLockBackend``
    Single-process lock table.  Suitable for tests and one-worker deployments.

``PostgresLockBackend``
    Shared ``refresh_locks`` table.  An expired row can be taken over in the
    same statement that would otherwise insert it, so a crashed holder never
    blocks refreshes for longer than the TTL.

``NoopLockBackend``
    Degraded-consistency mode.  Every acquisition succeeds and nothing is
    held, so concurrent refreshes for the same account are possible.  Use it
    only when no shared lock store exists; the provider tolerates duplicate
    refreshes at the cost of extra token-endpoint calls.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

import asyncpg

from slotkeeper.errors import SlotkeeperError


class LockBackendUnavailableError(SlotkeeperError):
    """Raised when the lock store cannot be reached."""


@runtime_checkable
class LockBackend(Protocol):
    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool: ...

    async def get(self, key: str) -> str | None: ...

    async def delete(self, key: str) -> None: ...


class InMemoryLockBackend:
    """Process-local lock table with TTL expiry."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}

    def _live(self, key: str) -> tuple[str, float] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            del self._entries[key]
            return None
        return entry

    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        if self._live(key) is not None:
            return False
        self._entries[key] = (value, self._clock() + ttl_seconds)
        return True

    async def get(self, key: str) -> str | None:
        entry = self._live(key)
        return entry[0] if entry is not None else None

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)


class NoopLockBackend:
    """Lock backend that always grants and never holds anything."""

    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return None

    async def delete(self, key: str) -> None:
        return None


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------

CREATE_REFRESH_LOCKS_TABLE = """
CREATE TABLE IF NOT EXISTS refresh_locks (
    lock_key TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL
)
"""

_ACQUIRE_SQL = """
INSERT INTO refresh_locks (lock_key, owner, expires_at)
VALUES ($1, $2, now() + make_interval(secs => $3))
ON CONFLICT (lock_key) DO UPDATE
    SET owner = EXCLUDED.owner, expires_at = EXCLUDED.expires_at
    WHERE refresh_locks.expires_at <= now()
RETURNING lock_key
"""


class PostgresLockBackend:
    """Lock table shared by every process connected to the same database."""

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        try:
            async with self._pool.acquire() as conn:
                row = await conn.fetchval(_ACQUIRE_SQL, key, value, float(ttl_seconds))
        except (asyncpg.PostgresError, OSError) as exc:
            raise LockBackendUnavailableError(f"Lock store unavailable: {exc}") from exc
        return row is not None

    async def get(self, key: str) -> str | None:
        try:
            async with self._pool.acquire() as conn:
                return await conn.fetchval(
                    "SELECT owner FROM refresh_locks WHERE lock_key = $1 AND expires_at > now()",
                    key,
                )
        except (asyncpg.PostgresError, OSError) as exc:
            raise LockBackendUnavailableError(f"Lock store unavailable: {exc}") from exc

    async def delete(self, key: str) -> None:
        try:
            async with self._pool.acquire() as conn:
                await conn.execute("DELETE FROM refresh_locks WHERE lock_key = $1", key)
        except (asyncpg.PostgresError, OSError) as exc:
            raise LockBackendUnavailableError(f"Lock store unavailable: {exc}") from exc
