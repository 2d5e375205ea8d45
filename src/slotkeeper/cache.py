"""In-process cache of external-calendar busy periods.

Entries are keyed by ``(account_id, date)`` and expire after a TTL.  The
cache is advisory: a stale hit can at worst show a slot that the booking
writer's authoritative re-check will reject.

Each account carries a generation counter that :meth:`invalidate_account`
bumps.  A fetch that started before an invalidation passes the generation it
observed to :meth:`set`, which drops the write when the generation moved, so
a slow fetch cannot repopulate the cache with pre-booking data.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

from slotkeeper.core.metrics import EngineMetrics, get_engine_metrics
from slotkeeper.scheduling.intervals import Interval

logger = logging.getLogger(__name__)

DEFAULT_BUSY_TTL_SECONDS = 15 * 60


@dataclass(frozen=True)
class _Entry:
    intervals: tuple[Interval, ...]
    expires_at: float


@dataclass(frozen=True)
class CacheStats:
    entries: int
    accounts: int
    hits: int
    misses: int


class AvailabilityCache:
    """TTL cache of busy intervals per account and date."""

    def __init__(
        self,
        *,
        ttl_seconds: float = DEFAULT_BUSY_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        metrics: EngineMetrics | None = None,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._metrics = metrics or get_engine_metrics()
        self._entries: dict[tuple[str, dt.date], _Entry] = {}
        self._generations: dict[str, int] = {}
        self._tasks: set[asyncio.Task] = set()
        self._hits = 0
        self._misses = 0

    def generation(self, account_id: str) -> int:
        return self._generations.get(account_id, 0)

    def get(self, account_id: str, day: dt.date) -> list[Interval] | None:
        key = (account_id, day)
        entry = self._entries.get(key)
        if entry is not None and entry.expires_at <= self._clock():
            del self._entries[key]
            entry = None
        if entry is None:
            self._misses += 1
            self._metrics.record_cache_lookup(hit=False)
            return None
        self._hits += 1
        self._metrics.record_cache_lookup(hit=True)
        return list(entry.intervals)

    def contains(self, account_id: str, day: dt.date) -> bool:
        entry = self._entries.get((account_id, day))
        return entry is not None and entry.expires_at > self._clock()

    def set(
        self,
        account_id: str,
        day: dt.date,
        intervals: Iterable[Interval],
        *,
        generation: int | None = None,
    ) -> bool:
        """Store *intervals*; returns False when an invalidation made them stale."""
        if generation is not None and generation != self.generation(account_id):
            logger.debug(
                "Dropping stale busy periods for account %s on %s (generation %d != %d)",
                account_id,
                day.isoformat(),
                generation,
                self.generation(account_id),
            )
            return False
        self._entries[(account_id, day)] = _Entry(
            intervals=tuple(intervals),
            expires_at=self._clock() + self._ttl_seconds,
        )
        return True

    def invalidate_account(self, account_id: str) -> int:
        """Drop every cached date for *account_id*; returns the number removed."""
        self._generations[account_id] = self.generation(account_id) + 1
        keys = [key for key in self._entries if key[0] == account_id]
        for key in keys:
            del self._entries[key]
        if keys:
            logger.debug("Invalidated %d cached date(s) for account %s", len(keys), account_id)
        return len(keys)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
        self._hits = 0
        self._misses = 0

    def stats(self) -> CacheStats:
        self.purge_expired()
        return CacheStats(
            entries=len(self._entries),
            accounts=len({account_id for account_id, _ in self._entries}),
            hits=self._hits,
            misses=self._misses,
        )

    # ------------------------------------------------------------------
    # Prewarm
    # ------------------------------------------------------------------

    def prewarm(
        self,
        account_id: str,
        days: Iterable[dt.date],
        loader: Callable[[str, dt.date], Awaitable[object]],
    ) -> asyncio.Task:
        """Schedule background loads for *days* and return immediately.

        *loader* is expected to populate the cache itself (typically via
        :meth:`set`).  Dates already cached are skipped.  Failures are logged
        and swallowed; the returned task never raises.
        """
        pending = [day for day in days if not self.contains(account_id, day)]
        task = asyncio.create_task(
            self._run_prewarm(account_id, pending, loader),
            name=f"prewarm:{account_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_prewarm(
        self,
        account_id: str,
        days: list[dt.date],
        loader: Callable[[str, dt.date], Awaitable[object]],
    ) -> int:
        if not days:
            return 0
        results = await asyncio.gather(
            *(loader(account_id, day) for day in days),
            return_exceptions=True,
        )
        warmed = 0
        for day, result in zip(days, results, strict=True):
            if isinstance(result, Exception):
                logger.warning(
                    "Prewarm failed for account %s on %s: %s",
                    account_id,
                    day.isoformat(),
                    type(result).__name__,
                )
            elif isinstance(result, BaseException):
                raise result
            else:
                warmed += 1
        logger.info("Prewarmed %d/%d date(s) for account %s", warmed, len(days), account_id)
        return warmed

    async def drain(self) -> None:
        """Wait for in-flight prewarm tasks (used on shutdown and in tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
