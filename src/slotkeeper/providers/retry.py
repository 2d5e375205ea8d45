"""Bounded retry with exponential backoff and jitter for calendar provider calls.

- Only ``ProviderTransientError`` (429, 500, 503, transport failures) is retried
- Every other failure is raised after the first attempt
- ``delay = min(base * 2**retry + uniform(0, jitter), max_delay)``
- Once retries are exhausted the last error is re-raised, annotated with the
  operation name and the number of attempts made
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from slotkeeper.errors import ProviderError, ProviderTransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry policy configuration."""

    max_retries: int = 3
    """Retries after the initial attempt."""

    base_delay_ms: int = 1000
    """Base delay for exponential backoff."""

    max_delay_ms: int = 10_000
    """Upper bound on any single delay, jitter included."""

    max_jitter_ms: int = 1000
    """Upper bound of the uniform random jitter added to each delay."""

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def calculate_backoff(self, retry_number: int) -> float:
        """Return the delay in seconds before retry *retry_number* (0-indexed)."""
        jitter = random.uniform(0, self.max_jitter_ms)
        delay_ms = min(self.base_delay_ms * (2**retry_number) + jitter, self.max_delay_ms)
        return delay_ms / 1000.0

    def should_retry(self, error: BaseException, attempt_number: int) -> bool:
        """Return True if *error* from attempt *attempt_number* (1-indexed) may be retried."""
        if attempt_number >= self.max_attempts:
            return False
        return isinstance(error, ProviderTransientError)


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    operation_name: str,
    deadline: float | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    on_retry: Callable[[ProviderError, int], None] | None = None,
) -> T:
    """Run *operation* under *policy*.

    Parameters
    ----------
    operation:
        Zero-argument coroutine factory; called once per attempt.
    policy:
        Retry policy to apply.
    operation_name:
        Label attached to the raised error and to log records.
    deadline:
        Optional ``time.monotonic()`` value.  No retry is scheduled whose
        backoff would end past it.
    sleep:
        Injectable sleep, for tests.
    on_retry:
        Called with the error and the attempt number before each backoff.

    Raises
    ------
    ProviderError
        The last error, with ``operation`` and ``attempts`` set.
    """
    attempt_number = 0
    while True:
        attempt_number += 1
        try:
            return await operation()
        except ProviderError as exc:
            exc.operation = operation_name
            exc.attempts = attempt_number

            if not policy.should_retry(exc, attempt_number):
                if isinstance(exc, ProviderTransientError):
                    exc.add_note(f"{operation_name} gave up after {attempt_number} attempt(s)")
                    logger.warning(
                        "Calendar %s failed after %d attempt(s): %s",
                        operation_name,
                        attempt_number,
                        exc.message,
                    )
                raise

            backoff = policy.calculate_backoff(attempt_number - 1)
            if deadline is not None and time.monotonic() + backoff > deadline:
                exc.add_note(f"{operation_name} deadline reached after {attempt_number} attempt(s)")
                logger.warning(
                    "Calendar %s deadline reached after %d attempt(s)",
                    operation_name,
                    attempt_number,
                )
                raise

            logger.info(
                "Calendar %s failed (status=%s), retrying in %.2fs (attempt %d/%d)",
                operation_name,
                exc.status_code,
                backoff,
                attempt_number,
                policy.max_attempts,
            )
            if on_retry is not None:
                on_retry(exc, attempt_number)
            await sleep(backoff)
