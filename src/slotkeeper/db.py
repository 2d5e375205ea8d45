"""Connection pool management for the PostgreSQL backends."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlparse

import asyncpg

logger = logging.getLogger(__name__)

_SSL_UPGRADE_CONNECTION_LOST = "unexpected connection_lost() call"


def should_retry_with_ssl_disable(exc: Exception, dsn: str) -> bool:
    """Return True when asyncpg's SSL upgrade failed and no sslmode was requested."""
    return (
        "sslmode=" not in dsn
        and isinstance(exc, ConnectionError)
        and _SSL_UPGRADE_CONNECTION_LOST in str(exc)
    )


def describe_dsn(dsn: str) -> str:
    """``host:port/database`` for log lines; credentials are never included."""
    parsed = urlparse(dsn)
    database = parsed.path.lstrip("/") or "postgres"
    return f"{parsed.hostname or 'localhost'}:{parsed.port or 5432}/{database}"


class Database:
    """Owns one asyncpg pool for the lifetime of the engine."""

    def __init__(self, dsn: str, *, min_pool_size: int = 2, max_pool_size: int = 10) -> None:
        self.dsn = dsn
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    async def connect(self) -> asyncpg.Pool:
        """Create and return the connection pool."""
        pool_kwargs: dict[str, Any] = {
            "dsn": self.dsn,
            "min_size": self.min_pool_size,
            "max_size": self.max_pool_size,
        }
        try:
            self.pool = await asyncpg.create_pool(**pool_kwargs)
        except ConnectionError as exc:
            if not should_retry_with_ssl_disable(exc, self.dsn):
                raise
            logger.info("Retrying PostgreSQL pool creation with ssl=disable after SSL upgrade loss")
            self.pool = await asyncpg.create_pool(**pool_kwargs, ssl="disable")
        logger.info("Connection pool created for: %s", describe_dsn(self.dsn))
        return self.pool

    async def close(self) -> None:
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Connection pool closed for: %s", describe_dsn(self.dsn))
