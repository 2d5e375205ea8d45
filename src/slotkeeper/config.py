"""Engine configuration loading and validation.

Reads a ``slotkeeper.toml`` file, resolves ``${VAR}`` references from the
environment, parses every section, and returns a validated
:class:`SlotkeeperConfig` dataclass.  All sections are optional; calling
:func:`load_config` with no path returns the defaults.
"""

from __future__ import annotations

import enum
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from slotkeeper.crypto import ENCRYPTION_KEY_ENV
from slotkeeper.providers.retry import RetryPolicy

# Pattern matching ${VAR_NAME}; alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

CONFIG_PATH_ENV = "SLOTKEEPER_CONFIG"


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


class LockBackendKind(enum.StrEnum):
    """Where token-refresh locks live."""

    POSTGRES = "postgres"
    MEMORY = "memory"
    NONE = "none"


@dataclass
class DatabaseConfig:
    """``[slotkeeper.database]``; an unset url selects in-memory storage."""

    url: str | None = None
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class EncryptionConfig:
    key_env: str = ENCRYPTION_KEY_ENV


@dataclass
class GoogleConfig:
    client_id: str = ""
    client_secret: str = ""
    timeout_seconds: float = 30.0


@dataclass
class RetryConfig:
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 10_000
    max_jitter_ms: int = 1000
    deadline_seconds: float | None = None

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay_ms=self.base_delay_ms,
            max_delay_ms=self.max_delay_ms,
            max_jitter_ms=self.max_jitter_ms,
        )


@dataclass
class RefreshConfig:
    lock_backend: LockBackendKind = LockBackendKind.POSTGRES
    lock_ttl_seconds: float = 10.0
    wait_delay_seconds: float = 0.5
    max_wait_attempts: int = 6


@dataclass
class CacheConfig:
    busy_ttl_seconds: float = 900.0
    prewarm_days: int = 5


@dataclass
class BookingConfig:
    check_external_calendar: bool = True
    fail_open_on_calendar_error: bool = True
    event_timeout_seconds: float = 15.0
    wants_conferencing: bool = False
    monthly_limit: int | None = None


@dataclass
class LoggingConfig:
    """Logging configuration from ``[slotkeeper.logging]``."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class SlotkeeperConfig:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    encryption: EncryptionConfig = field(default_factory=EncryptionConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    refresh: RefreshConfig = field(default_factory=RefreshConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    booking: BookingConfig = field(default_factory=BookingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace every ``${VAR_NAME}`` in *s*; report all missing names at once."""
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        # The original value may embed a secret-bearing template; names only.
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {', '.join(missing)}"
        )

    return result


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[slotkeeper.{name}] must be a table")
    return value


def _positive_number(section: dict[str, Any], key: str, default: float, *, where: str) -> float:
    raw = section.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{where}.{key} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{where}.{key} must be positive, got {raw!r}")
    return value


def _non_negative_int(section: dict[str, Any], key: str, default: int, *, where: str) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ConfigError(f"{where}.{key} must be an integer, got {raw!r}")
    if raw < 0:
        raise ConfigError(f"{where}.{key} must be >= 0, got {raw!r}")
    return raw


def _bool(section: dict[str, Any], key: str, default: bool, *, where: str) -> bool:
    raw = section.get(key, default)
    if not isinstance(raw, bool):
        raise ConfigError(f"{where}.{key} must be true or false, got {raw!r}")
    return raw


def parse_config(data: dict[str, Any]) -> SlotkeeperConfig:
    """Build a :class:`SlotkeeperConfig` from an already-parsed TOML mapping."""
    data = resolve_env_vars(data)
    root = data.get("slotkeeper", {})
    if not isinstance(root, dict):
        raise ConfigError("[slotkeeper] must be a table")

    # --- [slotkeeper.database] ---
    db = _section(root, "database")
    url = db.get("url") or None
    database = DatabaseConfig(
        url=url,
        min_pool_size=_non_negative_int(db, "min_pool_size", 2, where="database"),
        max_pool_size=_non_negative_int(db, "max_pool_size", 10, where="database"),
    )
    if database.max_pool_size < max(database.min_pool_size, 1):
        raise ConfigError("database.max_pool_size must be >= min_pool_size and >= 1")

    # --- [slotkeeper.encryption] ---
    enc = _section(root, "encryption")
    encryption = EncryptionConfig(key_env=str(enc.get("key_env", ENCRYPTION_KEY_ENV)))

    # --- [slotkeeper.google] ---
    g = _section(root, "google")
    google = GoogleConfig(
        client_id=str(g.get("client_id", "")),
        client_secret=str(g.get("client_secret", "")),
        timeout_seconds=_positive_number(g, "timeout_seconds", 30.0, where="google"),
    )

    # --- [slotkeeper.retry] ---
    r = _section(root, "retry")
    deadline = r.get("deadline_seconds")
    retry = RetryConfig(
        max_retries=_non_negative_int(r, "max_retries", 3, where="retry"),
        base_delay_ms=_non_negative_int(r, "base_delay_ms", 1000, where="retry"),
        max_delay_ms=_non_negative_int(r, "max_delay_ms", 10_000, where="retry"),
        max_jitter_ms=_non_negative_int(r, "max_jitter_ms", 1000, where="retry"),
        deadline_seconds=(
            _positive_number(r, "deadline_seconds", 0, where="retry")
            if deadline is not None
            else None
        ),
    )

    # --- [slotkeeper.refresh] ---
    ref = _section(root, "refresh")
    backend_raw = str(ref.get("lock_backend", LockBackendKind.POSTGRES)).lower()
    try:
        lock_backend = LockBackendKind(backend_raw)
    except ValueError as exc:
        choices = ", ".join(kind.value for kind in LockBackendKind)
        raise ConfigError(
            f"refresh.lock_backend must be one of {choices}, got {backend_raw!r}"
        ) from exc
    max_wait_attempts = _non_negative_int(ref, "max_wait_attempts", 6, where="refresh")
    if max_wait_attempts < 1:
        raise ConfigError("refresh.max_wait_attempts must be at least 1")
    refresh = RefreshConfig(
        lock_backend=lock_backend,
        lock_ttl_seconds=_positive_number(ref, "lock_ttl_seconds", 10.0, where="refresh"),
        wait_delay_seconds=_positive_number(ref, "wait_delay_seconds", 0.5, where="refresh"),
        max_wait_attempts=max_wait_attempts,
    )

    # --- [slotkeeper.cache] ---
    c = _section(root, "cache")
    cache = CacheConfig(
        busy_ttl_seconds=_positive_number(c, "busy_ttl_seconds", 900.0, where="cache"),
        prewarm_days=_non_negative_int(c, "prewarm_days", 5, where="cache"),
    )

    # --- [slotkeeper.booking] ---
    b = _section(root, "booking")
    monthly_limit = b.get("monthly_limit")
    booking = BookingConfig(
        check_external_calendar=_bool(b, "check_external_calendar", True, where="booking"),
        fail_open_on_calendar_error=_bool(
            b, "fail_open_on_calendar_error", True, where="booking"
        ),
        event_timeout_seconds=_positive_number(
            b, "event_timeout_seconds", 15.0, where="booking"
        ),
        wants_conferencing=_bool(b, "wants_conferencing", False, where="booking"),
        monthly_limit=(
            _non_negative_int(b, "monthly_limit", 0, where="booking")
            if monthly_limit is not None
            else None
        ),
    )

    # --- [slotkeeper.logging] ---
    lg = _section(root, "logging")
    log_level = str(lg.get("level", "INFO")).upper()
    log_format = str(lg.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"logging.format must be 'text' or 'json', got {log_format!r}")
    log_root = lg.get("log_root")
    logging_config = LoggingConfig(
        level=log_level,
        format=log_format,
        log_root=str(log_root) if log_root else None,
    )

    return SlotkeeperConfig(
        database=database,
        encryption=encryption,
        google=google,
        retry=retry,
        refresh=refresh,
        cache=cache,
        booking=booking,
        logging=logging_config,
    )


def load_config(path: Path | str | None = None) -> SlotkeeperConfig:
    """Load and validate a config file.

    Parameters
    ----------
    path:
        Path to a TOML file.  When None, ``$SLOTKEEPER_CONFIG`` is consulted;
        if that is unset too, defaults are returned.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or holds invalid values.
    """
    if path is None:
        env_path = os.environ.get(CONFIG_PATH_ENV)
        if not env_path:
            return SlotkeeperConfig()
        path = env_path

    toml_path = Path(path)
    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
