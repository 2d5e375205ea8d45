"""OpenTelemetry metrics instruments for the availability engine.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once during startup (alongside
``init_telemetry``).  When OTEL_EXPORTER_OTLP_ENDPOINT is not set, the SDK
falls back to a no-op MeterProvider and all recordings are silent no-ops.

Instruments
-----------
Provider (emitted from client.py):

  slotkeeper.provider.requests_total      Counter  (labels: operation, outcome)
      Provider calls, one per attempt.

  slotkeeper.provider.retries_total       Counter  (label: operation)
      Attempts that were followed by a backoff.

Credentials (emitted from token_refresh.py):

  slotkeeper.token.refresh_total          Counter  (label: outcome=refreshed|waited|failed)
      Token refresh outcomes.

Cache (emitted from cache.py):

  slotkeeper.cache.lookups_total          Counter  (label: result=hit|miss)
      Busy-period cache lookups.

Booking (emitted from booking.py):

  slotkeeper.booking.total                Counter  (label: outcome=confirmed|conflict)
      Booking attempts.

  slotkeeper.booking.calendar_sync_total  Counter  (label: outcome=created|failed|skipped)
      External event creation after a confirmed booking.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "slotkeeper"

# ---------------------------------------------------------------------------
# MeterProvider initialization
# ---------------------------------------------------------------------------


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.  Otherwise, the global no-op
    MeterProvider is used and all recordings are silent.

    Args:
        service_name: The service name (e.g. "slotkeeper-api").

    Returns:
        A Meter instance bound to the global MeterProvider.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    # Import SDK/exporter only when needed to avoid hard dependency at import time
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    exporter = OTLPMetricExporter(endpoint=endpoint)
    reader = PeriodicExportingMetricReader(exporter, export_interval_millis=15_000)
    provider = MeterProvider(resource=resource, metric_readers=[reader])

    metrics.set_meter_provider(provider)
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider."""
    return metrics.get_meter(_METER_NAME)


# ---------------------------------------------------------------------------
# Instruments
# ---------------------------------------------------------------------------


def _provider_requests_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="slotkeeper.provider.requests_total",
        description="Calendar provider calls, one per attempt",
        unit="requests",
    )


def _provider_retries_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="slotkeeper.provider.retries_total",
        description="Calendar provider attempts followed by a backoff",
        unit="retries",
    )


def _token_refresh_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="slotkeeper.token.refresh_total",
        description="OAuth token refresh outcomes",
        unit="refreshes",
    )


def _cache_lookups_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="slotkeeper.cache.lookups_total",
        description="Busy-period cache lookups by result",
        unit="lookups",
    )


def _booking_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="slotkeeper.booking.total",
        description="Booking attempts by outcome",
        unit="bookings",
    )


def _booking_calendar_sync_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="slotkeeper.booking.calendar_sync_total",
        description="External calendar event creation after a confirmed booking",
        unit="events",
    )


# ---------------------------------------------------------------------------
# EngineMetrics: convenience wrapper that caches instruments
# ---------------------------------------------------------------------------


class EngineMetrics:
    """Convenience wrapper around all engine metrics.

    Instruments are lazily created from the global MeterProvider on first use,
    so it is safe to construct this object before ``init_metrics`` is called.
    """

    def __init__(self) -> None:
        self.__provider_requests: metrics.Counter | None = None
        self.__provider_retries: metrics.Counter | None = None
        self.__token_refresh: metrics.Counter | None = None
        self.__cache_lookups: metrics.Counter | None = None
        self.__booking: metrics.Counter | None = None
        self.__booking_calendar_sync: metrics.Counter | None = None

    # -- instrument accessors (lazy init) ------------------------------------

    @property
    def _provider_requests(self) -> metrics.Counter:
        if self.__provider_requests is None:
            self.__provider_requests = _provider_requests_total()
        return self.__provider_requests

    @property
    def _provider_retries(self) -> metrics.Counter:
        if self.__provider_retries is None:
            self.__provider_retries = _provider_retries_total()
        return self.__provider_retries

    @property
    def _token_refresh(self) -> metrics.Counter:
        if self.__token_refresh is None:
            self.__token_refresh = _token_refresh_total()
        return self.__token_refresh

    @property
    def _cache_lookups(self) -> metrics.Counter:
        if self.__cache_lookups is None:
            self.__cache_lookups = _cache_lookups_total()
        return self.__cache_lookups

    @property
    def _booking(self) -> metrics.Counter:
        if self.__booking is None:
            self.__booking = _booking_total()
        return self.__booking

    @property
    def _booking_calendar_sync(self) -> metrics.Counter:
        if self.__booking_calendar_sync is None:
            self.__booking_calendar_sync = _booking_calendar_sync_total()
        return self.__booking_calendar_sync

    # -- recording helpers ---------------------------------------------------

    def record_provider_request(self, operation: str, outcome: str) -> None:
        self._provider_requests.add(1, {"operation": operation, "outcome": outcome})

    def record_provider_retry(self, operation: str) -> None:
        self._provider_retries.add(1, {"operation": operation})

    def record_token_refresh(self, outcome: str) -> None:
        self._token_refresh.add(1, {"outcome": outcome})

    def record_cache_lookup(self, hit: bool) -> None:
        self._cache_lookups.add(1, {"result": "hit" if hit else "miss"})

    def record_booking(self, outcome: str) -> None:
        self._booking.add(1, {"outcome": outcome})

    def record_calendar_sync(self, outcome: str) -> None:
        self._booking_calendar_sync.add(1, {"outcome": outcome})


_engine_metrics: EngineMetrics | None = None


def get_engine_metrics() -> EngineMetrics:
    """Return the process-wide :class:`EngineMetrics` instance."""
    global _engine_metrics
    if _engine_metrics is None:
        _engine_metrics = EngineMetrics()
    return _engine_metrics
