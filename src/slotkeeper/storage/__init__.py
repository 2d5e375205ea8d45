"""Storage backends for schedules, appointments, connections, and usage."""

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

__all__ = [
    "InMemoryAppointmentStore",
    "InMemoryConnectionStore",
    "InMemoryScheduleStore",
    "InMemoryUsageMeter",
    "PostgresAppointmentStore",
    "PostgresConnectionStore",
    "PostgresScheduleStore",
    "PostgresUsageMeter",
    "ensure_schema",
]
