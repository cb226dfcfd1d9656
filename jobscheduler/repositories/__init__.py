"""Job store implementations."""

from jobscheduler.repositories.base import JobStore
from jobscheduler.repositories.memory import InMemoryJobStore
from jobscheduler.repositories.scheduled_jobs import PostgresJobStore

__all__ = ["JobStore", "InMemoryJobStore", "PostgresJobStore"]
