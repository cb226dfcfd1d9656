"""Built-in maintenance jobs: execution history retention and lock sweeping."""

from datetime import datetime, timedelta
from typing import Any, Callable

import structlog

from jobscheduler.jobs.models import ExecutionContext
from jobscheduler.jobs.registry import HandlerRegistry
from jobscheduler.jobs.types import JobType
from jobscheduler.repositories.base import JobStore
from jobscheduler.services.jobs.locks import LockCoordinator
from jobscheduler.utils.time import utcnow

logger = structlog.get_logger(__name__)

SCHEDULER_SERVICE = "scheduler"

# Registered by JobSchedulerService.register_system_jobs
SYSTEM_JOBS: list[dict[str, Any]] = [
    {
        "job_name": "system-cleanup-executions",
        "cron_expression": "0 2 * * *",
        "handler_method": "cleanupExecutions",
        "description": "Delete finished job executions past the retention window",
        "job_type": JobType.DAILY,
        "config": {"retentionDays": 30},
        "priority": 8,
    },
    {
        "job_name": "system-cleanup-locks",
        "cron_expression": "*/15 * * * *",
        "handler_method": "cleanupExpiredLocks",
        "description": "Clear expired job lock leases",
        "job_type": JobType.CUSTOM,
        "config": {},
        "priority": 9,
    },
]


class SchedulerMaintenance:
    """Handlers for the scheduler's own housekeeping jobs."""

    def __init__(
        self,
        store: JobStore,
        locks: LockCoordinator,
        retention_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._locks = locks
        self._retention_days = retention_days
        self._clock = clock

    def register(self, registry: HandlerRegistry) -> None:
        registry.register(SCHEDULER_SERVICE, "cleanupExecutions", self.cleanup_executions)
        registry.register(SCHEDULER_SERVICE, "cleanupExpiredLocks", self.cleanup_expired_locks)

    async def cleanup_executions(
        self, config: dict[str, Any], ctx: ExecutionContext
    ) -> dict[str, int]:
        """
        Delete finished executions older than the retention window.

        Running executions are never deleted regardless of age.

        Args:
            config: Job config; ``retentionDays`` overrides the default window
            ctx: Execution context (unused)

        Returns:
            Dict with the number of deleted executions and the window used
        """
        retention_days = int(config.get("retentionDays") or self._retention_days)
        cutoff = self._clock() - timedelta(days=retention_days)
        deleted = await self._store.delete_executions_before(cutoff)
        logger.info(
            "job_executions_cleaned_up",
            deleted=deleted,
            retention_days=retention_days,
            cutoff=cutoff.isoformat(),
        )
        return {"deleted": deleted, "retention_days": retention_days}

    async def cleanup_expired_locks(
        self, config: dict[str, Any], ctx: ExecutionContext
    ) -> dict[str, int]:
        cleared = await self._locks.cleanup_expired()
        return {"cleared": cleared}
