"""Public facade for the job scheduler."""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import structlog

from jobscheduler.config import Settings, get_settings
from jobscheduler.jobs.cron import CronEvaluator
from jobscheduler.jobs.errors import (
    InvalidJobDefinitionError,
    JobNotFoundError,
    SystemJobProtectedError,
)
from jobscheduler.jobs.models import (
    JobDefinition,
    JobExecution,
    JobStatistics,
    ScheduledJob,
    SchedulerDashboard,
)
from jobscheduler.jobs.registry import HandlerRegistry, JobHandler
from jobscheduler.jobs.types import ExecutionStatus, JobType, TriggerSource
from jobscheduler.jobs.worker import SchedulerLoop
from jobscheduler.repositories.base import JobStore
from jobscheduler.services.jobs.locks import LockCoordinator
from jobscheduler.services.jobs.maintenance import (
    SCHEDULER_SERVICE,
    SYSTEM_JOBS,
    SchedulerMaintenance,
)
from jobscheduler.services.jobs.runner import ExecutionEngine, generate_instance_id
from jobscheduler.utils.time import ensure_utc, resolve_timezone, utcnow

logger = structlog.get_logger(__name__)


class JobSchedulerService:
    """
    Registers jobs and handlers, drives the polling loop and exposes
    the control-plane and observability operations.

    One instance per process. Instances sharing a store cooperate through
    the store's lock fields; nothing else is shared between them.
    """

    def __init__(
        self,
        store: JobStore,
        registry: Optional[HandlerRegistry] = None,
        *,
        settings: Optional[Settings] = None,
        instance_id: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._settings = settings or get_settings()
        self._store = store
        self._registry = registry if registry is not None else HandlerRegistry()
        self._clock = clock
        self._instance_id = (
            instance_id or self._settings.scheduler_instance_id or generate_instance_id()
        )

        self._locks = LockCoordinator(store, self._settings.scheduler_lock_lease_ms)
        self._engine = ExecutionEngine(
            store,
            self._registry,
            self._locks,
            self._instance_id,
            lock_lease_ms=self._settings.scheduler_lock_lease_ms,
            default_timeout_ms=self._settings.scheduler_default_timeout_ms,
            clock=clock,
        )
        self._loop = SchedulerLoop(
            store,
            self._engine,
            poll_interval_s=self._settings.scheduler_poll_interval_s,
            batch_size=self._settings.scheduler_batch_size,
            clock=clock,
        )
        self._maintenance = SchedulerMaintenance(
            store,
            self._locks,
            retention_days=self._settings.scheduler_execution_retention_days,
            clock=clock,
        )

        logger.info("job_scheduler_initialized", instance_id=self._instance_id)

    @property
    def instance_id(self) -> str:
        return self._instance_id

    @property
    def registry(self) -> HandlerRegistry:
        return self._registry

    @property
    def locks(self) -> LockCoordinator:
        return self._locks

    @property
    def engine(self) -> ExecutionEngine:
        return self._engine

    @property
    def loop(self) -> SchedulerLoop:
        return self._loop

    @property
    def is_running(self) -> bool:
        return self._loop.is_running

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_handler(
        self, service_name: str, method_name: str, handler: JobHandler
    ) -> None:
        self._registry.register(service_name, method_name, handler)
        logger.debug(
            "job_handler_registered", handler=f"{service_name}.{method_name}"
        )

    async def register_job(
        self,
        job_name: str,
        cron_expression: str,
        handler_service: str,
        handler_method: str,
        *,
        description: Optional[str] = None,
        job_type: JobType = JobType.CUSTOM,
        config: Optional[dict[str, Any]] = None,
        max_retries: Optional[int] = None,
        retry_delay_ms: Optional[int] = None,
        priority: int = 5,
        tags: Optional[list[str]] = None,
        timezone: Optional[str] = None,
        is_system_job: bool = False,
    ) -> ScheduledJob:
        """
        Create or update a job definition.

        Re-registering an existing name overwrites its definition and
        next_run_at but keeps counters, runtime state and any held lock.

        Raises:
            InvalidCronExpressionError: If the cron expression does not parse
            InvalidJobDefinitionError: On an unknown timezone or negative
                retry settings
        """
        if not job_name:
            raise InvalidJobDefinitionError("job_name is required")

        CronEvaluator.parse(cron_expression)

        tz_name = timezone or self._settings.scheduler_default_timezone
        try:
            tz = resolve_timezone(tz_name)
        except ValueError as e:
            raise InvalidJobDefinitionError(str(e)) from e

        if max_retries is None:
            max_retries = self._settings.scheduler_default_max_retries
        if retry_delay_ms is None:
            retry_delay_ms = self._settings.scheduler_default_retry_delay_ms
        if max_retries < 0 or retry_delay_ms < 0:
            raise InvalidJobDefinitionError(
                f"max_retries and retry_delay_ms must be >= 0 for {job_name}"
            )

        next_run_at = ensure_utc(
            CronEvaluator.get_next_run_time(cron_expression, self._clock(), tz)
        )

        job = await self._store.upsert_job(
            JobDefinition(
                job_name=job_name,
                cron_expression=cron_expression,
                handler_service=handler_service,
                handler_method=handler_method,
                next_run_at=next_run_at,
                config=dict(config or {}),
                timezone=tz_name,
                job_type=job_type,
                description=description,
                max_retries=max_retries,
                retry_delay_ms=retry_delay_ms,
                priority=priority,
                tags=list(tags or []),
                is_system_job=is_system_job,
            )
        )

        if (handler_service, handler_method) not in self._registry:
            logger.warning(
                "job_registered_without_handler",
                job_name=job_name,
                handler=f"{handler_service}.{handler_method}",
            )

        logger.info(
            "job_registered",
            job_name=job_name,
            cron_expression=cron_expression,
            schedule=CronEvaluator.describe(cron_expression),
            timezone=tz_name,
            next_run_at=next_run_at.isoformat(),
        )
        return job

    async def register_system_jobs(self) -> list[ScheduledJob]:
        """Bind the maintenance handlers and upsert the built-in maintenance jobs."""
        self._maintenance.register(self._registry)

        jobs = []
        for spec in SYSTEM_JOBS:
            config = dict(spec["config"])
            if "retentionDays" in config:
                config["retentionDays"] = self._settings.scheduler_execution_retention_days
            job = await self.register_job(
                spec["job_name"],
                spec["cron_expression"],
                SCHEDULER_SERVICE,
                spec["handler_method"],
                description=spec["description"],
                job_type=spec["job_type"],
                config=config,
                priority=spec["priority"],
                tags=["system"],
                is_system_job=True,
            )
            jobs.append(job)
        return jobs

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    async def run_job(
        self, job_name: str, triggered_by_user: Optional[str] = None
    ) -> JobExecution:
        """Run a job now, outside its schedule, and wait for the attempt to finish."""
        job = await self._store.get_job(job_name)
        if job is None:
            raise JobNotFoundError(job_name)
        logger.info("job_manual_run", job_name=job_name, triggered_by_user=triggered_by_user)
        return await self._engine.run(job, TriggerSource.MANUAL, triggered_by_user)

    async def pause_job(self, job_name: str) -> None:
        """Stop future scheduled runs. An in-flight run is left to finish."""
        if not await self._store.set_active(job_name, False):
            raise JobNotFoundError(job_name)
        logger.info("job_paused", job_name=job_name)

    async def resume_job(self, job_name: str) -> None:
        """Reactivate a job with next_run_at recomputed from now."""
        job = await self._store.get_job(job_name)
        if job is None:
            raise JobNotFoundError(job_name)
        next_run_at = self._engine.next_run_at(job)
        if not await self._store.set_active(job_name, True, next_run_at):
            raise JobNotFoundError(job_name)
        logger.info("job_resumed", job_name=job_name, next_run_at=next_run_at.isoformat())

    async def delete_job(self, job_name: str, force: bool = False) -> None:
        """Delete a job and its history. System jobs require force=True."""
        job = await self._store.get_job(job_name)
        if job is None:
            raise JobNotFoundError(job_name)
        if job.is_system_job and not force:
            raise SystemJobProtectedError(job_name)
        await self._store.delete_job(job_name)
        logger.info("job_deleted", job_name=job_name, forced=force)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_job_status(self, job_name: str) -> Optional[ScheduledJob]:
        return await self._store.get_job(job_name)

    async def get_job_history(self, job_name: str, limit: int = 20) -> list[JobExecution]:
        return await self._store.list_executions(job_name=job_name, limit=limit)

    async def list_jobs(
        self, active_only: bool = False, tag: Optional[str] = None
    ) -> list[ScheduledJob]:
        return await self._store.list_jobs(active_only=active_only, tag=tag)

    async def get_recent_executions(self, limit: int = 50) -> list[JobExecution]:
        return await self._store.list_executions(limit=limit)

    async def get_job_statistics(
        self, job_id: Optional[str] = None, window_hours: int = 24
    ) -> list[JobStatistics]:
        return await self._store.get_job_statistics(
            job_id=job_id, window_hours=window_hours, now=self._clock()
        )

    async def get_dashboard(self) -> SchedulerDashboard:
        now = self._clock()
        jobs, recent, statistics, running, failed = await asyncio.gather(
            self._store.list_jobs(),
            self._store.list_executions(limit=20),
            self._store.get_job_statistics(window_hours=24, now=now),
            self._store.count_executions(ExecutionStatus.RUNNING),
            self._store.count_executions(
                ExecutionStatus.FAILED, since=now - timedelta(hours=24)
            ),
        )
        return SchedulerDashboard(
            jobs=jobs,
            recent_executions=recent,
            statistics=statistics,
            running_count=running,
            failed_last_24h=failed,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize_next_run_times(self) -> int:
        """Move overdue next_run_at values forward to the next occurrence from now.

        Called once at startup so occurrences missed while no instance was
        running are skipped rather than fired in a burst. Jobs with a pending
        retry keep it. Errors are logged and reported as 0.
        """
        try:
            overdue = await self._store.list_overdue_jobs(now=self._clock())
            next_run_times = {job.id: self._engine.next_run_at(job) for job in overdue}
            updated = await self._store.reschedule_jobs(next_run_times, now=self._clock())
        except Exception as e:
            logger.error("job_next_run_init_failed", error=str(e), exc_info=True)
            return 0

        for job in overdue:
            logger.debug(
                "job_next_run_initialized",
                job_name=job.job_name,
                next_run_at=next_run_times[job.id].isoformat(),
            )
        logger.info("job_next_runs_initialized", count=updated)
        return updated

    async def start(self) -> None:
        await self._loop.start()

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop polling, then wait for in-flight runs to finish.

        In-process retries still waiting out their delay are dropped here;
        their retry_at stays on the job row for the next loop to pick up.
        """
        await self._loop.stop(timeout=timeout)
        cancelled = self._engine.cancel_pending_retries()
        try:
            await asyncio.wait_for(self._engine.wait_idle(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "job_scheduler_stop_timeout",
                pending=self._engine.pending_tasks,
                timeout=timeout,
            )
        logger.info(
            "job_scheduler_stopped",
            instance_id=self._instance_id,
            retries_deferred=cancelled,
        )
