"""Job execution engine with lease locking, timeout and retry tracking."""

import asyncio
import dataclasses
import os
import socket
import time
import traceback
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from uuid import uuid4

import structlog

from jobscheduler.jobs.cron import CronEvaluator
from jobscheduler.jobs.errors import HandlerNotFoundError, InvalidCronExpressionError
from jobscheduler.jobs.models import (
    ExecutionContext,
    ExecutionOutcome,
    HostIdentity,
    JobExecution,
    ScheduledJob,
)
from jobscheduler.jobs.registry import HandlerRegistry
from jobscheduler.jobs.types import (
    DEFAULT_LOCK_LEASE_MS,
    DEFAULT_TIMEOUT_MS,
    LOCK_NOT_ACQUIRED,
    TIMEOUT_MESSAGE,
    ExecutionStatus,
    TriggerSource,
)
from jobscheduler.repositories.base import JobStore
from jobscheduler.routers.metrics import (
    JOB_EXECUTIONS_INFLIGHT,
    record_execution,
    record_retry_scheduled,
)
from jobscheduler.services.jobs.locks import LockCoordinator
from jobscheduler.utils.time import ensure_utc, resolve_timezone, utcnow

logger = structlog.get_logger(__name__)


def generate_instance_id() -> str:
    """Generate a unique instance ID: hostname:pid:random."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


def _log_late_handler(job_name: str, execution_id: str) -> Callable[[asyncio.Task], None]:
    """Done-callback for a handler that outlived its timeout."""

    def _done(task: asyncio.Task) -> None:
        if task.cancelled():
            logger.info(
                "job_handler_cancelled_after_timeout",
                job_name=job_name,
                execution_id=execution_id,
            )
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "job_handler_failed_after_timeout",
                job_name=job_name,
                execution_id=execution_id,
                error=str(exc) or type(exc).__name__,
            )
        else:
            logger.info(
                "job_handler_finished_after_timeout",
                job_name=job_name,
                execution_id=execution_id,
            )

    return _done


@dataclasses.dataclass
class _Attempt:
    status: ExecutionStatus
    result: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    error_stack: Optional[str] = None


class ExecutionEngine:
    """
    Runs one job attempt end to end.

    Per attempt:
    - Records a ``running`` execution (failure here raises to the caller)
    - Acquires the job's lease; contention ends the attempt as ``cancelled``
    - Resolves and invokes the handler under ``config["timeoutMs"]``
    - Persists the terminal state and folds it into the job's counters
      while still holding the lease, then releases it in ``finally``
    - On ``failed`` with retries left, persists the pending retry on the job
      row and starts an in-process delayed retry. The delayed retry and the
      scheduler loop both go through ``claim_retry``, so a retry runs once
      and still happens if this process dies before the delay elapses.

    A timeout ends the attempt, not the handler: the handler task is left
    to finish in the background and is tracked until it does.

    Within one process a job never runs twice concurrently, even though the
    lease itself is re-entrant for the same instance id.
    """

    def __init__(
        self,
        store: JobStore,
        registry: HandlerRegistry,
        locks: LockCoordinator,
        instance_id: Optional[str] = None,
        *,
        lock_lease_ms: int = DEFAULT_LOCK_LEASE_MS,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        host: Optional[HostIdentity] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._registry = registry
        self._locks = locks
        self._instance_id = instance_id or generate_instance_id()
        self._lock_lease_ms = lock_lease_ms
        self._default_timeout_ms = default_timeout_ms
        self._host = host or HostIdentity.current()
        self._clock = clock
        self._running_jobs: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._sleeping_retries: set[asyncio.Task] = set()

    @property
    def instance_id(self) -> str:
        return self._instance_id

    @property
    def running_jobs(self) -> frozenset[str]:
        return frozenset(self._running_jobs)

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(
        self,
        job: ScheduledJob,
        triggered_by: TriggerSource = TriggerSource.SCHEDULER,
        triggered_by_user: Optional[str] = None,
        retry_number: int = 0,
    ) -> JobExecution:
        """
        Execute one attempt of a job.

        Args:
            job: Job snapshot to run
            triggered_by: scheduler, manual or retry
            triggered_by_user: Who asked for a manual run
            retry_number: 0 for the first attempt, n for the nth retry

        Returns:
            The attempt's execution record in its terminal state. Retries run
            later and are not reflected here.

        Raises:
            Whatever the store raises while recording the start of the attempt.
        """
        log = logger.bind(
            job_name=job.job_name,
            instance_id=self._instance_id,
            triggered_by=triggered_by.value,
            retry_number=retry_number,
        )

        execution = await self._store.record_execution_start(
            job.id, triggered_by, retry_number, self._host, triggered_by_user
        )
        log = log.bind(execution_id=execution.id)
        started = time.monotonic()

        if job.job_name in self._running_jobs:
            log.warning("job_already_running_in_process")
            return await self._finish_without_lock(job, execution, started, log)

        self._running_jobs.add(job.job_name)
        try:
            finished, attempt, current = await self._run_locked(
                job, execution, started, log
            )
        finally:
            self._running_jobs.discard(job.job_name)

        if (
            attempt is not None
            and attempt.status is ExecutionStatus.FAILED
            and retry_number < job.max_retries
        ):
            await self._schedule_retry(
                current or job, retry_number + 1, triggered_by_user, log
            )

        return finished

    def dispatch(self, job: ScheduledJob, now: Optional[datetime] = None) -> asyncio.Task:
        """Start a due job in the background without awaiting it.

        A job whose pending retry has come due runs as that retry, provided
        this instance wins the claim; otherwise it runs as a scheduled
        occurrence.
        """
        return self._spawn(self._run_due(job, now or self._clock()), job.job_name)

    async def wait_idle(self) -> None:
        """Wait for dispatched runs, pending retries and handlers past their timeout."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_pending_retries(self) -> int:
        """Cancel in-process retries still waiting out their delay.

        Their retry_at stays on the job row, so the scheduler loop of any
        instance picks them up later.
        """
        pending = list(self._sleeping_retries)
        for task in pending:
            task.cancel()
        return len(pending)

    # ------------------------------------------------------------------
    # Attempt lifecycle
    # ------------------------------------------------------------------

    async def _run_locked(
        self,
        job: ScheduledJob,
        execution: JobExecution,
        started: float,
        log,
    ) -> tuple[JobExecution, Optional[_Attempt], Optional[ScheduledJob]]:
        """Run under the lease. End state and stats are written before the lease is released."""
        acquired = await self._locks.acquire(
            job.job_name, self._instance_id, self._lock_lease_ms
        )
        if not acquired:
            log.warning("job_lock_not_acquired")
            finished = await self._finish_without_lock(job, execution, started, log)
            return finished, None, None

        JOB_EXECUTIONS_INFLIGHT.inc()
        try:
            attempt = await self._invoke(job, execution, log)
            duration_ms = int((time.monotonic() - started) * 1000)
            finished = await self._record_end(execution, attempt, duration_ms, log)
            current = await self._update_stats(job, attempt, duration_ms, log)
            record_execution(
                job.job_name,
                attempt.status.value,
                execution.triggered_by.value,
                duration_ms / 1000,
            )
            return finished, attempt, current
        finally:
            JOB_EXECUTIONS_INFLIGHT.dec()
            await self._locks.release(job.job_name, self._instance_id)

    async def _invoke(self, job: ScheduledJob, execution: JobExecution, log) -> _Attempt:
        try:
            handler = self._registry.get_handler(job.handler_service, job.handler_method)
        except HandlerNotFoundError as e:
            log.error("job_handler_not_found", error=str(e))
            return _Attempt(ExecutionStatus.FAILED, error_message=str(e))

        ctx = ExecutionContext(
            job_id=job.id,
            job_name=job.job_name,
            execution_id=execution.id,
            started_at=execution.started_at,
            config=job.config,
            instance_id=self._instance_id,
            retry_number=execution.retry_number,
            lock_lease_ms=self._lock_lease_ms,
            locks=self._locks,
        )
        timeout_ms = job.timeout_ms or self._default_timeout_ms

        log.info("job_executing", timeout_ms=timeout_ms)
        try:
            task = asyncio.ensure_future(handler(job.config, ctx))
        except Exception as e:
            log.error("job_handler_failed", error=str(e))
            return _Attempt(
                ExecutionStatus.FAILED,
                error_message=str(e) or type(e).__name__,
                error_stack=traceback.format_exc(),
            )

        try:
            done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if not done:
            # The handler keeps running; only the attempt is over
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            task.add_done_callback(_log_late_handler(job.job_name, execution.id))
            log.error("job_timeout", timeout_ms=timeout_ms)
            return _Attempt(ExecutionStatus.TIMEOUT, error_message=TIMEOUT_MESSAGE)

        try:
            value = task.result()
        except Exception as e:
            log.error("job_handler_failed", error=str(e))
            return _Attempt(
                ExecutionStatus.FAILED,
                error_message=str(e) or type(e).__name__,
                error_stack=traceback.format_exc(),
            )

        if value is None:
            result: dict[str, Any] = {}
        elif isinstance(value, dict):
            result = value
        else:
            result = {"value": value}
        log.info("job_succeeded")
        return _Attempt(ExecutionStatus.SUCCESS, result=result)

    async def _finish_without_lock(
        self, job: ScheduledJob, execution: JobExecution, started: float, log
    ) -> JobExecution:
        duration_ms = int((time.monotonic() - started) * 1000)
        attempt = _Attempt(ExecutionStatus.CANCELLED, error_message=LOCK_NOT_ACQUIRED)
        finished = await self._record_end(execution, attempt, duration_ms, log)
        record_execution(
            job.job_name,
            ExecutionStatus.CANCELLED.value,
            execution.triggered_by.value,
            duration_ms / 1000,
        )
        return finished

    async def _record_end(
        self, execution: JobExecution, attempt: _Attempt, duration_ms: int, log
    ) -> JobExecution:
        outcome = ExecutionOutcome(
            status=attempt.status,
            completed_at=self._clock(),
            duration_ms=duration_ms,
            result=attempt.result,
            error_message=attempt.error_message,
            error_stack=attempt.error_stack,
        )
        finished = dataclasses.replace(
            execution,
            status=outcome.status,
            completed_at=outcome.completed_at,
            duration_ms=outcome.duration_ms,
            result=outcome.result,
            error_message=outcome.error_message,
            error_stack=outcome.error_stack,
        )
        try:
            stored = await self._store.record_execution_end(execution.id, outcome)
        except Exception as e:
            log.error("job_execution_persist_failed", error=str(e), exc_info=True)
            return finished
        return stored or finished

    async def _update_stats(
        self, job: ScheduledJob, attempt: _Attempt, duration_ms: int, log
    ) -> Optional[ScheduledJob]:
        """Fold the attempt into the job row. Returns the job as re-read before the update."""
        try:
            current = await self._store.get_job_by_id(job.id)
            if current is None:
                log.warning("job_deleted_during_run")
                return None
            await self._store.update_job_stats(
                job.id,
                attempt.status,
                duration_ms,
                self.next_run_at(current),
                attempt.error_message,
                ran_at=self._clock(),
            )
            return current
        except Exception as e:
            log.error("job_stats_update_failed", error=str(e), exc_info=True)
            return None

    def next_run_at(self, job: ScheduledJob) -> datetime:
        """Next occurrence strictly after now in the job's timezone, as UTC."""
        try:
            tz = resolve_timezone(job.timezone)
            return ensure_utc(
                CronEvaluator.get_next_run_time(job.cron_expression, self._clock(), tz)
            )
        except (InvalidCronExpressionError, ValueError) as e:
            fallback = self._clock() + timedelta(days=1)
            logger.error(
                "job_next_run_unresolvable",
                job_name=job.job_name,
                cron_expression=job.cron_expression,
                timezone=job.timezone,
                error=str(e),
                fallback=fallback.isoformat(),
            )
            return fallback.astimezone(timezone.utc)

    # ------------------------------------------------------------------
    # Retries and background dispatch
    # ------------------------------------------------------------------

    async def _schedule_retry(
        self,
        job: ScheduledJob,
        retry_number: int,
        triggered_by_user: Optional[str],
        log,
    ) -> None:
        delay_s = max(job.retry_delay_ms, 0) / 1000
        retry_at = self._clock() + timedelta(seconds=delay_s)
        durable = True
        try:
            await self._store.schedule_retry(job.id, retry_number, retry_at)
        except Exception as e:
            durable = False
            log.error("job_retry_persist_failed", error=str(e), exc_info=True)

        record_retry_scheduled(job.job_name)
        log.info(
            "job_retry_scheduled",
            next_retry_number=retry_number,
            max_retries=job.max_retries,
            retry_at=retry_at.isoformat(),
            durable=durable,
        )
        task = self._spawn(
            self._retry_later(job, retry_number, delay_s, durable, triggered_by_user),
            job.job_name,
        )
        self._sleeping_retries.add(task)

    async def _retry_later(
        self,
        job: ScheduledJob,
        retry_number: int,
        delay_s: float,
        durable: bool,
        triggered_by_user: Optional[str],
    ) -> None:
        await asyncio.sleep(delay_s)
        self._sleeping_retries.discard(asyncio.current_task())

        if durable and not await self._store.claim_retry(job.id, retry_number):
            logger.debug(
                "job_retry_already_claimed", job_name=job.job_name, retry_number=retry_number
            )
            return

        current = await self._store.get_job_by_id(job.id)
        if current is None or not current.is_active:
            logger.info(
                "job_retry_skipped",
                job_name=job.job_name,
                retry_number=retry_number,
                reason="deleted" if current is None else "paused",
            )
            return

        await self.run(current, TriggerSource.RETRY, triggered_by_user, retry_number)

    async def _run_due(self, job: ScheduledJob, now: datetime) -> None:
        if job.retry_at is not None and job.retry_at <= now:
            retry_number = job.current_retry_count
            if await self._store.claim_retry(job.id, retry_number):
                await self.run(job, TriggerSource.RETRY, retry_number=retry_number)
                return
            if job.next_run_at is None or job.next_run_at > now:
                return
        await self.run(job, TriggerSource.SCHEDULER)

    def _spawn(self, coro, job_name: str) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            self._sleeping_retries.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error(
                    "job_background_run_failed",
                    job_name=job_name,
                    error=str(exc),
                    exc_info=exc,
                )

        task.add_done_callback(_done)
        return task
