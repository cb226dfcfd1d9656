"""In-process JobStore for tests and single-node embedding.

Mirrors the semantics of PostgresJobStore: every method takes the store's
lock for its whole body, so each call is atomic with respect to the
others, and callers always receive copies rather than live rows.
"""

import asyncio
import copy
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import uuid4

from jobscheduler.jobs.models import (
    ExecutionOutcome,
    HostIdentity,
    JobDefinition,
    JobExecution,
    JobStatistics,
    ScheduledJob,
)
from jobscheduler.jobs.types import ExecutionStatus, TriggerSource
from jobscheduler.utils.time import utcnow


class InMemoryJobStore:
    """Dict-backed JobStore guarded by a single asyncio.Lock."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._lock = asyncio.Lock()
        self._jobs: dict[str, ScheduledJob] = {}  # keyed by id
        self._names: dict[str, str] = {}  # job_name -> id
        self._executions: dict[str, JobExecution] = {}

    def _now(self) -> datetime:
        return self._clock()

    def _by_name(self, job_name: str) -> Optional[ScheduledJob]:
        job_id = self._names.get(job_name)
        return self._jobs.get(job_id) if job_id else None

    def _with_name(self, execution: JobExecution) -> JobExecution:
        out = copy.deepcopy(execution)
        job = self._jobs.get(execution.job_id)
        out.job_name = job.job_name if job else execution.job_name
        return out

    # Jobs

    async def upsert_job(self, definition: JobDefinition) -> ScheduledJob:
        async with self._lock:
            now = self._now()
            job = self._by_name(definition.job_name)
            if job is None:
                job = ScheduledJob(
                    id=str(uuid4()),
                    job_name=definition.job_name,
                    cron_expression=definition.cron_expression,
                    handler_service=definition.handler_service,
                    handler_method=definition.handler_method,
                    created_at=now,
                )
                self._jobs[job.id] = job
                self._names[job.job_name] = job.id

            job.cron_expression = definition.cron_expression
            job.handler_service = definition.handler_service
            job.handler_method = definition.handler_method
            job.config = copy.deepcopy(definition.config or {})
            job.timezone = definition.timezone
            job.job_type = definition.job_type
            if definition.description is not None:
                job.description = definition.description
            job.max_retries = definition.max_retries
            job.retry_delay_ms = definition.retry_delay_ms
            job.priority = definition.priority
            job.tags = list(definition.tags)
            job.is_system_job = definition.is_system_job
            job.next_run_at = definition.next_run_at
            job.updated_at = now
            return copy.deepcopy(job)

    async def get_job(self, job_name: str) -> Optional[ScheduledJob]:
        async with self._lock:
            job = self._by_name(job_name)
            return copy.deepcopy(job) if job else None

    async def get_job_by_id(self, job_id: str) -> Optional[ScheduledJob]:
        async with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    async def list_jobs(
        self, active_only: bool = False, tag: Optional[str] = None
    ) -> list[ScheduledJob]:
        async with self._lock:
            jobs = [
                j
                for j in self._jobs.values()
                if (not active_only or j.is_active) and (tag is None or tag in j.tags)
            ]
            jobs.sort(key=lambda j: (j.priority, j.job_name))
            return copy.deepcopy(jobs)

    async def get_due_jobs(
        self, limit: int, now: Optional[datetime] = None
    ) -> list[ScheduledJob]:
        async with self._lock:
            now = now or self._now()
            due = [
                j
                for j in self._jobs.values()
                if j.is_active
                and (
                    (j.next_run_at is not None and j.next_run_at <= now)
                    or (j.retry_at is not None and j.retry_at <= now)
                )
                and not j.is_locked(now)
            ]
            due.sort(
                key=lambda j: (
                    j.priority,
                    j.next_run_at is None,
                    j.next_run_at.timestamp() if j.next_run_at else 0.0,
                )
            )
            return copy.deepcopy(due[:limit])

    @staticmethod
    def _is_overdue(job: ScheduledJob, now: datetime) -> bool:
        return (
            job.is_active
            and job.retry_at is None
            and (job.next_run_at is None or job.next_run_at < now)
        )

    async def list_overdue_jobs(
        self, now: Optional[datetime] = None
    ) -> list[ScheduledJob]:
        async with self._lock:
            now = now or self._now()
            overdue = [j for j in self._jobs.values() if self._is_overdue(j, now)]
            overdue.sort(key=lambda j: (j.priority, j.job_name))
            return copy.deepcopy(overdue)

    async def reschedule_jobs(
        self, next_run_times: dict[str, datetime], now: Optional[datetime] = None
    ) -> int:
        async with self._lock:
            now = now or self._now()
            updated = 0
            for job_id, next_run_at in next_run_times.items():
                job = self._jobs.get(job_id)
                if job is None or not self._is_overdue(job, now):
                    continue
                job.next_run_at = next_run_at
                job.updated_at = now
                updated += 1
            return updated

    async def set_active(
        self, job_name: str, active: bool, next_run_at: Optional[datetime] = None
    ) -> bool:
        async with self._lock:
            job = self._by_name(job_name)
            if job is None:
                return False
            job.is_active = active
            if next_run_at is not None:
                job.next_run_at = next_run_at
            job.updated_at = self._now()
            return True

    async def delete_job(self, job_name: str) -> bool:
        async with self._lock:
            job_id = self._names.pop(job_name, None)
            if job_id is None:
                return False
            self._jobs.pop(job_id, None)
            self._executions = {
                k: e for k, e in self._executions.items() if e.job_id != job_id
            }
            return True

    # Executions

    async def record_execution_start(
        self,
        job_id: str,
        triggered_by: TriggerSource,
        retry_number: int,
        host: HostIdentity,
        triggered_by_user: Optional[str] = None,
    ) -> JobExecution:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise LookupError(f"Job not found: {job_id}")
            execution = JobExecution(
                id=str(uuid4()),
                job_id=job_id,
                job_name=job.job_name,
                status=ExecutionStatus.RUNNING,
                triggered_by=triggered_by,
                triggered_by_user=triggered_by_user,
                retry_number=retry_number,
                started_at=self._now(),
                host_name=host.host_name,
                process_id=host.process_id,
            )
            self._executions[execution.id] = execution
            return self._with_name(execution)

    async def record_execution_end(
        self, execution_id: str, outcome: ExecutionOutcome
    ) -> Optional[JobExecution]:
        async with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None or execution.status.is_terminal:
                return None
            execution.status = outcome.status
            execution.result = copy.deepcopy(outcome.result)
            execution.error_message = outcome.error_message
            execution.error_stack = outcome.error_stack
            execution.completed_at = outcome.completed_at
            execution.duration_ms = outcome.duration_ms
            return self._with_name(execution)

    async def update_job_stats(
        self,
        job_id: str,
        status: ExecutionStatus,
        duration_ms: int,
        next_run_at: datetime,
        error_message: Optional[str] = None,
        ran_at: Optional[datetime] = None,
    ) -> None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            job.last_run_at = ran_at or self._now()
            job.last_run_status = status
            job.last_run_duration_ms = duration_ms
            job.last_error = error_message
            job.next_run_at = next_run_at
            job.total_runs += 1
            if status is ExecutionStatus.SUCCESS:
                job.successful_runs += 1
                job.current_retry_count = 0
                job.retry_at = None
            else:
                job.failed_runs += 1
            job.updated_at = self._now()

    async def schedule_retry(
        self, job_id: str, retry_number: int, retry_at: datetime
    ) -> None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            job.current_retry_count = retry_number
            job.retry_at = retry_at
            job.updated_at = self._now()

    async def claim_retry(self, job_id: str, retry_number: int) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if (
                job is None
                or job.retry_at is None
                or job.current_retry_count != retry_number
            ):
                return False
            job.retry_at = None
            job.updated_at = self._now()
            return True

    async def list_executions(
        self, job_name: Optional[str] = None, limit: int = 20
    ) -> list[JobExecution]:
        async with self._lock:
            job_id = self._names.get(job_name) if job_name else None
            if job_name and job_id is None:
                return []
            # newest insert first so ties on started_at keep recency order
            executions = [
                e
                for e in reversed(list(self._executions.values()))
                if job_id is None or e.job_id == job_id
            ]
            executions.sort(key=lambda e: e.started_at, reverse=True)
            return [self._with_name(e) for e in executions[:limit]]

    async def count_executions(
        self, status: ExecutionStatus, since: Optional[datetime] = None
    ) -> int:
        async with self._lock:
            return sum(
                1
                for e in self._executions.values()
                if e.status is status and (since is None or e.started_at >= since)
            )

    async def get_job_statistics(
        self,
        job_id: Optional[str] = None,
        window_hours: int = 24,
        now: Optional[datetime] = None,
    ) -> list[JobStatistics]:
        async with self._lock:
            since = (now or self._now()) - timedelta(hours=window_hours)
            jobs = [
                j for j in self._jobs.values() if job_id is None or j.id == job_id
            ]
            jobs.sort(key=lambda j: j.job_name)

            stats = []
            for job in jobs:
                runs = [
                    e
                    for e in self._executions.values()
                    if e.job_id == job.id and e.started_at >= since
                ]
                durations = [e.duration_ms for e in runs if e.duration_ms is not None]
                successes = sum(1 for e in runs if e.status is ExecutionStatus.SUCCESS)
                failures = sum(1 for e in runs if e.status is ExecutionStatus.FAILED)
                stats.append(
                    JobStatistics(
                        job_id=job.id,
                        job_name=job.job_name,
                        total_executions=len(runs),
                        successful_executions=successes,
                        failed_executions=failures,
                        avg_duration_ms=sum(durations) / len(durations) if durations else None,
                        min_duration_ms=min(durations) if durations else None,
                        max_duration_ms=max(durations) if durations else None,
                        success_rate=round(successes / len(runs) * 100, 2) if runs else 0.0,
                    )
                )
            return stats

    async def delete_executions_before(self, cutoff: datetime) -> int:
        async with self._lock:
            stale = [
                k
                for k, e in self._executions.items()
                if e.started_at < cutoff and e.status is not ExecutionStatus.RUNNING
            ]
            for k in stale:
                del self._executions[k]
            return len(stale)

    # Locks

    async def try_acquire_lock(
        self, job_name: str, owner: str, lease_ms: int
    ) -> bool:
        async with self._lock:
            job = self._by_name(job_name)
            if job is None:
                return False
            now = self._now()
            if job.is_locked(now) and job.locked_by != owner:
                return False
            job.locked_by = owner
            job.lock_expires_at = now + timedelta(milliseconds=lease_ms)
            return True

    async def release_lock(self, job_name: str, owner: str) -> bool:
        async with self._lock:
            job = self._by_name(job_name)
            if job is None or job.locked_by != owner:
                return False
            job.locked_by = None
            job.lock_expires_at = None
            return True

    async def extend_lock(self, job_name: str, owner: str, extension_ms: int) -> bool:
        async with self._lock:
            job = self._by_name(job_name)
            if job is None or job.locked_by != owner:
                return False
            job.lock_expires_at = self._now() + timedelta(milliseconds=extension_ms)
            return True

    async def clear_expired_locks(self) -> int:
        async with self._lock:
            now = self._now()
            cleared = 0
            for job in self._jobs.values():
                if job.lock_expires_at is not None and job.lock_expires_at < now:
                    job.locked_by = None
                    job.lock_expires_at = None
                    cleared += 1
            return cleared
