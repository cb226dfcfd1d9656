"""Persistence contract shared by the Postgres and in-memory job stores."""

from datetime import datetime
from typing import Optional, Protocol

from jobscheduler.jobs.models import (
    ExecutionOutcome,
    HostIdentity,
    JobDefinition,
    JobExecution,
    JobStatistics,
    ScheduledJob,
)
from jobscheduler.jobs.types import ExecutionStatus, TriggerSource


class JobStore(Protocol):
    """Protocol for scheduled job and execution persistence.

    Every mutation is a single conditional write so that concurrent
    scheduler instances sharing one store never observe a torn update.
    The lock primitives are only called through LockCoordinator.
    """

    async def upsert_job(self, definition: JobDefinition) -> ScheduledJob:
        """Insert or update keyed on job_name.

        On conflict the schedule, handler, config and policy fields are
        overwritten; counters, runtime state and lock fields are preserved.
        """
        ...

    async def get_job(self, job_name: str) -> Optional[ScheduledJob]:
        ...

    async def get_job_by_id(self, job_id: str) -> Optional[ScheduledJob]:
        ...

    async def list_jobs(
        self, active_only: bool = False, tag: Optional[str] = None
    ) -> list[ScheduledJob]:
        """List jobs ordered by priority then name."""
        ...

    async def get_due_jobs(
        self, limit: int, now: Optional[datetime] = None
    ) -> list[ScheduledJob]:
        """Active, unlocked jobs whose next_run_at or retry_at has passed.

        Ordered by priority ASC then next_run_at ASC. Candidate selection
        only; the lock decides who actually runs.
        """
        ...

    async def list_overdue_jobs(
        self, now: Optional[datetime] = None
    ) -> list[ScheduledJob]:
        """Active jobs with no pending retry whose next_run_at is NULL or in the past."""
        ...

    async def reschedule_jobs(
        self, next_run_times: dict[str, datetime], now: Optional[datetime] = None
    ) -> int:
        """Write next_run_at per job id in one statement.

        Rows that are no longer overdue, or that gained a pending retry in
        the meantime, are left alone. Returns the number of rows updated.
        """
        ...

    async def set_active(
        self, job_name: str, active: bool, next_run_at: Optional[datetime] = None
    ) -> bool:
        """Toggle is_active. next_run_at is only written when given."""
        ...

    async def delete_job(self, job_name: str) -> bool:
        """Delete a job and, by cascade, its executions."""
        ...

    async def record_execution_start(
        self,
        job_id: str,
        triggered_by: TriggerSource,
        retry_number: int,
        host: HostIdentity,
        triggered_by_user: Optional[str] = None,
    ) -> JobExecution:
        ...

    async def record_execution_end(
        self, execution_id: str, outcome: ExecutionOutcome
    ) -> Optional[JobExecution]:
        """Move a running execution to its terminal state.

        Returns None if the execution does not exist or is already terminal.
        """
        ...

    async def update_job_stats(
        self,
        job_id: str,
        status: ExecutionStatus,
        duration_ms: int,
        next_run_at: datetime,
        error_message: Optional[str] = None,
        ran_at: Optional[datetime] = None,
    ) -> None:
        """Fold one finished run into the job's counters and last-run fields."""
        ...

    async def schedule_retry(
        self, job_id: str, retry_number: int, retry_at: datetime
    ) -> None:
        """Persist a pending retry so any instance can pick it up."""
        ...

    async def claim_retry(self, job_id: str, retry_number: int) -> bool:
        """Atomically take ownership of a pending retry. Only one caller wins."""
        ...

    async def list_executions(
        self, job_name: Optional[str] = None, limit: int = 20
    ) -> list[JobExecution]:
        """Most recent first."""
        ...

    async def count_executions(
        self, status: ExecutionStatus, since: Optional[datetime] = None
    ) -> int:
        ...

    async def get_job_statistics(
        self,
        job_id: Optional[str] = None,
        window_hours: int = 24,
        now: Optional[datetime] = None,
    ) -> list[JobStatistics]:
        ...

    async def delete_executions_before(self, cutoff: datetime) -> int:
        """Delete terminal executions started before cutoff. Returns the count."""
        ...

    # Lock primitives

    async def try_acquire_lock(
        self, job_name: str, owner: str, lease_ms: int
    ) -> bool:
        """Take the lock if free, expired, or already held by owner."""
        ...

    async def release_lock(self, job_name: str, owner: str) -> bool:
        ...

    async def extend_lock(self, job_name: str, owner: str, extension_ms: int) -> bool:
        ...

    async def clear_expired_locks(self) -> int:
        ...
