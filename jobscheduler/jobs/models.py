"""Job scheduler data models."""

import os
import socket
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from jobscheduler.jobs.types import (
    ExecutionStatus,
    JobType,
    TriggerSource,
)

if TYPE_CHECKING:
    from jobscheduler.services.jobs.locks import LockCoordinator


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


@dataclass
class ScheduledJob:
    """A recurring job definition plus its runtime state."""

    id: str
    job_name: str
    cron_expression: str
    handler_service: str
    handler_method: str
    config: dict[str, Any] = field(default_factory=dict)
    timezone: str = "America/New_York"
    job_type: JobType = JobType.CUSTOM
    description: Optional[str] = None

    # Control
    is_active: bool = True
    is_system_job: bool = False
    priority: int = 5  # lower runs first
    tags: list[str] = field(default_factory=list)

    # Retry policy
    max_retries: int = 3
    retry_delay_ms: int = 60_000
    current_retry_count: int = 0
    retry_at: Optional[datetime] = None

    # Runtime state
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_run_status: Optional[ExecutionStatus] = None
    last_run_duration_ms: Optional[int] = None
    last_error: Optional[str] = None

    # Counters
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0

    # Lock info
    locked_by: Optional[str] = None
    lock_expires_at: Optional[datetime] = None

    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @property
    def timeout_ms(self) -> Optional[int]:
        """Handler timeout from config["timeoutMs"], or None when unset or unusable."""
        value = self.config.get("timeoutMs") if self.config else None
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
            return int(value)
        return None

    @property
    def success_rate(self) -> float:
        if self.total_runs == 0:
            return 0.0
        return round(self.successful_runs / self.total_runs * 100, 2)

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        """A job is locked iff its lease expiry is in the future."""
        if self.lock_expires_at is None:
            return False
        return self.lock_expires_at > (now or _now())

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API response."""
        return {
            "id": self.id,
            "job_name": self.job_name,
            "cron_expression": self.cron_expression,
            "timezone": self.timezone,
            "job_type": self.job_type.value,
            "description": self.description,
            "handler_service": self.handler_service,
            "handler_method": self.handler_method,
            "config": self.config,
            "is_active": self.is_active,
            "is_system_job": self.is_system_job,
            "priority": self.priority,
            "tags": list(self.tags),
            "max_retries": self.max_retries,
            "retry_delay_ms": self.retry_delay_ms,
            "current_retry_count": self.current_retry_count,
            "retry_at": _iso(self.retry_at),
            "next_run_at": _iso(self.next_run_at),
            "last_run_at": _iso(self.last_run_at),
            "last_run_status": self.last_run_status.value if self.last_run_status else None,
            "last_run_duration_ms": self.last_run_duration_ms,
            "last_error": self.last_error,
            "total_runs": self.total_runs,
            "successful_runs": self.successful_runs,
            "failed_runs": self.failed_runs,
            "success_rate": self.success_rate,
            "locked_by": self.locked_by,
            "lock_expires_at": _iso(self.lock_expires_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class JobExecution:
    """One attempt to run a job."""

    id: str
    job_id: str
    status: ExecutionStatus
    triggered_by: TriggerSource
    started_at: datetime = field(default_factory=_now)
    job_name: Optional[str] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    result: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    error_stack: Optional[str] = None
    triggered_by_user: Optional[str] = None
    retry_number: int = 0
    host_name: Optional[str] = None
    process_id: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API response."""
        return {
            "id": self.id,
            "job_id": self.job_id,
            "job_name": self.job_name,
            "status": self.status.value,
            "triggered_by": self.triggered_by.value,
            "triggered_by_user": self.triggered_by_user,
            "retry_number": self.retry_number,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration_ms": self.duration_ms,
            "result": self.result,
            "error_message": self.error_message,
            "error_stack": self.error_stack,
            "host_name": self.host_name,
            "process_id": self.process_id,
        }


@dataclass
class JobStatistics:
    """Aggregate execution figures for one job over a time window."""

    job_id: str
    job_name: str
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    avg_duration_ms: Optional[float] = None
    min_duration_ms: Optional[int] = None
    max_duration_ms: Optional[int] = None
    success_rate: float = 0.0  # percentage 0-100

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "job_name": self.job_name,
            "total_executions": self.total_executions,
            "successful_executions": self.successful_executions,
            "failed_executions": self.failed_executions,
            "avg_duration_ms": self.avg_duration_ms,
            "min_duration_ms": self.min_duration_ms,
            "max_duration_ms": self.max_duration_ms,
            "success_rate": self.success_rate,
        }


@dataclass
class SchedulerDashboard:
    """Snapshot of the scheduler for the admin dashboard."""

    jobs: list[ScheduledJob]
    recent_executions: list[JobExecution]
    statistics: list[JobStatistics]
    running_count: int = 0
    failed_last_24h: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobs": [j.to_dict() for j in self.jobs],
            "recent_executions": [e.to_dict() for e in self.recent_executions],
            "statistics": [s.to_dict() for s in self.statistics],
            "running_count": self.running_count,
            "failed_last_24h": self.failed_last_24h,
        }


@dataclass
class JobDefinition:
    """Fields written by JobStore.upsert_job.

    Counters, lock fields and last-run state are never part of a definition,
    so re-registering a job cannot reset them.
    """

    job_name: str
    cron_expression: str
    handler_service: str
    handler_method: str
    next_run_at: Optional[datetime]
    config: dict[str, Any] = field(default_factory=dict)
    timezone: str = "America/New_York"
    job_type: JobType = JobType.CUSTOM
    description: Optional[str] = None
    max_retries: int = 3
    retry_delay_ms: int = 60_000
    priority: int = 5
    tags: list[str] = field(default_factory=list)
    is_system_job: bool = False


@dataclass
class ExecutionOutcome:
    """Fields written by JobStore.record_execution_end."""

    status: ExecutionStatus
    completed_at: datetime
    duration_ms: int
    result: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    error_stack: Optional[str] = None


@dataclass(frozen=True)
class HostIdentity:
    """Where an execution ran."""

    host_name: str
    process_id: int

    @classmethod
    def current(cls) -> "HostIdentity":
        return cls(host_name=socket.gethostname(), process_id=os.getpid())


@dataclass
class ExecutionContext:
    """Passed to every handler alongside the job's config.

    Long-running handlers call ``extend_lock`` periodically so the lease
    does not expire underneath them.
    """

    job_id: str
    job_name: str
    execution_id: str
    started_at: datetime
    config: dict[str, Any]
    instance_id: str
    retry_number: int = 0
    lock_lease_ms: int = 300_000
    locks: Optional["LockCoordinator"] = field(default=None, repr=False)

    async def extend_lock(self, extension_ms: Optional[int] = None) -> bool:
        """Push the lease expiry to now + extension_ms (defaults to the lease)."""
        if self.locks is None:
            return False
        return await self.locks.extend(
            self.job_name, self.instance_id, extension_ms or self.lock_lease_ms
        )
