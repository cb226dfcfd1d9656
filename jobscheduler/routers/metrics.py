"""Prometheus metrics endpoint for the job scheduler."""

from fastapi import APIRouter, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

router = APIRouter()

# Execution metrics
JOB_EXECUTIONS_TOTAL = Counter(
    "scheduler_job_executions_total",
    "Total job execution attempts by terminal status",
    ["job_name", "status", "triggered_by"],
)

JOB_EXECUTION_DURATION = Histogram(
    "scheduler_job_execution_duration_seconds",
    "Handler wall time per execution attempt",
    ["job_name"],
    buckets=[0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0],
)

JOB_EXECUTIONS_INFLIGHT = Gauge(
    "scheduler_job_executions_inflight",
    "Executions currently running in this process",
)

JOB_RETRIES_SCHEDULED = Counter(
    "scheduler_job_retries_scheduled_total",
    "Retries scheduled after a failed attempt",
    ["job_name"],
)

# Lock metrics
JOB_LOCK_ATTEMPTS = Counter(
    "scheduler_job_lock_attempts_total",
    "Lock acquisition attempts",
    ["outcome"],  # acquired, contended, error
)

JOB_LOCKS_EXPIRED_CLEARED = Counter(
    "scheduler_job_locks_expired_cleared_total",
    "Expired lock leases cleared by the maintenance sweep",
)


def record_execution(
    job_name: str, status: str, triggered_by: str, duration_s: float
) -> None:
    """Record a finished execution attempt."""
    JOB_EXECUTIONS_TOTAL.labels(
        job_name=job_name, status=status, triggered_by=triggered_by
    ).inc()
    JOB_EXECUTION_DURATION.labels(job_name=job_name).observe(duration_s)


def record_retry_scheduled(job_name: str) -> None:
    JOB_RETRIES_SCHEDULED.labels(job_name=job_name).inc()


def record_lock_attempt(outcome: str) -> None:
    """Record a lock acquisition outcome (acquired, contended, error)."""
    JOB_LOCK_ATTEMPTS.labels(outcome=outcome).inc()


def record_locks_cleared(count: int) -> None:
    if count > 0:
        JOB_LOCKS_EXPIRED_CLEARED.inc(count)


@router.get("/metrics", include_in_schema=False)
async def metrics():
    """Prometheus metrics endpoint.

    Returns metrics in Prometheus text format for scraping.
    This endpoint is excluded from OpenAPI docs.
    """
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
