"""Scheduled job endpoints: observability and control plane."""

from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from jobscheduler.config import get_settings
from jobscheduler.deps.security import require_admin_token
from jobscheduler.jobs.cron import CronEvaluator
from jobscheduler.jobs.errors import (
    InvalidCronExpressionError,
    InvalidJobDefinitionError,
    JobNotFoundError,
)
from jobscheduler.jobs.types import JobType
from jobscheduler.routers.utils import PaginationDefaults, json_serializable
from jobscheduler.services.jobs.scheduler import JobSchedulerService
from jobscheduler.utils.time import ensure_utc, resolve_timezone, utcnow

router = APIRouter(prefix="/jobs", tags=["jobs"])
logger = structlog.get_logger(__name__)

# Scheduler service (set during app startup)
_scheduler: Optional[JobSchedulerService] = None


def set_scheduler(scheduler: Optional[JobSchedulerService]) -> None:
    """Set the scheduler service for job routes."""
    global _scheduler
    _scheduler = scheduler


def _get_scheduler() -> JobSchedulerService:
    """Get the scheduler, raising 503 if not available."""
    if _scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job scheduler not initialized",
        )
    return _scheduler


def _not_found(job_name: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Job not found: {job_name}",
    )


class RunJobRequest(BaseModel):
    """Optional body for a manual run."""

    triggered_by_user: Optional[str] = Field(
        None, max_length=200, description="Who requested the run"
    )


class RegisterJobRequest(BaseModel):
    """Body for registering a job over HTTP.

    Required fields are validated by the endpoint so that a missing one is
    a 400 with the field names rather than a schema error.
    """

    job_name: Optional[str] = Field(None, max_length=200)
    cron_expression: Optional[str] = Field(None, max_length=200)
    handler_service: Optional[str] = Field(None, max_length=200)
    handler_method: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = None
    job_type: Optional[JobType] = None
    config: dict[str, Any] = Field(default_factory=dict)
    max_retries: Optional[int] = Field(None, ge=0)
    retry_delay_ms: Optional[int] = Field(None, ge=0)
    priority: Optional[int] = Field(None, description="Lower runs first")
    tags: list[str] = Field(default_factory=list)
    timezone: Optional[str] = Field(None, description="IANA name; defaults to the scheduler's")


class ValidateCronRequest(BaseModel):
    expression: Optional[str] = None
    timezone: Optional[str] = Field(None, description="Timezone for the next-run preview")


NEXT_RUN_PREVIEW_COUNT = 5

CRON_EXAMPLES = [
    {"expression": "0 6 * * *", "description": "Every day at 6:00 AM"},
    {"expression": "0 7 * * 1-5", "description": "Weekdays at 7:00 AM"},
    {"expression": "0 8 * * 1", "description": "Every Monday at 8:00 AM"},
    {"expression": "0 9 1 * *", "description": "1st of every month at 9:00 AM"},
    {"expression": "0 8 1 1,4,7,10 *", "description": "First day of each quarter at 8:00 AM"},
    {"expression": "*/15 * * * *", "description": "Every 15 minutes"},
    {"expression": "0 */2 * * *", "description": "Every 2 hours"},
    {"expression": "0 18 * * *", "description": "Every day at 6:00 PM"},
    {"expression": "30 5 * * *", "description": "Every day at 5:30 AM"},
    {"expression": "0 0 * * 0", "description": "Every Sunday at midnight"},
]


# =============================================================================
# Observability
# =============================================================================


@router.get("")
async def list_jobs(
    active_only: bool = Query(False, description="Only active jobs"),
    tag: Optional[str] = Query(None, description="Filter by tag"),
    _: bool = Depends(require_admin_token),
):
    """List scheduled jobs ordered by priority then name."""
    scheduler = _get_scheduler()
    jobs = await scheduler.list_jobs(active_only=active_only, tag=tag)
    return {
        "jobs": [
            {**json_serializable(j), "schedule": CronEvaluator.describe(j.cron_expression)}
            for j in jobs
        ],
        "count": len(jobs),
    }


@router.get("/dashboard")
async def get_dashboard(_: bool = Depends(require_admin_token)):
    """Jobs, recent executions, 24h statistics and running/failed counts."""
    scheduler = _get_scheduler()
    dashboard = await scheduler.get_dashboard()
    return json_serializable(dashboard)


@router.get("/executions")
async def get_recent_executions(
    limit: int = Query(50, ge=1, le=PaginationDefaults.MAX_LIMIT, description="Max results"),
    _: bool = Depends(require_admin_token),
):
    """Most recent executions across all jobs, newest first."""
    scheduler = _get_scheduler()
    executions = await scheduler.get_recent_executions(limit=limit)
    return {"executions": json_serializable(executions), "count": len(executions)}


@router.get("/statistics")
async def get_statistics(
    job_id: Optional[str] = Query(None, description="Restrict to one job id"),
    hours: int = Query(24, ge=1, le=24 * 90, description="Window in hours"),
    _: bool = Depends(require_admin_token),
):
    """Per-job execution statistics over a trailing window."""
    scheduler = _get_scheduler()
    stats = await scheduler.get_job_statistics(job_id=job_id, window_hours=hours)
    return {"statistics": json_serializable(stats), "window_hours": hours}


# =============================================================================
# Cron utilities
# =============================================================================


@router.get("/cron/examples")
async def get_cron_examples(_: bool = Depends(require_admin_token)):
    """Common cron expressions with a human-readable label."""
    return {"examples": CRON_EXAMPLES}


@router.post("/cron/validate")
async def validate_cron(
    request: ValidateCronRequest,
    _: bool = Depends(require_admin_token),
):
    """
    Check a cron expression and preview its next runs.

    Returns:
        200: {"valid": true, "description", "next_runs"} or
             {"valid": false, "error"}
        400: Missing expression
    """
    if not request.expression or not request.expression.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="expression is required",
        )

    tz_name = request.timezone or get_settings().scheduler_default_timezone
    try:
        CronEvaluator.parse(request.expression)
        tz = resolve_timezone(tz_name)
    except ValueError as e:
        return {"valid": False, "error": str(e)}

    next_runs: list[str] = []
    from_instant = utcnow()
    while len(next_runs) < NEXT_RUN_PREVIEW_COUNT:
        from_instant = CronEvaluator.get_next_run_time(request.expression, from_instant, tz)
        next_runs.append(ensure_utc(from_instant).isoformat())

    return {
        "valid": True,
        "description": CronEvaluator.describe(request.expression),
        "timezone": tz_name,
        "next_runs": next_runs,
    }


# =============================================================================
# Registration
# =============================================================================


@router.post("", status_code=status.HTTP_201_CREATED)
async def register_job(
    request: RegisterJobRequest,
    _: bool = Depends(require_admin_token),
):
    """
    Create or update a job definition.

    Returns:
        201: Job registered, with its schedule described
        400: Missing required fields, invalid cron expression or timezone
    """
    missing = [
        name
        for name in ("job_name", "cron_expression", "handler_service", "handler_method")
        if not getattr(request, name)
    ]
    if missing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing required fields: {', '.join(missing)}",
        )

    scheduler = _get_scheduler()
    try:
        job = await scheduler.register_job(
            request.job_name,
            request.cron_expression,
            request.handler_service,
            request.handler_method,
            description=request.description,
            job_type=request.job_type or JobType.CUSTOM,
            config=request.config,
            max_retries=request.max_retries,
            retry_delay_ms=request.retry_delay_ms,
            priority=request.priority if request.priority is not None else 5,
            tags=request.tags,
            timezone=request.timezone,
        )
    except InvalidCronExpressionError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "Invalid cron expression",
                "cron_expression": request.cron_expression,
                "reason": e.reason,
            },
        )
    except InvalidJobDefinitionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    logger.info("job_registered_via_api", job_name=job.job_name)
    return {
        "message": "Job registered successfully",
        "job": {
            **json_serializable(job),
            "cron_description": CronEvaluator.describe(job.cron_expression),
        },
    }


@router.get("/{job_name}")
async def get_job(job_name: str, _: bool = Depends(require_admin_token)):
    """Job definition and runtime state."""
    scheduler = _get_scheduler()
    job = await scheduler.get_job_status(job_name)
    if job is None:
        raise _not_found(job_name)
    return {
        **json_serializable(job),
        "schedule": CronEvaluator.describe(job.cron_expression),
    }


@router.get("/{job_name}/history")
async def get_job_history(
    job_name: str,
    limit: int = Query(
        PaginationDefaults.DEFAULT_LIMIT,
        ge=1,
        le=PaginationDefaults.MAX_LIMIT,
        description="Max results",
    ),
    _: bool = Depends(require_admin_token),
):
    """Most recent executions of a job, newest first."""
    scheduler = _get_scheduler()
    if await scheduler.get_job_status(job_name) is None:
        raise _not_found(job_name)
    executions = await scheduler.get_job_history(job_name, limit=limit)
    return {"executions": json_serializable(executions), "count": len(executions)}


# =============================================================================
# Control plane
# =============================================================================


@router.post("/{job_name}/run")
async def run_job(
    job_name: str,
    request: Optional[RunJobRequest] = None,
    _: bool = Depends(require_admin_token),
):
    """
    Run a job immediately and wait for the attempt to finish.

    Returns:
        200: Attempt finished (check status: success, failed, timeout)
        404: Unknown job
        409: Lock held elsewhere, attempt recorded as cancelled
    """
    scheduler = _get_scheduler()
    user = request.triggered_by_user if request else None
    try:
        execution = await scheduler.run_job(job_name, triggered_by_user=user)
    except JobNotFoundError:
        raise _not_found(job_name)

    body = json_serializable(execution)
    if execution.status.value == "cancelled":
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=body)
    return body


@router.post("/{job_name}/pause")
async def pause_job(job_name: str, _: bool = Depends(require_admin_token)):
    """Stop future scheduled runs of a job."""
    scheduler = _get_scheduler()
    try:
        await scheduler.pause_job(job_name)
    except JobNotFoundError:
        raise _not_found(job_name)
    return {"job_name": job_name, "is_active": False}


@router.post("/{job_name}/resume")
async def resume_job(job_name: str, _: bool = Depends(require_admin_token)):
    """Reactivate a job with its next run recomputed from now."""
    scheduler = _get_scheduler()
    try:
        await scheduler.resume_job(job_name)
    except JobNotFoundError:
        raise _not_found(job_name)
    job = await scheduler.get_job_status(job_name)
    return {
        "job_name": job_name,
        "is_active": True,
        "next_run_at": job.next_run_at.isoformat() if job and job.next_run_at else None,
    }
