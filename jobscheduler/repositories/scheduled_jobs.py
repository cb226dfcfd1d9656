"""Repository for scheduled jobs, their executions and row-level locks."""

import json
from datetime import datetime
from typing import Any, Optional

import structlog

from jobscheduler.jobs.models import (
    ExecutionOutcome,
    HostIdentity,
    JobDefinition,
    JobExecution,
    JobStatistics,
    ScheduledJob,
)
from jobscheduler.jobs.types import ExecutionStatus, JobType, TriggerSource

logger = structlog.get_logger(__name__)


def _json_field(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


def _count(result: Optional[str]) -> int:
    # asyncpg returns the command tag, e.g. "DELETE 12"
    return int(result.split()[-1]) if result else 0


class PostgresJobStore:
    """JobStore backed by the scheduled_jobs / job_executions tables.

    Every mutation is one statement; lock acquisition is a conditional
    UPDATE so two instances racing for the same row cannot both win.
    """

    def __init__(self, pool):
        self._pool = pool

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def upsert_job(self, definition: JobDefinition) -> ScheduledJob:
        """Insert a job or update its definition, keeping counters and lock state."""
        query = """
            INSERT INTO scheduled_jobs (
                job_name, job_type, description, cron_expression, timezone,
                handler_service, handler_method, config, max_retries,
                retry_delay_ms, priority, tags, is_system_job, next_run_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9, $10, $11, $12, $13, $14)
            ON CONFLICT (job_name) DO UPDATE SET
                job_type = EXCLUDED.job_type,
                description = COALESCE(EXCLUDED.description, scheduled_jobs.description),
                cron_expression = EXCLUDED.cron_expression,
                timezone = EXCLUDED.timezone,
                handler_service = EXCLUDED.handler_service,
                handler_method = EXCLUDED.handler_method,
                config = EXCLUDED.config,
                max_retries = EXCLUDED.max_retries,
                retry_delay_ms = EXCLUDED.retry_delay_ms,
                priority = EXCLUDED.priority,
                tags = EXCLUDED.tags,
                is_system_job = EXCLUDED.is_system_job,
                next_run_at = EXCLUDED.next_run_at,
                updated_at = now()
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query,
                definition.job_name,
                definition.job_type.value,
                definition.description,
                definition.cron_expression,
                definition.timezone,
                definition.handler_service,
                definition.handler_method,
                json.dumps(definition.config or {}),
                definition.max_retries,
                definition.retry_delay_ms,
                definition.priority,
                list(definition.tags),
                definition.is_system_job,
                definition.next_run_at,
            )
        logger.info(
            "scheduled_job_upserted",
            job_name=definition.job_name,
            cron_expression=definition.cron_expression,
            next_run_at=definition.next_run_at.isoformat() if definition.next_run_at else None,
        )
        return self._row_to_job(row)

    async def get_job(self, job_name: str) -> Optional[ScheduledJob]:
        query = "SELECT * FROM scheduled_jobs WHERE job_name = $1"
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job_name)
        return self._row_to_job(row) if row else None

    async def get_job_by_id(self, job_id: str) -> Optional[ScheduledJob]:
        query = "SELECT * FROM scheduled_jobs WHERE id = $1"
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job_id)
        return self._row_to_job(row) if row else None

    async def list_jobs(
        self, active_only: bool = False, tag: Optional[str] = None
    ) -> list[ScheduledJob]:
        conditions = []
        params: list[Any] = []
        param_idx = 1

        if active_only:
            conditions.append("is_active = true")

        if tag:
            conditions.append(f"${param_idx} = ANY(tags)")
            params.append(tag)
            param_idx += 1

        where_clause = " AND ".join(conditions) if conditions else "TRUE"

        query = f"""
            SELECT * FROM scheduled_jobs
            WHERE {where_clause}
            ORDER BY priority ASC, job_name ASC
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [self._row_to_job(r) for r in rows]

    async def get_due_jobs(
        self, limit: int, now: Optional[datetime] = None
    ) -> list[ScheduledJob]:
        """Active, unlocked jobs whose next run or pending retry has come due."""
        query = """
            WITH clock AS (SELECT COALESCE($2::timestamptz, now()) AS ts)
            SELECT sj.*
            FROM scheduled_jobs sj, clock
            WHERE sj.is_active = true
              AND (sj.next_run_at <= clock.ts OR sj.retry_at <= clock.ts)
              AND (sj.lock_expires_at IS NULL OR sj.lock_expires_at <= clock.ts)
            ORDER BY sj.priority ASC, sj.next_run_at ASC NULLS LAST
            LIMIT $1
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, limit, now)
        return [self._row_to_job(r) for r in rows]

    async def list_overdue_jobs(
        self, now: Optional[datetime] = None
    ) -> list[ScheduledJob]:
        """Active jobs without a pending retry whose next run is missing or past."""
        query = """
            SELECT * FROM scheduled_jobs
            WHERE is_active = true
              AND retry_at IS NULL
              AND (next_run_at IS NULL OR next_run_at < COALESCE($1::timestamptz, now()))
            ORDER BY priority ASC, job_name ASC
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, now)
        return [self._row_to_job(r) for r in rows]

    async def reschedule_jobs(
        self, next_run_times: dict[str, datetime], now: Optional[datetime] = None
    ) -> int:
        """Bulk-write next_run_at for jobs that are still overdue."""
        if not next_run_times:
            return 0
        query = """
            UPDATE scheduled_jobs sj SET
                next_run_at = v.next_run_at,
                updated_at = now()
            FROM unnest($1::text[], $2::timestamptz[]) AS v(id, next_run_at)
            WHERE sj.id = v.id
              AND sj.is_active = true
              AND sj.retry_at IS NULL
              AND (sj.next_run_at IS NULL OR sj.next_run_at < COALESCE($3::timestamptz, now()))
        """
        job_ids = list(next_run_times)
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                query, job_ids, [next_run_times[i] for i in job_ids], now
            )
        return _count(result)

    async def set_active(
        self, job_name: str, active: bool, next_run_at: Optional[datetime] = None
    ) -> bool:
        query = """
            UPDATE scheduled_jobs SET
                is_active = $2,
                next_run_at = COALESCE($3, next_run_at),
                updated_at = now()
            WHERE job_name = $1
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job_name, active, next_run_at)
        return row is not None

    async def delete_job(self, job_name: str) -> bool:
        query = "DELETE FROM scheduled_jobs WHERE job_name = $1"
        async with self._pool.acquire() as conn:
            result = await conn.execute(query, job_name)
        return _count(result) > 0

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    async def record_execution_start(
        self,
        job_id: str,
        triggered_by: TriggerSource,
        retry_number: int,
        host: HostIdentity,
        triggered_by_user: Optional[str] = None,
    ) -> JobExecution:
        query = """
            INSERT INTO job_executions (
                job_id, started_at, status, triggered_by, triggered_by_user,
                retry_number, host_name, process_id
            ) VALUES ($1, now(), 'running', $2, $3, $4, $5, $6)
            RETURNING *, (SELECT job_name FROM scheduled_jobs WHERE id = $1) AS job_name
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query,
                job_id,
                triggered_by.value,
                triggered_by_user,
                retry_number,
                host.host_name,
                host.process_id,
            )
        return self._row_to_execution(row)

    async def record_execution_end(
        self, execution_id: str, outcome: ExecutionOutcome
    ) -> Optional[JobExecution]:
        """Write the terminal state. Already-terminal executions are left untouched."""
        query = """
            UPDATE job_executions je SET
                status = $2,
                result = $3::jsonb,
                error_message = $4,
                error_stack = $5,
                completed_at = $6,
                duration_ms = $7
            FROM scheduled_jobs sj
            WHERE je.id = $1
              AND je.status = 'running'
              AND sj.id = je.job_id
            RETURNING je.*, sj.job_name
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query,
                execution_id,
                outcome.status.value,
                json.dumps(outcome.result) if outcome.result is not None else None,
                outcome.error_message,
                outcome.error_stack,
                outcome.completed_at,
                outcome.duration_ms,
            )
        return self._row_to_execution(row) if row else None

    async def update_job_stats(
        self,
        job_id: str,
        status: ExecutionStatus,
        duration_ms: int,
        next_run_at: datetime,
        error_message: Optional[str] = None,
        ran_at: Optional[datetime] = None,
    ) -> None:
        query = """
            UPDATE scheduled_jobs SET
                last_run_at = COALESCE($6::timestamptz, now()),
                last_run_status = $2::text,
                last_run_duration_ms = $3,
                last_error = $4,
                next_run_at = $5,
                total_runs = total_runs + 1,
                successful_runs = successful_runs
                    + CASE WHEN $2::text = 'success' THEN 1 ELSE 0 END,
                failed_runs = failed_runs
                    + CASE WHEN $2::text <> 'success' THEN 1 ELSE 0 END,
                current_retry_count = CASE
                    WHEN $2::text = 'success' THEN 0 ELSE current_retry_count END,
                retry_at = CASE WHEN $2::text = 'success' THEN NULL ELSE retry_at END,
                updated_at = now()
            WHERE id = $1
        """
        async with self._pool.acquire() as conn:
            await conn.execute(
                query,
                job_id,
                status.value,
                duration_ms,
                error_message,
                next_run_at,
                ran_at,
            )

    async def schedule_retry(
        self, job_id: str, retry_number: int, retry_at: datetime
    ) -> None:
        query = """
            UPDATE scheduled_jobs SET
                current_retry_count = $2,
                retry_at = $3,
                updated_at = now()
            WHERE id = $1
        """
        async with self._pool.acquire() as conn:
            await conn.execute(query, job_id, retry_number, retry_at)

    async def claim_retry(self, job_id: str, retry_number: int) -> bool:
        """Take a pending retry. Exactly one concurrent caller sees True."""
        query = """
            UPDATE scheduled_jobs SET
                retry_at = NULL,
                updated_at = now()
            WHERE id = $1
              AND retry_at IS NOT NULL
              AND current_retry_count = $2
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job_id, retry_number)
        return row is not None

    async def list_executions(
        self, job_name: Optional[str] = None, limit: int = 20
    ) -> list[JobExecution]:
        conditions = []
        params: list[Any] = []
        param_idx = 1

        if job_name:
            conditions.append(f"sj.job_name = ${param_idx}")
            params.append(job_name)
            param_idx += 1

        where_clause = " AND ".join(conditions) if conditions else "TRUE"

        query = f"""
            SELECT je.*, sj.job_name
            FROM job_executions je
            JOIN scheduled_jobs sj ON je.job_id = sj.id
            WHERE {where_clause}
            ORDER BY je.started_at DESC, je.id DESC
            LIMIT ${param_idx}
        """
        params.append(limit)

        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [self._row_to_execution(r) for r in rows]

    async def count_executions(
        self, status: ExecutionStatus, since: Optional[datetime] = None
    ) -> int:
        query = """
            SELECT COUNT(*) FROM job_executions
            WHERE status = $1
              AND ($2::timestamptz IS NULL OR started_at >= $2)
        """
        async with self._pool.acquire() as conn:
            count = await conn.fetchval(query, status.value, since)
        return int(count or 0)

    async def get_job_statistics(
        self,
        job_id: Optional[str] = None,
        window_hours: int = 24,
        now: Optional[datetime] = None,
    ) -> list[JobStatistics]:
        """Per-job execution figures for runs started inside the window.

        Jobs with no executions in the window are included with zeros.
        """
        query = """
            SELECT
                sj.id AS job_id,
                sj.job_name,
                COUNT(je.id) AS total_executions,
                COUNT(je.id) FILTER (WHERE je.status = 'success') AS successful_executions,
                COUNT(je.id) FILTER (WHERE je.status = 'failed') AS failed_executions,
                AVG(je.duration_ms)::float AS avg_duration_ms,
                MIN(je.duration_ms) AS min_duration_ms,
                MAX(je.duration_ms) AS max_duration_ms,
                CASE
                    WHEN COUNT(je.id) > 0 THEN
                        COUNT(je.id) FILTER (WHERE je.status = 'success')::float
                        / COUNT(je.id)::float * 100
                    ELSE 0
                END AS success_rate
            FROM scheduled_jobs sj
            LEFT JOIN job_executions je ON sj.id = je.job_id
                AND je.started_at >= COALESCE($3::timestamptz, now())
                    - ($2::int * interval '1 hour')
            WHERE ($1::text IS NULL OR sj.id = $1)
            GROUP BY sj.id, sj.job_name
            ORDER BY sj.job_name
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, job_id, window_hours, now)

        return [
            JobStatistics(
                job_id=str(r["job_id"]),
                job_name=r["job_name"],
                total_executions=int(r["total_executions"]),
                successful_executions=int(r["successful_executions"]),
                failed_executions=int(r["failed_executions"]),
                avg_duration_ms=float(r["avg_duration_ms"])
                if r["avg_duration_ms"] is not None
                else None,
                min_duration_ms=r["min_duration_ms"],
                max_duration_ms=r["max_duration_ms"],
                success_rate=round(float(r["success_rate"] or 0), 2),
            )
            for r in rows
        ]

    async def delete_executions_before(self, cutoff: datetime) -> int:
        query = """
            DELETE FROM job_executions
            WHERE started_at < $1
              AND status <> 'running'
        """
        async with self._pool.acquire() as conn:
            result = await conn.execute(query, cutoff)
        return _count(result)

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    async def try_acquire_lock(
        self, job_name: str, owner: str, lease_ms: int
    ) -> bool:
        query = """
            UPDATE scheduled_jobs SET
                locked_by = $2,
                lock_expires_at = now() + ($3::int * interval '1 millisecond')
            WHERE job_name = $1
              AND (
                  lock_expires_at IS NULL
                  OR lock_expires_at <= now()
                  OR locked_by = $2
              )
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job_name, owner, lease_ms)
        return row is not None

    async def release_lock(self, job_name: str, owner: str) -> bool:
        query = """
            UPDATE scheduled_jobs SET
                locked_by = NULL,
                lock_expires_at = NULL
            WHERE job_name = $1 AND locked_by = $2
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job_name, owner)
        return row is not None

    async def extend_lock(self, job_name: str, owner: str, extension_ms: int) -> bool:
        query = """
            UPDATE scheduled_jobs SET
                lock_expires_at = now() + ($3::int * interval '1 millisecond')
            WHERE job_name = $1 AND locked_by = $2
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job_name, owner, extension_ms)
        return row is not None

    async def clear_expired_locks(self) -> int:
        query = """
            UPDATE scheduled_jobs SET
                locked_by = NULL,
                lock_expires_at = NULL
            WHERE lock_expires_at < now()
        """
        async with self._pool.acquire() as conn:
            result = await conn.execute(query)
        return _count(result)

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _row_to_job(self, row) -> ScheduledJob:
        """Convert a database row to a ScheduledJob model."""
        return ScheduledJob(
            id=str(row["id"]),
            job_name=row["job_name"],
            cron_expression=row["cron_expression"],
            handler_service=row["handler_service"],
            handler_method=row["handler_method"],
            config=_json_field(row["config"]),
            timezone=row["timezone"] or "UTC",
            job_type=JobType(row["job_type"]),
            description=row["description"],
            is_active=row["is_active"],
            is_system_job=row["is_system_job"],
            priority=row["priority"],
            tags=list(row["tags"] or []),
            max_retries=row["max_retries"],
            retry_delay_ms=row["retry_delay_ms"],
            current_retry_count=row["current_retry_count"],
            retry_at=row["retry_at"],
            next_run_at=row["next_run_at"],
            last_run_at=row["last_run_at"],
            last_run_status=ExecutionStatus(row["last_run_status"])
            if row["last_run_status"]
            else None,
            last_run_duration_ms=row["last_run_duration_ms"],
            last_error=row["last_error"],
            total_runs=row["total_runs"],
            successful_runs=row["successful_runs"],
            failed_runs=row["failed_runs"],
            locked_by=row["locked_by"],
            lock_expires_at=row["lock_expires_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_execution(self, row) -> JobExecution:
        """Convert a database row to a JobExecution model."""
        return JobExecution(
            id=str(row["id"]),
            job_id=str(row["job_id"]),
            job_name=row["job_name"],
            status=ExecutionStatus(row["status"]),
            triggered_by=TriggerSource(row["triggered_by"]),
            triggered_by_user=row["triggered_by_user"],
            retry_number=row["retry_number"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            duration_ms=row["duration_ms"],
            result=_json_field(row["result"]) if row["result"] is not None else None,
            error_message=row["error_message"],
            error_stack=row["error_stack"],
            host_name=row["host_name"],
            process_id=row["process_id"],
        )
