"""Unit tests for the job scheduler facade."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from jobscheduler.config import Settings
from jobscheduler.jobs.errors import (
    InvalidCronExpressionError,
    InvalidJobDefinitionError,
    JobNotFoundError,
    SystemJobProtectedError,
)
from jobscheduler.jobs.types import ExecutionStatus, JobType, TriggerSource
from jobscheduler.repositories.memory import InMemoryJobStore
from jobscheduler.services.jobs.scheduler import JobSchedulerService


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def settings():
    return Settings(
        scheduler_poll_interval_s=60,
        scheduler_default_timeout_ms=2_000,
        scheduler_default_retry_delay_ms=0,
        scheduler_execution_retention_days=7,
    )


@pytest.fixture
def store(clock):
    return InMemoryJobStore(clock=clock)


@pytest.fixture
def scheduler(store, settings, clock):
    return JobSchedulerService(
        store, settings=settings, instance_id="host-a:1:aaaa", clock=clock
    )


async def ok_handler(config, ctx):
    return {"ok": True}


async def failing_handler(config, ctx):
    raise RuntimeError("broken")


class TestRegisterJob:
    """Job registration and validation."""

    @pytest.mark.asyncio
    async def test_register_computes_next_run(self, scheduler):
        job = await scheduler.register_job(
            "nightly-cleanup", "0 2 * * *", "maintenance", "cleanup", timezone="UTC"
        )
        assert job.next_run_at == utc(2024, 1, 15, 2, 0)
        assert job.is_active is True
        assert job.timezone == "UTC"

    @pytest.mark.asyncio
    async def test_default_timezone_is_new_york(self, scheduler):
        job = await scheduler.register_job("morning", "0 9 * * *", "reports", "run")
        assert job.timezone == "America/New_York"
        assert job.next_run_at == utc(2024, 1, 15, 14, 0)

    @pytest.mark.asyncio
    async def test_settings_defaults_applied(self, scheduler):
        job = await scheduler.register_job("morning", "0 9 * * *", "reports", "run")
        assert job.max_retries == 3
        assert job.retry_delay_ms == 0
        assert job.priority == 5

    @pytest.mark.asyncio
    async def test_invalid_cron_rejected(self, scheduler, store):
        with pytest.raises(InvalidCronExpressionError):
            await scheduler.register_job("bad", "61 * * * *", "reports", "run")
        assert await store.get_job("bad") is None

    @pytest.mark.asyncio
    async def test_unknown_timezone_rejected(self, scheduler):
        with pytest.raises(InvalidJobDefinitionError, match="Unknown timezone"):
            await scheduler.register_job(
                "bad", "0 9 * * *", "reports", "run", timezone="Mars/Base"
            )

    @pytest.mark.asyncio
    async def test_negative_retry_settings_rejected(self, scheduler):
        with pytest.raises(InvalidJobDefinitionError):
            await scheduler.register_job("bad", "0 9 * * *", "reports", "run", max_retries=-1)

    def test_register_handler_binds_registry(self, scheduler):
        scheduler.register_handler("reports", "generateDaily", ok_handler)

        assert ("reports", "generateDaily") in scheduler.registry
        assert scheduler.registry.get_handler("reports", "generateDaily") is ok_handler

    @pytest.mark.asyncio
    async def test_register_is_idempotent_and_keeps_counters(self, scheduler):
        scheduler.register_handler("reports", "run", ok_handler)
        first = await scheduler.register_job("report", "0 9 * * *", "reports", "run")
        await scheduler.run_job("report")

        second = await scheduler.register_job(
            "report", "30 9 * * *", "reports", "run", description="updated"
        )

        assert second.id == first.id
        assert second.cron_expression == "30 9 * * *"
        assert second.description == "updated"
        assert second.total_runs == 1
        assert len(await scheduler.list_jobs()) == 1


class TestScheduling:
    """Polling loop integration with a controllable clock."""

    @pytest.mark.asyncio
    async def test_due_at_two_not_before(self, scheduler, clock):
        scheduler.register_handler("maintenance", "cleanup", ok_handler)
        await scheduler.register_job(
            "nightly-cleanup", "0 2 * * *", "maintenance", "cleanup", timezone="UTC"
        )

        clock.set(utc(2024, 1, 15, 1, 59))
        result = await scheduler.loop.run_once()
        assert result.jobs_due == 0

        clock.set(utc(2024, 1, 15, 2, 0))
        result = await scheduler.loop.run_once()
        assert result.jobs_dispatched == ["nightly-cleanup"]
        await scheduler.engine.wait_idle()

        history = await scheduler.get_job_history("nightly-cleanup")
        assert len(history) == 1
        assert history[0].status == ExecutionStatus.SUCCESS
        assert history[0].triggered_by == TriggerSource.SCHEDULER

        job = await scheduler.get_job_status("nightly-cleanup")
        assert job.next_run_at == utc(2024, 1, 16, 2, 0)
        assert job.last_run_at == utc(2024, 1, 15, 2, 0)

        # Same minute again: nothing is due
        result = await scheduler.loop.run_once()
        assert result.jobs_due == 0

    @pytest.mark.asyncio
    async def test_paused_job_not_dispatched(self, scheduler, clock):
        await scheduler.register_job("report", "0 2 * * *", "reports", "run", timezone="UTC")
        await scheduler.pause_job("report")

        clock.set(utc(2024, 1, 15, 2, 0))
        result = await scheduler.loop.run_once()
        assert result.jobs_due == 0
        assert (await scheduler.get_job_status("report")).is_active is False

    @pytest.mark.asyncio
    async def test_resume_recomputes_next_run_from_now(self, scheduler, clock):
        await scheduler.register_job("report", "0 2 * * *", "reports", "run", timezone="UTC")
        await scheduler.pause_job("report")

        clock.set(utc(2024, 1, 15, 3, 0))
        await scheduler.resume_job("report")

        job = await scheduler.get_job_status("report")
        assert job.is_active is True
        assert job.next_run_at == utc(2024, 1, 16, 2, 0)

    @pytest.mark.asyncio
    async def test_initialize_next_run_times_skips_missed_occurrences(
        self, scheduler, store, clock
    ):
        await scheduler.register_job(
            "nightly-cleanup", "0 2 * * *", "maintenance", "cleanup", timezone="UTC"
        )
        retrying = await scheduler.register_job(
            "report", "0 9 * * *", "reports", "run", timezone="UTC"
        )
        await store.schedule_retry(retrying.id, 1, utc(2024, 1, 18, 5, 1))

        # Service was down for three days
        clock.set(utc(2024, 1, 18, 5, 0))
        assert await scheduler.initialize_next_run_times() == 1

        cleanup = await scheduler.get_job_status("nightly-cleanup")
        assert cleanup.next_run_at == utc(2024, 1, 19, 2, 0)

        report = await scheduler.get_job_status("report")
        assert report.next_run_at == utc(2024, 1, 15, 9, 0)
        assert report.retry_at == utc(2024, 1, 18, 5, 1)

        # Only the job with a pending retry keeps its stale occurrence
        due = await store.get_due_jobs(10)
        assert [j.job_name for j in due] == ["report"]

    @pytest.mark.asyncio
    async def test_initialize_next_run_times_store_error(self, scheduler, store):
        store.list_overdue_jobs = AsyncMock(side_effect=RuntimeError("db down"))
        assert await scheduler.initialize_next_run_times() == 0

    @pytest.mark.asyncio
    async def test_start_and_stop(self, scheduler):
        await scheduler.start()
        assert scheduler.is_running is True
        await scheduler.stop(timeout=1)
        assert scheduler.is_running is False


class TestControl:
    """Manual runs, pause, resume and delete."""

    @pytest.mark.asyncio
    async def test_run_job_manual(self, scheduler):
        scheduler.register_handler("reports", "run", ok_handler)
        await scheduler.register_job("report", "0 9 * * *", "reports", "run")

        execution = await scheduler.run_job("report", triggered_by_user="ops")

        assert execution.status == ExecutionStatus.SUCCESS
        assert execution.triggered_by == TriggerSource.MANUAL
        assert execution.triggered_by_user == "ops"
        assert execution.result == {"ok": True}

    @pytest.mark.asyncio
    async def test_run_job_without_handler_fails_cleanly(self, scheduler):
        await scheduler.register_job(
            "report", "0 9 * * *", "reports", "missing", max_retries=0
        )
        execution = await scheduler.run_job("report")
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error_message == "Handler not found: reports.missing"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("operation", ["run_job", "pause_job", "resume_job", "delete_job"])
    async def test_unknown_job(self, scheduler, operation):
        with pytest.raises(JobNotFoundError):
            await getattr(scheduler, operation)("missing")

    @pytest.mark.asyncio
    async def test_delete_job(self, scheduler):
        await scheduler.register_job("report", "0 9 * * *", "reports", "run")
        await scheduler.delete_job("report")
        assert await scheduler.get_job_status("report") is None

    @pytest.mark.asyncio
    async def test_system_job_delete_protected(self, scheduler):
        await scheduler.register_system_jobs()
        with pytest.raises(SystemJobProtectedError):
            await scheduler.delete_job("system-cleanup-locks")

        await scheduler.delete_job("system-cleanup-locks", force=True)
        assert await scheduler.get_job_status("system-cleanup-locks") is None


class TestSystemJobs:
    @pytest.mark.asyncio
    async def test_register_system_jobs(self, scheduler):
        jobs = await scheduler.register_system_jobs()

        names = {j.job_name for j in jobs}
        assert names == {"system-cleanup-executions", "system-cleanup-locks"}
        assert all(j.is_system_job for j in jobs)
        assert all(j.tags == ["system"] for j in jobs)
        assert ("scheduler", "cleanupExecutions") in scheduler.registry
        assert ("scheduler", "cleanupExpiredLocks") in scheduler.registry

        cleanup = await scheduler.get_job_status("system-cleanup-executions")
        assert cleanup.config == {"retentionDays": 7}
        assert cleanup.job_type == JobType.DAILY

    @pytest.mark.asyncio
    async def test_cleanup_job_runs(self, scheduler, clock):
        scheduler.register_handler("reports", "run", ok_handler)
        await scheduler.register_job("report", "0 9 * * *", "reports", "run")
        await scheduler.run_job("report")
        await scheduler.register_system_jobs()

        clock.advance(days=8)
        execution = await scheduler.run_job("system-cleanup-executions")

        assert execution.status == ExecutionStatus.SUCCESS
        assert execution.result == {"deleted": 1, "retention_days": 7}
        assert await scheduler.get_job_history("report") == []


class TestObservability:
    @pytest.mark.asyncio
    async def test_dashboard(self, scheduler):
        scheduler.register_handler("reports", "ok", ok_handler)
        scheduler.register_handler("reports", "fail", failing_handler)
        await scheduler.register_job("good", "0 9 * * *", "reports", "ok")
        await scheduler.register_job("bad", "0 9 * * *", "reports", "fail", max_retries=0)
        await scheduler.run_job("good")
        await scheduler.run_job("bad")

        dashboard = await scheduler.get_dashboard()

        assert {j.job_name for j in dashboard.jobs} == {"good", "bad"}
        assert len(dashboard.recent_executions) == 2
        assert dashboard.running_count == 0
        assert dashboard.failed_last_24h == 1
        stats = {s.job_name: s for s in dashboard.statistics}
        assert stats["good"].success_rate == 100.0
        assert stats["bad"].failed_executions == 1

    @pytest.mark.asyncio
    async def test_recent_executions_and_statistics(self, scheduler):
        scheduler.register_handler("reports", "ok", ok_handler)
        job = await scheduler.register_job("good", "0 9 * * *", "reports", "ok")
        await scheduler.run_job("good")
        await scheduler.run_job("good")

        assert len(await scheduler.get_recent_executions()) == 2
        stats = await scheduler.get_job_statistics(job_id=job.id)
        assert stats[0].total_executions == 2

    @pytest.mark.asyncio
    async def test_list_jobs_by_tag(self, scheduler):
        await scheduler.register_job("a", "0 9 * * *", "reports", "run", tags=["finance"])
        await scheduler.register_job("b", "0 9 * * *", "reports", "run")
        assert [j.job_name for j in await scheduler.list_jobs(tag="finance")] == ["a"]
