"""Tests for scheduled job endpoints (observability and control plane)."""

import os
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from jobscheduler.jobs.errors import (
    InvalidCronExpressionError,
    InvalidJobDefinitionError,
    JobNotFoundError,
)
from jobscheduler.jobs.models import (
    JobExecution,
    JobStatistics,
    ScheduledJob,
    SchedulerDashboard,
)
from jobscheduler.jobs.types import ExecutionStatus, JobType, TriggerSource

# Set required environment variables for tests before importing app
os.environ.setdefault("ADMIN_TOKEN", "test-token")

NOW = datetime(2024, 1, 15, 2, 0, tzinfo=timezone.utc)
HEADERS = {"X-Admin-Token": "test-token"}


def make_job(name="daily-report", **overrides) -> ScheduledJob:
    fields = {
        "id": "job-1",
        "job_name": name,
        "cron_expression": "0 9 * * 1-5",
        "handler_service": "reports",
        "handler_method": "generateDaily",
        "next_run_at": NOW,
    }
    fields.update(overrides)
    return ScheduledJob(**fields)


def make_execution(status=ExecutionStatus.SUCCESS, **overrides) -> JobExecution:
    fields = {
        "id": "exec-1",
        "job_id": "job-1",
        "job_name": "daily-report",
        "status": status,
        "triggered_by": TriggerSource.MANUAL,
        "started_at": NOW,
        "completed_at": NOW,
        "duration_ms": 12,
        "result": {"rows": 3},
    }
    fields.update(overrides)
    return JobExecution(**fields)


@pytest.fixture
def mock_scheduler():
    """Scheduler service with async methods mocked."""
    scheduler = MagicMock()
    scheduler.list_jobs = AsyncMock(return_value=[make_job()])
    scheduler.get_job_status = AsyncMock(return_value=make_job())
    scheduler.get_job_history = AsyncMock(return_value=[make_execution()])
    scheduler.get_recent_executions = AsyncMock(return_value=[make_execution()])
    scheduler.register_job = AsyncMock(return_value=make_job())
    scheduler.run_job = AsyncMock(return_value=make_execution())
    scheduler.pause_job = AsyncMock(return_value=None)
    scheduler.resume_job = AsyncMock(return_value=None)
    scheduler.get_job_statistics = AsyncMock(
        return_value=[JobStatistics(job_id="job-1", job_name="daily-report")]
    )
    scheduler.get_dashboard = AsyncMock(
        return_value=SchedulerDashboard(
            jobs=[make_job()],
            recent_executions=[make_execution()],
            statistics=[],
            running_count=0,
            failed_last_24h=2,
        )
    )
    return scheduler


@pytest.fixture
def client(mock_scheduler, monkeypatch):
    """Create test client with the mock scheduler installed."""
    from jobscheduler.main import app
    from jobscheduler.routers.jobs import set_scheduler

    monkeypatch.setenv("ADMIN_TOKEN", "test-token")
    set_scheduler(mock_scheduler)
    yield TestClient(app)
    set_scheduler(None)


class TestAuth:
    """Admin token enforcement."""

    def test_missing_token_returns_401(self, client):
        response = client.get("/jobs")
        assert response.status_code == 401

    def test_wrong_token_returns_403(self, client):
        response = client.get("/jobs", headers={"X-Admin-Token": "wrong"})
        assert response.status_code == 403

    def test_unconfigured_token_returns_403(self, client, monkeypatch):
        monkeypatch.delenv("ADMIN_TOKEN")
        monkeypatch.delenv("ALLOW_LOCALHOST_ADMIN", raising=False)
        response = client.get("/jobs", headers=HEADERS)
        assert response.status_code == 403


class TestSchedulerUnavailable:
    def test_returns_503_without_scheduler(self, client):
        from jobscheduler.routers.jobs import set_scheduler

        set_scheduler(None)
        response = client.get("/jobs", headers=HEADERS)
        assert response.status_code == 503


class TestObservability:
    def test_list_jobs(self, client, mock_scheduler):
        response = client.get("/jobs?active_only=true&tag=reports", headers=HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["jobs"][0]["job_name"] == "daily-report"
        assert data["jobs"][0]["schedule"] == "at 9:00 AM on Monday through Friday"
        mock_scheduler.list_jobs.assert_awaited_once_with(active_only=True, tag="reports")

    def test_get_job(self, client):
        response = client.get("/jobs/daily-report", headers=HEADERS)
        assert response.status_code == 200
        assert response.json()["next_run_at"] == NOW.isoformat()

    def test_get_job_not_found(self, client, mock_scheduler):
        mock_scheduler.get_job_status.return_value = None
        response = client.get("/jobs/missing", headers=HEADERS)
        assert response.status_code == 404

    def test_history(self, client, mock_scheduler):
        response = client.get("/jobs/daily-report/history?limit=5", headers=HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["executions"][0]["status"] == "success"
        mock_scheduler.get_job_history.assert_awaited_once_with("daily-report", limit=5)

    def test_history_limit_bounds(self, client):
        response = client.get("/jobs/daily-report/history?limit=1000", headers=HEADERS)
        assert response.status_code == 422

    def test_history_unknown_job(self, client, mock_scheduler):
        mock_scheduler.get_job_status.return_value = None
        response = client.get("/jobs/missing/history", headers=HEADERS)
        assert response.status_code == 404

    def test_dashboard(self, client):
        response = client.get("/jobs/dashboard", headers=HEADERS)
        assert response.status_code == 200
        data = response.json()
        assert data["failed_last_24h"] == 2
        assert data["jobs"][0]["job_name"] == "daily-report"

    def test_statistics(self, client, mock_scheduler):
        response = client.get("/jobs/statistics?hours=48&job_id=job-1", headers=HEADERS)
        assert response.status_code == 200
        assert response.json()["window_hours"] == 48
        mock_scheduler.get_job_statistics.assert_awaited_once_with(
            job_id="job-1", window_hours=48
        )


class TestControlPlane:
    def test_run_job(self, client, mock_scheduler):
        response = client.post(
            "/jobs/daily-report/run",
            json={"triggered_by_user": "ops@example.com"},
            headers=HEADERS,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "success"
        mock_scheduler.run_job.assert_awaited_once_with(
            "daily-report", triggered_by_user="ops@example.com"
        )

    def test_run_job_without_body(self, client, mock_scheduler):
        response = client.post("/jobs/daily-report/run", headers=HEADERS)
        assert response.status_code == 200
        mock_scheduler.run_job.assert_awaited_once_with("daily-report", triggered_by_user=None)

    def test_run_job_failed_attempt_is_200(self, client, mock_scheduler):
        mock_scheduler.run_job.return_value = make_execution(
            ExecutionStatus.FAILED, error_message="boom", result=None
        )
        response = client.post("/jobs/daily-report/run", headers=HEADERS)
        assert response.status_code == 200
        assert response.json()["error_message"] == "boom"

    def test_run_job_lock_held_returns_409(self, client, mock_scheduler):
        mock_scheduler.run_job.return_value = make_execution(
            ExecutionStatus.CANCELLED, error_message="lock not acquired", result=None
        )
        response = client.post("/jobs/daily-report/run", headers=HEADERS)
        assert response.status_code == 409
        assert response.json()["detail"]["error_message"] == "lock not acquired"

    def test_run_job_not_found(self, client, mock_scheduler):
        mock_scheduler.run_job.side_effect = JobNotFoundError("missing")
        response = client.post("/jobs/missing/run", headers=HEADERS)
        assert response.status_code == 404

    def test_pause(self, client, mock_scheduler):
        response = client.post("/jobs/daily-report/pause", headers=HEADERS)
        assert response.status_code == 200
        assert response.json() == {"job_name": "daily-report", "is_active": False}
        mock_scheduler.pause_job.assert_awaited_once_with("daily-report")

    def test_pause_not_found(self, client, mock_scheduler):
        mock_scheduler.pause_job.side_effect = JobNotFoundError("missing")
        response = client.post("/jobs/missing/pause", headers=HEADERS)
        assert response.status_code == 404

    def test_resume(self, client):
        response = client.post("/jobs/daily-report/resume", headers=HEADERS)
        assert response.status_code == 200
        data = response.json()
        assert data["is_active"] is True
        assert data["next_run_at"] == NOW.isoformat()


class TestRecentExecutions:
    def test_recent_executions(self, client, mock_scheduler):
        response = client.get("/jobs/executions?limit=10", headers=HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["executions"][0]["job_name"] == "daily-report"
        mock_scheduler.get_recent_executions.assert_awaited_once_with(limit=10)
        mock_scheduler.get_job_status.assert_not_called()

    def test_recent_executions_default_limit(self, client, mock_scheduler):
        client.get("/jobs/executions", headers=HEADERS)
        mock_scheduler.get_recent_executions.assert_awaited_once_with(limit=50)

    def test_recent_executions_limit_bounds(self, client):
        response = client.get("/jobs/executions?limit=500", headers=HEADERS)
        assert response.status_code == 422


class TestRegisterJobEndpoint:
    def test_register_job(self, client, mock_scheduler):
        response = client.post(
            "/jobs",
            json={
                "job_name": "daily-report",
                "cron_expression": "0 9 * * 1-5",
                "handler_service": "reports",
                "handler_method": "generateDaily",
                "job_type": "daily",
                "config": {"timeoutMs": 1000},
                "max_retries": 2,
                "tags": ["reports"],
                "timezone": "UTC",
            },
            headers=HEADERS,
        )

        assert response.status_code == 201
        data = response.json()
        assert data["message"] == "Job registered successfully"
        assert data["job"]["job_name"] == "daily-report"
        assert data["job"]["cron_description"] == "at 9:00 AM on Monday through Friday"

        args, kwargs = mock_scheduler.register_job.call_args
        assert args == ("daily-report", "0 9 * * 1-5", "reports", "generateDaily")
        assert kwargs["job_type"] == JobType.DAILY
        assert kwargs["config"] == {"timeoutMs": 1000}
        assert kwargs["max_retries"] == 2
        assert kwargs["retry_delay_ms"] is None
        assert kwargs["priority"] == 5
        assert kwargs["tags"] == ["reports"]
        assert kwargs["timezone"] == "UTC"

    def test_missing_fields_returns_400(self, client, mock_scheduler):
        response = client.post(
            "/jobs",
            json={"job_name": "daily-report", "handler_service": "reports"},
            headers=HEADERS,
        )

        assert response.status_code == 400
        assert response.json()["detail"] == (
            "Missing required fields: cron_expression, handler_method"
        )
        mock_scheduler.register_job.assert_not_called()

    def test_invalid_cron_returns_400(self, client, mock_scheduler):
        mock_scheduler.register_job.side_effect = InvalidCronExpressionError(
            "61 * * * *", "minute value 61 out of range 0-59"
        )
        response = client.post(
            "/jobs",
            json={
                "job_name": "bad",
                "cron_expression": "61 * * * *",
                "handler_service": "reports",
                "handler_method": "generateDaily",
            },
            headers=HEADERS,
        )

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["error"] == "Invalid cron expression"
        assert detail["cron_expression"] == "61 * * * *"

    def test_invalid_timezone_returns_400(self, client, mock_scheduler):
        mock_scheduler.register_job.side_effect = InvalidJobDefinitionError(
            "Unknown timezone: Mars/Base"
        )
        response = client.post(
            "/jobs",
            json={
                "job_name": "bad",
                "cron_expression": "0 9 * * *",
                "handler_service": "reports",
                "handler_method": "generateDaily",
                "timezone": "Mars/Base",
            },
            headers=HEADERS,
        )

        assert response.status_code == 400
        assert "Unknown timezone" in response.json()["detail"]

    def test_register_requires_token(self, client):
        response = client.post("/jobs", json={})
        assert response.status_code == 401


class TestCronUtilities:
    def test_validate_returns_next_runs(self, client):
        response = client.post(
            "/jobs/cron/validate",
            json={"expression": "*/15 * * * *", "timezone": "UTC"},
            headers=HEADERS,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["valid"] is True
        assert data["description"] == "every 15 minutes"
        runs = [datetime.fromisoformat(r) for r in data["next_runs"]]
        assert len(runs) == 5
        assert all(r.minute % 15 == 0 for r in runs)
        assert all(b - a == timedelta(minutes=15) for a, b in zip(runs, runs[1:]))

    def test_validate_invalid_expression(self, client):
        response = client.post(
            "/jobs/cron/validate", json={"expression": "0 9 * *"}, headers=HEADERS
        )

        assert response.status_code == 200
        data = response.json()
        assert data["valid"] is False
        assert "Invalid cron expression" in data["error"]

    def test_validate_unknown_timezone(self, client):
        response = client.post(
            "/jobs/cron/validate",
            json={"expression": "0 9 * * *", "timezone": "Mars/Base"},
            headers=HEADERS,
        )
        assert response.json()["valid"] is False

    def test_validate_requires_expression(self, client):
        response = client.post("/jobs/cron/validate", json={}, headers=HEADERS)
        assert response.status_code == 400

    def test_validate_works_without_scheduler(self, client):
        from jobscheduler.routers.jobs import set_scheduler

        set_scheduler(None)
        response = client.post(
            "/jobs/cron/validate", json={"expression": "0 9 * * *"}, headers=HEADERS
        )
        assert response.status_code == 200
        assert response.json()["valid"] is True

    def test_examples(self, client, mock_scheduler):
        response = client.get("/jobs/cron/examples", headers=HEADERS)

        assert response.status_code == 200
        examples = response.json()["examples"]
        assert len(examples) == 10
        assert {"expression": "*/15 * * * *", "description": "Every 15 minutes"} in examples
        mock_scheduler.get_job_status.assert_not_called()


class TestMetricsEndpoint:
    def test_metrics_exposed(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "scheduler_job_executions_total" in response.text

    def test_root(self, client):
        response = client.get("/")
        assert response.json()["service"] == "jobscheduler"
