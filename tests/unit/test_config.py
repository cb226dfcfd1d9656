"""Unit tests for jobscheduler.config module."""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError


def test_scheduler_defaults():
    """Test scheduler config defaults."""
    from jobscheduler.config import get_settings

    with patch.dict(os.environ, {}, clear=False):
        get_settings.cache_clear()
        settings = get_settings()

        assert settings.scheduler_poll_interval_s == 60.0
        assert settings.scheduler_batch_size == 10
        assert settings.scheduler_lock_lease_ms == 300_000
        assert settings.scheduler_default_timeout_ms == 300_000
        assert settings.scheduler_default_timezone == "America/New_York"
        assert settings.scheduler_default_max_retries == 3
        assert settings.scheduler_default_retry_delay_ms == 60_000
    get_settings.cache_clear()


def test_env_overrides():
    """Test environment variables override defaults."""
    from jobscheduler.config import get_settings

    with patch.dict(
        os.environ,
        {
            "SCHEDULER_POLL_INTERVAL_S": "5",
            "SCHEDULER_ENABLED": "false",
            "SCHEDULER_INSTANCE_ID": "worker-1",
            "DATABASE_URL": "postgresql://localhost/jobs",
        },
    ):
        get_settings.cache_clear()
        settings = get_settings()
        assert settings.scheduler_poll_interval_s == 5.0
        assert settings.scheduler_enabled is False
        assert settings.scheduler_instance_id == "worker-1"
        assert settings.database_url == "postgresql://localhost/jobs"
    get_settings.cache_clear()


def test_settings_cached():
    """Test get_settings returns the same instance until cleared."""
    from jobscheduler.config import get_settings

    get_settings.cache_clear()
    assert get_settings() is get_settings()
    get_settings.cache_clear()


def test_invalid_values_rejected():
    """Test bounds on scheduler settings."""
    from jobscheduler.config import Settings

    with pytest.raises(ValidationError):
        Settings(scheduler_batch_size=0)
    with pytest.raises(ValidationError):
        Settings(scheduler_default_max_retries=-1)
    with pytest.raises(ValidationError):
        Settings(sentry_traces_sample_rate=2.0)
