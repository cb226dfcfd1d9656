"""Root conftest for test suite.

Auto-skips slow tests and tests that need a live PostgreSQL.
Run explicitly with: pytest -m slow
                  or: DATABASE_URL=... pytest -m integration
"""

import os
from datetime import datetime, timedelta, timezone

import pytest


def pytest_collection_modifyitems(config, items):
    """Skip slow and integration tests unless explicitly requested.

    Integration tests also need DATABASE_URL pointing at a database with
    the migrations applied (scripts/apply_migrations.py).
    """
    markexpr = config.getoption("-m", default="")
    explicit_slow = "slow" in markexpr
    explicit_integration = "integration" in markexpr

    skip_slow = pytest.mark.skip(
        reason="slow tests skipped by default. Run with: pytest -m slow"
    )
    skip_integration = pytest.mark.skip(
        reason="integration tests need DATABASE_URL. Run with: pytest -m integration"
    )

    for item in items:
        if "slow" in item.keywords and not explicit_slow:
            item.add_marker(skip_slow)

        if "integration" in item.keywords and (
            not explicit_integration or not os.environ.get("DATABASE_URL")
        ):
            item.add_marker(skip_integration)


class FakeClock:
    """Settable clock passed wherever a component takes ``clock=``."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, ts: datetime) -> None:
        self.now = ts


@pytest.fixture
def clock():
    """Clock frozen at 2024-01-15 00:00 UTC (a Monday)."""
    return FakeClock(datetime(2024, 1, 15, 0, 0, tzinfo=timezone.utc))
