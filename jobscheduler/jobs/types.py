"""Job scheduler type definitions."""

from enum import Enum

DEFAULT_LOCK_LEASE_MS = 300_000
DEFAULT_TIMEOUT_MS = 300_000
DEFAULT_POLL_INTERVAL_S = 60.0
DEFAULT_BATCH_SIZE = 10

LOCK_NOT_ACQUIRED = "lock not acquired"
TIMEOUT_MESSAGE = "Job execution timeout"


class ExecutionStatus(str, Enum):
    """Execution attempt lifecycle statuses."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (execution won't change)."""
        return self is not ExecutionStatus.RUNNING


class TriggerSource(str, Enum):
    """What started an execution attempt."""

    SCHEDULER = "scheduler"
    MANUAL = "manual"
    RETRY = "retry"


class JobType(str, Enum):
    """Informational schedule category shown on the dashboard."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    CUSTOM = "custom"
