"""Recurring job scheduling: cron evaluation, handler registry and polling loop."""

from jobscheduler.jobs.cron import CronEvaluator, CronParts
from jobscheduler.jobs.errors import (
    HandlerNotFoundError,
    InvalidCronExpressionError,
    InvalidJobDefinitionError,
    JobNotFoundError,
    SchedulerError,
    SystemJobProtectedError,
)
from jobscheduler.jobs.models import (
    ExecutionContext,
    ExecutionOutcome,
    HostIdentity,
    JobDefinition,
    JobExecution,
    JobStatistics,
    ScheduledJob,
    SchedulerDashboard,
)
from jobscheduler.jobs.registry import HandlerRegistry, JobHandler
from jobscheduler.jobs.types import ExecutionStatus, JobType, TriggerSource

__all__ = [
    "CronEvaluator",
    "CronParts",
    "ExecutionContext",
    "ExecutionOutcome",
    "ExecutionStatus",
    "HandlerNotFoundError",
    "HandlerRegistry",
    "HostIdentity",
    "InvalidCronExpressionError",
    "InvalidJobDefinitionError",
    "JobDefinition",
    "JobExecution",
    "JobHandler",
    "JobNotFoundError",
    "JobStatistics",
    "JobType",
    "ScheduledJob",
    "SchedulerDashboard",
    "SchedulerError",
    "SystemJobProtectedError",
    "TriggerSource",
]
