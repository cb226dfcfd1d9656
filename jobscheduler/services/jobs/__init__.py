"""Job execution services."""

from jobscheduler.services.jobs.locks import LockCoordinator
from jobscheduler.services.jobs.runner import ExecutionEngine, generate_instance_id

__all__ = ["LockCoordinator", "ExecutionEngine", "generate_instance_id"]
