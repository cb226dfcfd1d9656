"""Scheduler exception hierarchy."""


class SchedulerError(Exception):
    """Base class for scheduler errors."""


class InvalidJobDefinitionError(SchedulerError, ValueError):
    """A job definition was rejected at registration time."""


class InvalidCronExpressionError(InvalidJobDefinitionError):
    """Cron expression could not be parsed."""

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Invalid cron expression: {expression!r} ({reason})")


class JobNotFoundError(SchedulerError, LookupError):
    """No job registered under the given name."""

    def __init__(self, job_name: str):
        self.job_name = job_name
        super().__init__(f"Job not found: {job_name}")


class HandlerNotFoundError(SchedulerError, KeyError):
    """No handler registered for a (service, method) pair."""

    def __init__(self, service_name: str, method_name: str):
        self.service_name = service_name
        self.method_name = method_name
        super().__init__(f"Handler not found: {service_name}.{method_name}")

    def __str__(self) -> str:
        return self.args[0]


class SystemJobProtectedError(SchedulerError):
    """Attempt to delete a built-in job without force."""

    def __init__(self, job_name: str):
        self.job_name = job_name
        super().__init__(f"System job cannot be deleted: {job_name}")
