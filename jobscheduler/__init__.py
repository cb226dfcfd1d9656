"""Practice Job Scheduler

Recurring job scheduler for the practice-management backend: cron
evaluation, lease-based job locking across instances, retries, timeouts
and execution history.
"""

__version__ = "0.1.0"
