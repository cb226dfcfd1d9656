"""FastAPI dependencies for auth."""

from jobscheduler.deps.security import require_admin_token

__all__ = ["require_admin_token"]
