"""API routers for the job scheduler."""
