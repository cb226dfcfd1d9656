"""Job scheduler - FastAPI application."""

from typing import Optional

import structlog
from fastapi import FastAPI

from jobscheduler import __version__
from jobscheduler.config import get_settings
from jobscheduler.core.lifespan import lifespan
from jobscheduler.core.sentry import init_sentry
from jobscheduler.jobs.registry import HandlerRegistry
from jobscheduler.routers import jobs, metrics

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)


def create_app(registry: Optional[HandlerRegistry] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        registry: Handlers for the application's jobs. The lifespan hands it
            to the scheduler before the loop starts, so every job registered
            at startup can be resolved.
    """
    init_sentry(get_settings())

    application = FastAPI(
        title="Job Scheduler",
        description="Recurring job scheduler with cron schedules, leases and retries",
        version=__version__,
        lifespan=lifespan,
    )
    application.state.handler_registry = registry if registry is not None else HandlerRegistry()

    application.include_router(jobs.router)
    application.include_router(metrics.router)

    @application.get("/")
    async def root():
        """Service info."""
        return {"service": "jobscheduler", "version": __version__}

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "jobscheduler.main:app",
        host=settings.service_host,
        port=settings.service_port,
        log_level=settings.log_level.lower(),
    )
