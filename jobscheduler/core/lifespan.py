"""Application lifespan: database pool, job store and scheduler wiring."""

import traceback
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import asyncpg
import structlog
from fastapi import FastAPI

from jobscheduler import __version__
from jobscheduler.config import Settings, get_settings
from jobscheduler.jobs.registry import HandlerRegistry
from jobscheduler.repositories.base import JobStore
from jobscheduler.repositories.memory import InMemoryJobStore
from jobscheduler.repositories.scheduled_jobs import PostgresJobStore
from jobscheduler.routers.jobs import set_scheduler
from jobscheduler.services.jobs.scheduler import JobSchedulerService

logger = structlog.get_logger(__name__)

# Global state for lifespan-managed resources
_db_pool: Optional[asyncpg.Pool] = None
_scheduler: Optional[JobSchedulerService] = None


def get_db_pool() -> Optional[asyncpg.Pool]:
    """Get the database connection pool."""
    return _db_pool


def get_scheduler() -> Optional[JobSchedulerService]:
    """Get the scheduler service."""
    return _scheduler


async def _init_database(settings: Settings) -> Optional[asyncpg.Pool]:
    """Create the asyncpg pool, or None when no database is configured or reachable."""
    if not settings.database_url:
        logger.warning(
            "Database connection not configured. Set DATABASE_URL in .env; "
            "falling back to the in-memory job store"
        )
        return None

    try:
        pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            ssl="require" if settings.database_ssl else None,
            timeout=10,
            command_timeout=30,
        )
    except Exception as e:
        logger.error(
            "Failed to initialize database pool - falling back to the in-memory job store",
            error=str(e),
            traceback=traceback.format_exc(),
        )
        return None

    logger.info(
        "Database pool initialized",
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
    )
    return pool


def _build_store(pool: Optional[asyncpg.Pool]) -> JobStore:
    if pool is None:
        return InMemoryJobStore()
    return PostgresJobStore(pool)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    global _db_pool, _scheduler

    settings = get_settings()
    logger.info(
        "Starting job scheduler service",
        version=__version__,
        host=settings.service_host,
        port=settings.service_port,
        scheduler_enabled=settings.scheduler_enabled,
    )

    _db_pool = await _init_database(settings)

    registry = getattr(app.state, "handler_registry", None)
    if registry is None:
        registry = HandlerRegistry()
    _scheduler = JobSchedulerService(
        _build_store(_db_pool), registry, settings=settings
    )
    set_scheduler(_scheduler)

    if settings.scheduler_register_system_jobs:
        await _scheduler.register_system_jobs()

    if settings.scheduler_enabled:
        await _scheduler.initialize_next_run_times()
        await _scheduler.start()
    else:
        logger.info("Scheduler loop disabled (SCHEDULER_ENABLED=false)")

    yield

    logger.info("Shutting down job scheduler service")

    # Stop the loop and drain runs before the pool closes
    if _scheduler:
        await _scheduler.stop()
        set_scheduler(None)
        _scheduler = None

    if _db_pool:
        await _db_pool.close()
        _db_pool = None
        logger.info("Database pool closed")
