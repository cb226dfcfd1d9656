"""Scheduler loop - polls the store for due jobs and dispatches them.

Every instance runs its own loop against the shared store. Due-job
selection may race between instances; the per-job lease taken by the
execution engine decides who actually runs.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog
from prometheus_client import Counter, Gauge

from jobscheduler.jobs.types import DEFAULT_BATCH_SIZE, DEFAULT_POLL_INTERVAL_S
from jobscheduler.repositories.base import JobStore
from jobscheduler.services.jobs.runner import ExecutionEngine
from jobscheduler.utils.time import utcnow

logger = structlog.get_logger(__name__)


# =============================================================================
# Prometheus Metrics
# =============================================================================

POLL_TICKS_TOTAL = Counter(
    "scheduler_poll_ticks_total",
    "Total scheduler poll ticks",
    ["status"],  # dispatched, idle, failure
)
POLL_JOBS_DISPATCHED_TOTAL = Counter(
    "scheduler_poll_jobs_dispatched_total",
    "Total due jobs handed to the execution engine",
)
POLL_DUE_COUNT = Gauge(
    "scheduler_poll_due_count",
    "Number of jobs found due on the last tick",
)
POLL_LAST_RUN_TIMESTAMP = Gauge(
    "scheduler_poll_last_run_timestamp",
    "Timestamp of last poll tick (unix seconds)",
)
POLL_ENABLED = Gauge(
    "scheduler_poll_enabled",
    "Whether the polling loop is running (1=running, 0=stopped)",
)


@dataclass
class TickResult:
    """Result of a single poll tick."""

    jobs_due: int = 0
    jobs_dispatched: list[str] = field(default_factory=list)
    duration_ms: int = 0


class SchedulerLoop:
    """
    Background poller that dispatches due jobs.

    Features:
    - Ticks once immediately on start, then every poll_interval_s
    - Fetches up to batch_size due jobs per tick
    - Dispatches each job without awaiting it
    - Tick errors are logged and never stop the loop
    - stop() ends polling but leaves in-flight runs alone
    """

    def __init__(
        self,
        store: JobStore,
        engine: ExecutionEngine,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        batch_size: int = DEFAULT_BATCH_SIZE,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._engine = engine
        self._poll_interval_s = poll_interval_s
        self._batch_size = batch_size
        self._clock = clock

        # Background task management
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._running = False

        # State tracking
        self._last_run_at: Optional[datetime] = None
        self._last_result: Optional[TickResult] = None

    @property
    def is_running(self) -> bool:
        """Check if the loop is currently running."""
        return self._running

    @property
    def last_run_at(self) -> Optional[datetime]:
        return self._last_run_at

    @property
    def last_result(self) -> Optional[TickResult]:
        return self._last_result

    async def start(self) -> None:
        """Start the polling background task."""
        if self._running:
            logger.warning("scheduler_loop_already_running")
            return

        logger.info(
            "scheduler_loop_started",
            instance_id=self._engine.instance_id,
            poll_interval_s=self._poll_interval_s,
            batch_size=self._batch_size,
        )

        POLL_ENABLED.set(1)
        self._stop_event.clear()
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())

    async def stop(self, timeout: float = 30.0) -> None:
        """
        Stop polling. Runs already dispatched keep going.

        Args:
            timeout: Max seconds to wait for a tick in progress to finish
        """
        if not self._running:
            return

        self._stop_event.set()

        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("scheduler_loop_stop_timeout")
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass

        self._task = None
        self._running = False
        POLL_ENABLED.set(0)
        logger.info("scheduler_loop_stopped", instance_id=self._engine.instance_id)

    async def run_once(self) -> TickResult:
        """Run a single poll tick (for manual triggering and tests)."""
        return await self._do_tick()

    # =========================================================================
    # Internal Methods
    # =========================================================================

    async def _poll_loop(self) -> None:
        """Main polling loop - runs until stop_event is set."""
        while not self._stop_event.is_set():
            try:
                result = await self._do_tick()
                self._last_result = result
                self._last_run_at = datetime.now(timezone.utc)

                POLL_LAST_RUN_TIMESTAMP.set(self._last_run_at.timestamp())
                status = "dispatched" if result.jobs_dispatched else "idle"
                POLL_TICKS_TOTAL.labels(status=status).inc()

            except Exception as e:
                logger.exception("scheduler_tick_failed", error=str(e))
                POLL_TICKS_TOTAL.labels(status="failure").inc()

            # Wait for next tick (interruptible)
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self._poll_interval_s,
                )
                break
            except asyncio.TimeoutError:
                pass

    async def _do_tick(self) -> TickResult:
        """Fetch due jobs and dispatch each one without waiting for it."""
        start_time = time.monotonic()
        result = TickResult()
        now = self._clock()

        due_jobs = await self._store.get_due_jobs(self._batch_size, now=now)
        result.jobs_due = len(due_jobs)
        POLL_DUE_COUNT.set(len(due_jobs))

        for job in due_jobs:
            self._engine.dispatch(job, now)
            result.jobs_dispatched.append(job.job_name)
            POLL_JOBS_DISPATCHED_TOTAL.inc()

        result.duration_ms = int((time.monotonic() - start_time) * 1000)

        if due_jobs:
            logger.info(
                "scheduler_tick_dispatched",
                jobs=result.jobs_dispatched,
                duration_ms=result.duration_ms,
            )

        return result
