"""Lease-based job locks shared by every scheduler instance."""

from typing import Optional

import structlog

from jobscheduler.jobs.types import DEFAULT_LOCK_LEASE_MS
from jobscheduler.repositories.base import JobStore
from jobscheduler.routers.metrics import record_lock_attempt, record_locks_cleared

logger = structlog.get_logger(__name__)


class LockCoordinator:
    """
    Grants at most one instance the right to run a job at a time.

    A lock is a lease on the job row (locked_by, lock_expires_at). It is
    free when unset or expired, so a crashed holder blocks the job for at
    most one lease. Acquisition is re-entrant for the same owner.

    Store errors on acquire/release/extend are logged and reported as a
    failed attempt rather than raised: the caller treats them exactly like
    contention.
    """

    def __init__(self, store: JobStore, default_lease_ms: int = DEFAULT_LOCK_LEASE_MS):
        self._store = store
        self.default_lease_ms = default_lease_ms

    async def acquire(
        self, job_name: str, instance_id: str, lease_ms: Optional[int] = None
    ) -> bool:
        lease_ms = lease_ms or self.default_lease_ms
        try:
            acquired = await self._store.try_acquire_lock(job_name, instance_id, lease_ms)
        except Exception as e:
            record_lock_attempt("error")
            logger.error(
                "job_lock_acquire_failed",
                job_name=job_name,
                instance_id=instance_id,
                error=str(e),
                exc_info=True,
            )
            return False

        record_lock_attempt("acquired" if acquired else "contended")
        if acquired:
            logger.debug(
                "job_lock_acquired",
                job_name=job_name,
                instance_id=instance_id,
                lease_ms=lease_ms,
            )
        return acquired

    async def release(self, job_name: str, instance_id: str) -> bool:
        """Release the lock. Returns False when this instance is not the holder."""
        try:
            released = await self._store.release_lock(job_name, instance_id)
        except Exception as e:
            logger.error(
                "job_lock_release_failed",
                job_name=job_name,
                instance_id=instance_id,
                error=str(e),
                exc_info=True,
            )
            return False

        logger.debug(
            "job_lock_released",
            job_name=job_name,
            instance_id=instance_id,
            released=released,
        )
        return released

    async def extend(
        self, job_name: str, instance_id: str, extension_ms: Optional[int] = None
    ) -> bool:
        """Heartbeat: push the expiry to now + extension_ms. Holder only."""
        extension_ms = extension_ms or self.default_lease_ms
        try:
            extended = await self._store.extend_lock(job_name, instance_id, extension_ms)
        except Exception as e:
            logger.error(
                "job_lock_extend_failed",
                job_name=job_name,
                instance_id=instance_id,
                error=str(e),
                exc_info=True,
            )
            return False

        if not extended:
            logger.warning(
                "job_lock_extend_rejected",
                job_name=job_name,
                instance_id=instance_id,
            )
        return extended

    async def cleanup_expired(self) -> int:
        """Clear stale lease fields. Purely cosmetic; expired leases are already free."""
        cleared = await self._store.clear_expired_locks()
        record_locks_cleared(cleared)
        if cleared > 0:
            logger.info("job_locks_expired_cleared", cleared=cleared)
        return cleared
