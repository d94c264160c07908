import logging
import threading
from contextlib import contextmanager
from typing import Dict

from migration_engine.core.exceptions import JobBusy

logger = logging.getLogger(__name__)


class JobLockManager:
    """
    Process-wide exclusive locks keyed by import job id.

    Execute and rollback both hold the job lock for their whole run so a job
    can never be re-imported while it is being rolled back (or vice versa).
    """
    _locks: Dict[str, threading.Lock] = {}
    _global_lock = threading.Lock()

    @classmethod
    def get_lock(cls, job_id: str) -> threading.Lock:
        """Get or create a lock for a specific job."""
        with cls._global_lock:
            if job_id not in cls._locks:
                cls._locks[job_id] = threading.Lock()
            return cls._locks[job_id]

    @classmethod
    def is_locked(cls, job_id: str) -> bool:
        return cls.get_lock(job_id).locked()

    @classmethod
    @contextmanager
    def acquire(cls, job_id: str, *, purpose: str = "operation", timeout: float = 0):
        """
        Hold the job lock for the duration of the block.

        Raises:
            JobBusy: if the lock cannot be taken within ``timeout`` seconds
        """
        lock = cls.get_lock(job_id)
        acquired = lock.acquire(timeout=timeout) if timeout > 0 else lock.acquire(blocking=False)
        if not acquired:
            raise JobBusy(
                f"Job '{job_id}' is locked by another execution or rollback",
                suggested_fix="Wait for the running operation to finish and retry.",
            )
        logger.debug("Acquired %s lock for job '%s'", purpose, job_id)
        try:
            yield
        finally:
            lock.release()
            logger.debug("Released %s lock for job '%s'", purpose, job_id)
