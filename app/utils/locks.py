import threading
from typing import Dict
from contextlib import contextmanager
import logging

from app.core.errors import PipelineBusy

logger = logging.getLogger(__name__)


class FileLockManager:
    """
    Keeps one lock per uploaded file so only a single pipeline run
    (processing, validation or deployment) touches a file at a time.

    Unlike a queueing lock, acquisition never waits: a second run on the same
    file fails fast with PipelineBusy.
    """

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._global_lock = threading.Lock()

    def get_lock(self, file_id: str) -> threading.Lock:
        """Get or create the lock for a specific file."""
        with self._global_lock:
            if file_id not in self._locks:
                self._locks[file_id] = threading.Lock()
            return self._locks[file_id]

    def is_locked(self, file_id: str) -> bool:
        lock = self._locks.get(file_id)
        return lock is not None and lock.locked()

    @contextmanager
    def acquire(self, file_id: str, operation: str = "pipeline"):
        """Context manager holding the file lock for the duration of an operation."""
        lock = self.get_lock(file_id)
        if not lock.acquire(blocking=False):
            logger.warning("Rejected %s for file %s: another run is in progress", operation, file_id)
            raise PipelineBusy(f"File {file_id} is busy with another operation", details={"operation": operation})
        logger.debug("Acquired lock for file %s (%s)", file_id, operation)
        try:
            yield
        finally:
            lock.release()
            logger.debug("Released lock for file %s (%s)", file_id, operation)

    def discard(self, file_id: str) -> bool:
        """
        Forget the lock of a file that no longer runs pipelines.

        Returns:
            True if the lock was dropped, False if there was none or it is held
        """
        with self._global_lock:
            lock = self._locks.get(file_id)
            if lock is None or lock.locked():
                return False
            del self._locks[file_id]
            return True
