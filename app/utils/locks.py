import threading
from typing import Dict
from contextlib import contextmanager
import logging

logger = logging.getLogger(__name__)


class JobLockManager:
    """
    Per-key locks so a worker pool never runs two tasks for the same import
    job (or file) at the same time. Tasks for different jobs run freely.
    """
    _locks: Dict[str, threading.Lock] = {}
    _global_lock = threading.Lock()

    @classmethod
    def get_lock(cls, key: str) -> threading.Lock:
        """Get or create the lock for ``key``."""
        with cls._global_lock:
            if key not in cls._locks:
                cls._locks[key] = threading.Lock()
            return cls._locks[key]

    @classmethod
    @contextmanager
    def acquire(cls, key: str):
        """Context manager to acquire and release the lock for ``key``."""
        lock = cls.get_lock(key)
        if not lock.acquire(blocking=False):
            logger.debug("Waiting for lock on '%s'", key)
            lock.acquire()
        try:
            yield
        finally:
            lock.release()
