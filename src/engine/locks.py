# src/engine/locks.py
import threading
from typing import Dict


class JobLocks:
    """One re-entrant lock per job id, created on first use."""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def get(self, job_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(job_id)
            if lock is None:
                lock = self._locks[job_id] = threading.RLock()
            return lock
