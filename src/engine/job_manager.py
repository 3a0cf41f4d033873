# src/engine/job_manager.py
"""
JobManager: in-memory registry of background jobs and their progress.

Entries live for a retention window after they complete and are then evicted.
All reads hand out copies taken under the lock, so a caller never sees another
thread mutate an entry it is holding.
"""

import dataclasses
import inspect
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import config
from engine.errors import NotFoundError, ValidationError
from engine.models import utcnow

RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"


@dataclass
class AsyncJobProgress:
    job_id: str
    job_type: str
    status: str = RUNNING
    percent: int = 0
    message: str = ""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error: Optional[str] = None
    result: Any = None
    expires_at: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "job_type": self.job_type,
            "status": self.status,
            "percent": self.percent,
            "message": self.message,
            "start_time": self.start_time.isoformat() + "Z" if self.start_time else None,
            "end_time": self.end_time.isoformat() + "Z" if self.end_time else None,
            "error": self.error,
            "result": self.result,
        }


class ProgressReporter:
    """Handed to a job function so it can report how far along it is."""

    def __init__(self, manager: "JobManager", job_id: str):
        self.manager = manager
        self.job_id = job_id

    def __call__(self, percent: int, message: str = "") -> None:
        self.manager.update(self.job_id, percent, message)

    update = __call__


def _timer_scheduler(delay: float, fn: Callable[[], None]) -> None:
    timer = threading.Timer(delay, fn)
    timer.daemon = True
    timer.start()


def _accepts_progress(func) -> bool:
    try:
        params = inspect.signature(func).parameters
    except (TypeError, ValueError):
        return False
    return "progress" in params or any(p.kind == p.VAR_KEYWORD for p in params.values())


class JobManager:
    def __init__(self, retention_seconds: float = config.PROGRESS_RETENTION_SECONDS,
                 clock=time.monotonic, scheduler=_timer_scheduler):
        self.jobs: Dict[str, AsyncJobProgress] = {}
        self.lock = threading.Lock()
        self.retention_seconds = retention_seconds
        self.clock = clock
        self.scheduler = scheduler

    def submit_job(self, func, *args, job_type: str, save: Optional[Callable[[Any], None]] = None, **kwargs) -> str:
        job_id = str(uuid.uuid4())
        with self.lock:
            self.jobs[job_id] = AsyncJobProgress(job_id=job_id, job_type=job_type, start_time=utcnow())
        if _accepts_progress(func):
            kwargs["progress"] = ProgressReporter(self, job_id)
        logging.info(f"[job_id={job_id}] Submitted {job_type} job.")
        thread = threading.Thread(target=self._run_job, args=(job_id, func, args, kwargs, save), daemon=True)
        thread.start()
        return job_id

    def _run_job(self, job_id, func, args, kwargs, save):
        try:
            logging.info(f"[job_id={job_id}] Started job.")
            result = func(*args, **kwargs)
            if save is not None:
                save(result)
        except Exception as e:
            self._finish(job_id, FAILED, error=str(e))
            logging.error(f"[job_id={job_id}] Job failed: {e}")
            return
        self._finish(job_id, COMPLETED, result=result)
        logging.info(f"[job_id={job_id}] Completed job.")

    def _finish(self, job_id, status, result=None, error=None):
        with self.lock:
            entry = self.jobs.get(job_id)
            if entry is None:
                return
            entry.status = status
            entry.end_time = utcnow()
            entry.expires_at = self.clock() + self.retention_seconds
            if status == COMPLETED:
                entry.percent = 100
                entry.result = result
            else:
                entry.error = error
            self.scheduler(self.retention_seconds, lambda: self.evict(job_id))

    def update(self, job_id: str, percent: int, message: str = "") -> None:
        if not 0 <= percent <= 100:
            raise ValidationError(f"percent must be between 0 and 100, got {percent}")
        with self.lock:
            entry = self.jobs.get(job_id)
            if entry is None or entry.status != RUNNING:
                return
            entry.percent = percent
            entry.message = message

    def get_progress(self, job_id: str) -> AsyncJobProgress:
        with self.lock:
            entry = self.jobs.get(job_id)
            if entry is not None and entry.expires_at is not None and self.clock() >= entry.expires_at:
                del self.jobs[job_id]
                entry = None
            if entry is None:
                raise NotFoundError(f"Job {job_id} not found")
            return dataclasses.replace(entry)

    def evict(self, job_id: str) -> bool:
        with self.lock:
            entry = self.jobs.get(job_id)
            if entry is None or entry.expires_at is None or self.clock() < entry.expires_at:
                return False
            del self.jobs[job_id]
        logging.info(f"[job_id={job_id}] Evicted job progress.")
        return True
