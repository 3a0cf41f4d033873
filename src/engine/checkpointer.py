# src/engine/checkpointer.py
"""
LogCheckpointer: buffers automation output line by line and persists it to the
job's execution log in batches.

Lines are flushed right away when they come from stderr or carry the ``ERROR!``
marker, otherwise once a second or once the batch threshold is reached. A failed
flush is retried with linear backoff and the buffered lines are only dropped
after a successful write, so a transient database error never loses output.
Once a flush has given up, writers stop flushing and leave the retry to the
ticker, so the pipe readers never sit in backoff sleeps.
"""

import logging
import threading
import time
from typing import Dict, List

from engine.errors import PersistenceError
from engine.logs import LogEntry, STDERR, STDOUT

ERROR_MARKER = "ERROR!"


class LogCheckpointer:
    def __init__(self, store, job_id: str, flush_interval: float = 1.0, batch_size: int = 100,
                 attempts: int = 3, backoff: float = 1.0, clock=time.monotonic, sleep=time.sleep):
        self.store = store
        self.job_id = job_id
        self.flush_interval = flush_interval
        self.batch_size = batch_size
        self.attempts = attempts
        self.backoff = backoff
        self.clock = clock
        self.sleep = sleep

        self._buffer: List[LogEntry] = []
        self._partial: Dict[str, str] = {STDOUT: "", STDERR: ""}
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._last_flush = clock()
        self._failing = False
        self._ticker = None
        self._stop = threading.Event()

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    def write(self, data, stream: str = STDOUT) -> None:
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        urgent = False
        with self._lock:
            text = self._partial.get(stream, "") + data
            *lines, self._partial[stream] = text.split("\n")
            for line in lines:
                line = line.rstrip("\r")
                if not line:
                    continue
                self._buffer.append(LogEntry.now(stream, line))
                if stream == STDERR or ERROR_MARKER in line:
                    urgent = True
            due = (urgent or self._due_locked()) and not self._failing
        if due:
            self.flush()

    def _due_locked(self) -> bool:
        if not self._buffer:
            return False
        if len(self._buffer) >= self.batch_size:
            return True
        return self.clock() - self._last_flush >= self.flush_interval

    def tick(self) -> bool:
        """Flush if the interval has elapsed. Returns True when something was persisted."""
        with self._lock:
            due = bool(self._buffer) and self.clock() - self._last_flush >= self.flush_interval
        if due:
            return self.flush()
        return False

    def flush(self) -> bool:
        with self._flush_lock:
            with self._lock:
                snapshot = list(self._buffer)
            if not snapshot:
                return True

            last_error = None
            for attempt in range(1, self.attempts + 1):
                try:
                    self.store.append_log_entries(self.job_id, snapshot)
                except Exception as e:
                    last_error = e
                    logging.warning(f"[job_id={self.job_id}] Log flush attempt {attempt}/{self.attempts} failed: {e}")
                    if attempt < self.attempts:
                        self.sleep(attempt * self.backoff)
                    continue
                with self._lock:
                    # only this method removes from the head, and it runs under _flush_lock
                    del self._buffer[:len(snapshot)]
                    self._last_flush = self.clock()
                    self._failing = False
                return True

            error = PersistenceError(f"giving up on {len(snapshot)} log entries after {self.attempts} attempts: {last_error}")
            logging.error(f"[job_id={self.job_id}] {error}")
            with self._lock:
                self._failing = True
            return False

    def start(self) -> "LogCheckpointer":
        """Run `tick` in a daemon thread until `close` is called."""
        if self._ticker is None:
            self._ticker = threading.Thread(target=self._tick_loop, name=f"log-ticker-{self.job_id}", daemon=True)
            self._ticker.start()
        return self

    def _tick_loop(self):
        while not self._stop.wait(self.flush_interval):
            self.tick()

    def close(self) -> bool:
        self._stop.set()
        if self._ticker is not None:
            self._ticker.join(timeout=self.flush_interval * 2)
            self._ticker = None
        with self._lock:
            for stream in (STDOUT, STDERR):
                rest = self._partial[stream].rstrip("\r")
                self._partial[stream] = ""
                if rest:
                    self._buffer.append(LogEntry.now(stream, rest))
        return self.flush()
