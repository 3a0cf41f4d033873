# src/engine/scheduler.py
"""
ScanScheduler: starts recurring scans from cron schedules.

A schedule points at a template scan. Every firing copies the template into a
new Created job and submits ``request_start`` for it as a background job, so
each run gets its own lifecycle, execution log and cost. Firings missed while
the engine was down collapse into one run on the next tick.
"""

import logging
import threading
from datetime import datetime
from typing import List, Optional

from croniter import croniter

from engine.errors import BitorError, ValidationError
from engine.logs import parse_timestamp
from engine.models import JobStatus, ScheduledScan, utcnow

DAYS = {
    "sunday": "0",
    "monday": "1",
    "tuesday": "2",
    "wednesday": "3",
    "thursday": "4",
    "friday": "5",
    "saturday": "6",
}
WEEKS = {"first": "1", "second": "2", "third": "3", "fourth": "4"}


def build_cron_expression(frequency: Optional[str], details: Optional[dict] = None,
                          custom: Optional[str] = None) -> Optional[str]:
    """Resolve a schedule to a five-field cron expression firing at midnight UTC.

    A custom expression always wins. Otherwise the frequency in ``details``
    (falling back to ``frequency``) picks the shape:

    - daily: every day
    - weekly: on each of ``selected_days``
    - monthly/date: on day ``monthly_date`` of the month
    - monthly/day: on the ``monthly_week`` (first..fourth, last) ``monthly_day``

    Returns None when the input describes nothing runnable.
    """
    if custom and custom.strip():
        return custom.strip()
    details = details or {}
    kind = str(details.get("frequency") or frequency or "").lower()

    if kind == "daily":
        return "0 0 * * *"

    if kind == "weekly":
        days = [DAYS[day.lower()] for day in details.get("selected_days") or [] if day.lower() in DAYS]
        if not days:
            return None
        return "0 0 * * " + ",".join(dict.fromkeys(days))

    if kind == "monthly":
        monthly_type = details.get("monthly_type")
        if monthly_type == "date":
            date = details.get("monthly_date") or 0
            return f"0 0 {date} * *" if 1 <= date <= 31 else None
        if monthly_type == "day":
            day = DAYS.get(str(details.get("monthly_day") or "").lower())
            week = str(details.get("monthly_week") or "").lower()
            if day is None:
                return None
            if week == "last":
                return f"0 0 * * L{day}"
            if week in WEEKS:
                return f"0 0 * * {day}#{WEEKS[week]}"
    return None


def next_fire(expression: str, after: datetime) -> datetime:
    return croniter(expression, after).get_next(datetime)


def schedule_to_dict(schedule: ScheduledScan) -> dict:
    def ts(value):
        return value.isoformat() + "Z" if value else None

    return {
        "id": schedule.id,
        "scan_id": schedule.scan_id,
        "frequency": schedule.frequency,
        "cron_expression": schedule.cron_expression,
        "schedule_details": schedule.schedule_details,
        "start_date": ts(schedule.start_date),
        "end_date": ts(schedule.end_date),
        "next_run_at": ts(schedule.next_run_at),
        "last_run_at": ts(schedule.last_run_at),
        "last_job_id": schedule.last_job_id,
        "created_at": ts(schedule.created_at),
    }


class ScanScheduler:
    def __init__(self, store, lifecycle, job_manager, clock=utcnow):
        self.store = store
        self.lifecycle = lifecycle
        self.job_manager = job_manager
        self.clock = clock
        self._tick_lock = threading.Lock()
        self._thread = None
        self._stop = threading.Event()

    def create(self, scan_id: str, frequency: str, start_date, end_date=None,
               cron_expression: Optional[str] = None, details: Optional[dict] = None) -> ScheduledScan:
        self.store.get_job(scan_id)
        expression = build_cron_expression(frequency, details, cron_expression)
        if not expression:
            raise ValidationError(f"Cannot build a cron expression for frequency '{frequency}'")
        if not croniter.is_valid(expression):
            raise ValidationError(f"Invalid cron expression: {expression}")
        start_date = parse_timestamp(start_date)
        end_date = parse_timestamp(end_date)
        if start_date is None:
            raise ValidationError("Start date is required")
        if end_date is not None and end_date <= start_date:
            raise ValidationError("end_date must be after start_date")

        schedule = self.store.add_schedule(
            scan_id=scan_id,
            frequency=frequency,
            cron_expression=expression,
            schedule_details=details,
            start_date=start_date,
            end_date=end_date,
            next_run_at=next_fire(expression, max(start_date, self.clock())),
        )
        logging.info(f"[job_id={scan_id}] Scheduled with '{expression}', next run at {schedule.next_run_at}")
        return schedule

    def list_schedules(self, scan_id: Optional[str] = None) -> List[ScheduledScan]:
        return self.store.list_schedules(scan_id)

    def delete(self, schedule_id: str) -> None:
        self.store.delete_schedule(schedule_id)
        logging.info(f"[schedule={schedule_id}] Deleted")

    def run_due(self, now: Optional[datetime] = None) -> List[str]:
        """Launch every schedule whose next run has come. Returns the new job ids."""
        with self._tick_lock:
            now = now or self.clock()
            started = []
            for schedule in self.store.list_schedules():
                if schedule.end_date is not None and schedule.end_date < now:
                    continue
                if schedule.next_run_at is None or schedule.next_run_at > now:
                    continue
                fields = {"last_run_at": now, "next_run_at": next_fire(schedule.cron_expression, now)}
                try:
                    fields["last_job_id"] = self._launch(schedule, now)
                    started.append(fields["last_job_id"])
                except BitorError as e:
                    logging.error(f"[schedule={schedule.id}] Run of scan {schedule.scan_id} failed: {e}")
                self.store.update_schedule(schedule.id, **fields)
            return started

    def _launch(self, schedule: ScheduledScan, now: datetime) -> str:
        template = self.store.get_job(schedule.scan_id)
        job = self.store.create_job(
            name=f"{template.name or template.id} ({now:%Y-%m-%d %H:%M})",
            status=JobStatus.CREATED,
            client_id=template.client_id,
            target_set_id=template.target_set_id,
            scan_profile_id=template.scan_profile_id,
            interact_id=template.interact_id,
        )
        self.job_manager.submit_job(self._start, job.id, job_type="scheduled_scan")
        logging.info(f"[job_id={job.id}] Scheduled run of scan {schedule.scan_id} submitted")
        return job.id

    def _start(self, job_id, progress=None):
        job = self.lifecycle.request_start(job_id, progress=progress)
        return {"scan_id": job_id, "status": job.status.value}

    # background ticker

    def start(self, interval: float):
        if interval <= 0 or self._thread is not None:
            return None
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, args=(interval,), name="scan-scheduler", daemon=True)
        self._thread.start()
        logging.info(f"[schedule] Scheduler started, every {interval}s")
        return self._thread

    def _loop(self, interval):
        while not self._stop.wait(interval):
            try:
                self.run_due()
            except Exception as e:
                logging.error(f"[schedule] Tick failed: {e}")

    def stop(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
