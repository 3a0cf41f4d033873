# src/engine/store.py
"""
JobStore: persistence for scan jobs and the records the engine reads while running them.

Every write opens its own short session, re-reads the row and touches only the
fields it was asked to change. The execution log is written by the log
checkpointer while status updates happen on other threads, so nothing here
ever writes back a whole stale record.
"""

from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from engine.errors import NotFoundError, PersistenceError
from engine.locks import JobLocks
from engine.logs import LogEntry, cap_entries, decode_log, encode_log, MAX_LOG_ENTRIES
from engine.models import (
    Client,
    ImportedResult,
    InteractServer,
    JobStatus,
    Provider,
    ProviderCredential,
    ScanArchive,
    ScanJob,
    ScanProfile,
    ScheduledScan,
    TargetSet,
)


class JobStore:
    def __init__(self, session_factory, max_log_entries: int = MAX_LOG_ENTRIES):
        self.session_factory = session_factory
        self.max_log_entries = max_log_entries
        self.log_locks = JobLocks()

    # jobs

    def create_job(self, **fields) -> ScanJob:
        db = self.session_factory()
        try:
            job = ScanJob(**fields)
            db.add(job)
            db.commit()
            db.refresh(job)
            return job
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"failed to create scan job: {e}") from e
        finally:
            db.close()

    def get_job(self, job_id: str) -> ScanJob:
        db = self.session_factory()
        try:
            job = db.get(ScanJob, job_id)
        finally:
            db.close()
        if job is None:
            raise NotFoundError(f"Scan {job_id} not found")
        return job

    def update_fields(self, job_id: str, **fields) -> ScanJob:
        """Re-read the job and set only the given columns."""
        db = self.session_factory()
        try:
            job = db.get(ScanJob, job_id)
            if job is None:
                raise NotFoundError(f"Scan {job_id} not found")
            for name, value in fields.items():
                setattr(job, name, value)
            db.commit()
            db.refresh(job)
            return job
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"failed to update scan {job_id}: {e}") from e
        finally:
            db.close()

    def set_cost_if_unset(self, job_id: str, cost: Decimal) -> bool:
        """Conditional write; returns False when another writer set the cost first."""
        db = self.session_factory()
        try:
            result = db.execute(
                update(ScanJob)
                .where(ScanJob.id == job_id, ScanJob.cost.is_(None))
                .values(cost=cost)
            )
            db.commit()
            return result.rowcount == 1
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"failed to store cost for scan {job_id}: {e}") from e
        finally:
            db.close()

    def list_jobs(self, status: Optional[str] = None, client_id: Optional[str] = None,
                  limit: int = 20, offset: int = 0) -> List[ScanJob]:
        db = self.session_factory()
        try:
            query = db.query(ScanJob)
            if status:
                query = query.filter(ScanJob.status == JobStatus(status))
            if client_id:
                query = query.filter(ScanJob.client_id == client_id)
            return query.order_by(ScanJob.created_at.desc()).offset(offset).limit(limit).all()
        finally:
            db.close()

    def jobs_pending_cost(self) -> List[ScanJob]:
        db = self.session_factory()
        try:
            return (
                db.query(ScanJob)
                .filter(
                    ScanJob.cost.is_(None),
                    ScanJob.vm_start_time.isnot(None),
                    ScanJob.vm_stop_time.isnot(None),
                    ScanJob.status != JobStatus.MANUAL,
                )
                .all()
            )
        finally:
            db.close()

    # execution log

    def read_log(self, job_id: str) -> List[LogEntry]:
        return decode_log(self.get_job(job_id).execution_log)

    def append_log_entries(self, job_id: str, entries: Iterable[LogEntry]) -> int:
        """Append to the persisted log, keeping the newest entries. Returns the stored length.

        Writers for one job are serialized in-process, and the row is read with
        ``FOR UPDATE`` so a second process on a server database waits its turn.
        """
        entries = list(entries)
        with self.log_locks.get(job_id):
            db = self.session_factory()
            try:
                job = db.query(ScanJob).filter(ScanJob.id == job_id).with_for_update().first()
                if job is None:
                    raise NotFoundError(f"Scan {job_id} not found")
                merged = cap_entries(decode_log(job.execution_log) + entries, self.max_log_entries)
                job.execution_log = encode_log(merged)
                db.commit()
                return len(merged)
            except SQLAlchemyError as e:
                db.rollback()
                raise PersistenceError(f"failed to persist execution log for scan {job_id}: {e}") from e
            finally:
                db.close()

    # related records

    def _get(self, model, record_id, label):
        if not record_id:
            raise NotFoundError(f"{label} not set")
        db = self.session_factory()
        try:
            record = db.get(model, record_id)
        finally:
            db.close()
        if record is None:
            raise NotFoundError(f"{label} {record_id} not found")
        return record

    def get_client(self, client_id) -> Client:
        return self._get(Client, client_id, "Client")

    def get_profile(self, profile_id) -> ScanProfile:
        return self._get(ScanProfile, profile_id, "Scan profile")

    def get_provider(self, provider_id) -> Provider:
        return self._get(Provider, provider_id, "Provider")

    def get_target_set(self, target_set_id) -> TargetSet:
        return self._get(TargetSet, target_set_id, "Target set")

    def find_interact(self, interact_id) -> Optional[InteractServer]:
        if not interact_id:
            return None
        db = self.session_factory()
        try:
            return db.get(InteractServer, interact_id)
        finally:
            db.close()

    def provider_credentials(self, provider_id: str) -> List[ProviderCredential]:
        db = self.session_factory()
        try:
            return db.query(ProviderCredential).filter(ProviderCredential.provider_id == provider_id).all()
        finally:
            db.close()

    def add_archive(self, **fields) -> ScanArchive:
        db = self.session_factory()
        try:
            archive = ScanArchive(**fields)
            db.add(archive)
            db.commit()
            db.refresh(archive)
            return archive
        finally:
            db.close()

    def latest_archive(self, job_id: str) -> Optional[ScanArchive]:
        db = self.session_factory()
        try:
            return (
                db.query(ScanArchive)
                .filter(ScanArchive.job_id == job_id)
                .order_by(ScanArchive.created_at.desc())
                .first()
            )
        finally:
            db.close()

    def add_imported_results(self, job_id: str, payloads: List[Dict]) -> int:
        db = self.session_factory()
        try:
            db.add_all([ImportedResult(job_id=job_id, payload=payload) for payload in payloads])
            db.commit()
            return len(payloads)
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"failed to store imported results for scan {job_id}: {e}") from e
        finally:
            db.close()

    def count_imported_results(self, job_id: str) -> int:
        db = self.session_factory()
        try:
            return db.query(ImportedResult).filter(ImportedResult.job_id == job_id).count()
        finally:
            db.close()

    # schedules

    def add_schedule(self, **fields) -> ScheduledScan:
        db = self.session_factory()
        try:
            schedule = ScheduledScan(**fields)
            db.add(schedule)
            db.commit()
            db.refresh(schedule)
            return schedule
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"failed to store schedule for scan {fields.get('scan_id')}: {e}") from e
        finally:
            db.close()

    def list_schedules(self, scan_id: Optional[str] = None) -> List[ScheduledScan]:
        db = self.session_factory()
        try:
            query = db.query(ScheduledScan)
            if scan_id:
                query = query.filter(ScheduledScan.scan_id == scan_id)
            return query.order_by(ScheduledScan.created_at).all()
        finally:
            db.close()

    def update_schedule(self, schedule_id: str, **fields) -> ScheduledScan:
        db = self.session_factory()
        try:
            schedule = db.get(ScheduledScan, schedule_id)
            if schedule is None:
                raise NotFoundError(f"Schedule {schedule_id} not found")
            for name, value in fields.items():
                setattr(schedule, name, value)
            db.commit()
            db.refresh(schedule)
            return schedule
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"failed to update schedule {schedule_id}: {e}") from e
        finally:
            db.close()

    def delete_schedule(self, schedule_id: str) -> None:
        db = self.session_factory()
        try:
            schedule = db.get(ScheduledScan, schedule_id)
            if schedule is None:
                raise NotFoundError(f"Schedule {schedule_id} not found")
            db.delete(schedule)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"failed to delete schedule {schedule_id}: {e}") from e
        finally:
            db.close()


def job_to_dict(job: ScanJob) -> dict:
    def ts(value):
        return value.isoformat() + "Z" if value else None

    return {
        "id": job.id,
        "name": job.name,
        "status": job.status.value if job.status else None,
        "client_id": job.client_id,
        "target_set_id": job.target_set_id,
        "scan_profile_id": job.scan_profile_id,
        "created_at": ts(job.created_at),
        "start_time": ts(job.start_time),
        "end_time": ts(job.end_time),
        "vm_start_time": ts(job.vm_start_time),
        "vm_stop_time": ts(job.vm_stop_time),
        "scan_start_time": ts(job.scan_start_time),
        "scan_stop_time": ts(job.scan_stop_time),
        "cost": str(job.cost) if job.cost is not None else None,
        "vm_size": job.vm_size,
        "destroyed": bool(job.destroyed),
        "archived": bool(job.archived),
        "ip_address": job.ip_address,
        "skipped_hosts": job.skipped_hosts or [],
    }
