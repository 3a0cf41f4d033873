# src/engine/lifecycle.py
"""
ScanLifecycleController: moves scan jobs through generate, deploy, stop and
destroy, and keeps the stored status on the transition graph below.

    Created    -> Generating
    Manual     -> (terminal)
    Generating -> Deploying, Failed, Stopped
    Deploying  -> Running, Failed, Stopped
    Running    -> Finished, Failed, Stopped, Destroyed
    Finished   -> Destroyed
    Failed     -> Generating, Destroyed
    Stopped    -> Destroyed
    Destroyed  -> (terminal)

Each job has its own re-entrant lock. Stop and destroy hold it for their whole
run so a second request waits and then sees ``destroyed`` already set. The
generate/deploy pipeline only takes it for its check-and-set and for each
status write, and marks the job busy in between.
"""

import logging
import threading
from typing import List, Optional, Set

from engine.artifacts import ScanArtifacts
from engine.errors import (
    ArtifactValidationError,
    BitorError,
    ConflictError,
    ExecutionError,
    GenerationError,
    InvalidTransitionError,
    PersistenceError,
    ValidationError,
)
from engine.locks import JobLocks
from engine.logs import LogEntry, STDERR, STDOUT
from engine.models import JobStatus, ScanJob, utcnow
from engine import notifications
from utils.crypto import generate_secret

ALLOWED_TRANSITIONS = {
    JobStatus.CREATED: {JobStatus.GENERATING},
    JobStatus.MANUAL: set(),
    JobStatus.GENERATING: {JobStatus.DEPLOYING, JobStatus.FAILED, JobStatus.STOPPED},
    JobStatus.DEPLOYING: {JobStatus.RUNNING, JobStatus.FAILED, JobStatus.STOPPED},
    JobStatus.RUNNING: {JobStatus.FINISHED, JobStatus.FAILED, JobStatus.STOPPED, JobStatus.DESTROYED},
    JobStatus.FINISHED: {JobStatus.DESTROYED},
    JobStatus.FAILED: {JobStatus.GENERATING, JobStatus.DESTROYED},
    JobStatus.STOPPED: {JobStatus.DESTROYED},
    JobStatus.DESTROYED: set(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def check_transition(job_id: str, current: JobStatus, target: JobStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(job_id, current.value, target.value)


class ScanLifecycleController:
    def __init__(self, store, executor, vault_bridge, cost, notifier, base_path: str,
                 locks: Optional[JobLocks] = None, timeout=None, clock=utcnow):
        self.store = store
        self.executor = executor
        self.vault_bridge = vault_bridge
        self.cost = cost
        self.notifier = notifier
        self.base_path = base_path
        self.locks = locks or JobLocks()
        self.timeout = timeout
        self.clock = clock
        self._busy: Set[str] = set()
        self._busy_lock = threading.Lock()

    def artifacts(self, job_id: str) -> ScanArtifacts:
        return ScanArtifacts(self.base_path, job_id)

    def is_busy(self, job_id: str) -> bool:
        with self._busy_lock:
            return job_id in self._busy

    def _set_busy(self, job_id: str, busy: bool) -> None:
        with self._busy_lock:
            if busy:
                self._busy.add(job_id)
            else:
                self._busy.discard(job_id)

    def _notify(self, event: str, job_id: str, **details) -> None:
        try:
            self.notifier.notify(event, job_id, **details)
        except Exception as e:
            logging.error(f"[job_id={job_id}] Notification {event} failed: {e}")

    def _log(self, job_id: str, stream: str, text: str) -> None:
        try:
            self.store.append_log_entries(job_id, [LogEntry.now(stream, text)])
        except PersistenceError as e:
            logging.error(f"[job_id={job_id}] Could not append to execution log: {e}")

    def _transition(self, job_id: str, target: JobStatus, **fields) -> ScanJob:
        with self.locks.get(job_id):
            job = self.store.get_job(job_id)
            check_transition(job_id, job.status, target)
            logging.info(f"[job_id={job_id}] {job.status.value} -> {target.value}")
            return self.store.update_fields(job_id, status=target, **fields)

    def _stop_fields(self, job: ScanJob, now) -> dict:
        fields = {}
        if job.end_time is None:
            fields["end_time"] = now
        if job.vm_stop_time is None:
            fields["vm_stop_time"] = now
        return fields

    def _fail(self, job_id: str, error: Exception) -> None:
        self._log(job_id, STDERR, str(error))
        with self.locks.get(job_id):
            job = self.store.get_job(job_id)
            fields = self._stop_fields(job, self.clock())
            if can_transition(job.status, JobStatus.FAILED):
                fields["status"] = JobStatus.FAILED
                logging.error(f"[job_id={job_id}] {job.status.value} -> Failed: {error}")
            else:
                logging.error(f"[job_id={job_id}] Pipeline error while {job.status.value}: {error}")
            self.store.update_fields(job_id, **fields)
        self._notify(notifications.SCAN_FAILED, job_id, error=str(error))

    # generate / deploy

    def _begin_generate(self, job_id: str) -> ScanJob:
        with self.locks.get(job_id):
            job = self.store.get_job(job_id)
            if job.status in (JobStatus.GENERATING, JobStatus.DEPLOYING) or self.is_busy(job_id):
                raise ConflictError(f"Scan {job_id} is already {job.status.value}")
            if job.destroyed:
                raise ConflictError(f"Scan {job_id} has already been torn down")
            check_transition(job_id, job.status, JobStatus.GENERATING)
            profile = self.store.get_profile(job.scan_profile_id)
            previous = job.status
            job = self.store.update_fields(
                job_id,
                status=JobStatus.GENERATING,
                vm_size=profile.vm_size,
                start_time=self.clock(),
                end_time=None,
                ephemeral_secret=generate_secret(),
            )
            self._set_busy(job_id, True)
        logging.info(f"[job_id={job_id}] {previous.value} -> Generating")
        self._notify(notifications.SCAN_STARTED, job_id)
        return job

    def _generate(self, job: ScanJob) -> None:
        artifacts = self.artifacts(job.id)
        try:
            profile = self.store.get_profile(job.scan_profile_id)
            target_set = self.store.get_target_set(job.target_set_id)
            scan_vars = self.vault_bridge.build_scan_vars(job)
            artifacts.write(scan_vars, target_set.targets, profile.nuclei_profile)

            ok, output = self.executor.syntax_check(artifacts.generate_playbook)
            if not ok:
                raise ArtifactValidationError(artifacts.generate_playbook, output)
            self.executor.run_playbook(
                job.id, artifacts.generate_playbook, artifacts.scan_vars, artifacts.inventory,
                artifacts.log_dir, job.ephemeral_secret, timeout=self.timeout,
            )
        except BitorError as e:
            self._fail(job.id, e)
            raise
        except Exception as e:
            error = GenerationError(f"generation failed for scan {job.id}: {e}")
            self._fail(job.id, error)
            raise error from e
        self._log(job.id, STDOUT, "Scan files generated")

    def _begin_deploy(self, job_id: str, owned: bool = False) -> ScanJob:
        with self.locks.get(job_id):
            if self.is_busy(job_id) and not owned:
                raise ConflictError(f"Scan {job_id} has a pipeline running")
            job = self.store.get_job(job_id)
            if job.status != JobStatus.GENERATING:
                raise InvalidTransitionError(job_id, job.status.value, JobStatus.DEPLOYING.value)
            job = self.store.update_fields(job_id, status=JobStatus.DEPLOYING)
            self._set_busy(job_id, True)
        logging.info(f"[job_id={job_id}] Generating -> Deploying")
        return job

    def _deploy(self, job: ScanJob) -> ScanJob:
        artifacts = self.artifacts(job.id)
        try:
            ok, output = self.executor.syntax_check(artifacts.deploy_playbook)
            if not ok:
                raise ArtifactValidationError(artifacts.deploy_playbook, output)
            self.executor.run_playbook(
                job.id, artifacts.deploy_playbook, artifacts.scan_vars, artifacts.inventory,
                artifacts.log_dir, job.ephemeral_secret, timeout=self.timeout,
            )
        except BitorError as e:
            self._fail(job.id, e)
            raise
        except Exception as e:
            error = ExecutionError(f"deploy failed for scan {job.id}: {e}")
            self._fail(job.id, error)
            raise error from e

        with self.locks.get(job.id):
            current = self.store.get_job(job.id)
            # callbacks or a stop may already have moved the job on
            if current.status != JobStatus.DEPLOYING:
                return current
            return self._transition(job.id, JobStatus.RUNNING)

    def request_generate(self, job_id: str) -> ScanJob:
        job = self._begin_generate(job_id)
        try:
            self._generate(job)
        finally:
            self._set_busy(job_id, False)
        return self.store.get_job(job_id)

    def request_deploy(self, job_id: str) -> ScanJob:
        job = self._begin_deploy(job_id)
        try:
            return self._deploy(job)
        finally:
            self._set_busy(job_id, False)

    def request_start(self, job_id: str, progress=None) -> ScanJob:
        job = self._begin_generate(job_id)
        try:
            if progress:
                progress(10, "Generating scan files")
            self._generate(job)
            if progress:
                progress(50, "Deploying scan")
            job = self._begin_deploy(job_id, owned=True)
            job = self._deploy(job)
            if progress:
                progress(90, f"Scan {job.status.value}")
            return job
        finally:
            self._set_busy(job_id, False)

    # teardown

    def _teardown(self, job: ScanJob) -> None:
        artifacts = self.artifacts(job.id)
        if not artifacts.exists() or not job.ephemeral_secret:
            logging.info(f"[job_id={job.id}] No scan files on disk, skipping teardown playbook")
            return
        self.executor.run_playbook(
            job.id, artifacts.destroy_playbook, artifacts.scan_vars, artifacts.inventory,
            artifacts.log_dir, job.ephemeral_secret, timeout=self.timeout,
        )

    def _finalize_cost(self, job_id: str) -> None:
        try:
            self.cost.finalize(job_id)
        except Exception as e:
            logging.error(f"[job_id={job_id}] Cost finalization failed: {e}")

    def request_stop(self, job_id: str) -> ScanJob:
        with self.locks.get(job_id):
            job = self.store.get_job(job_id)
            if job.destroyed:
                logging.info(f"[job_id={job_id}] Already destroyed, nothing to stop")
                return job
            if job.status == JobStatus.MANUAL:
                raise InvalidTransitionError(job_id, job.status.value, JobStatus.STOPPED.value)
            if job.end_time is None:
                job = self.store.update_fields(job_id, end_time=self.clock())
            self._finalize_cost(job_id)
            self._teardown(job)

            job = self.store.get_job(job_id)
            fields = self._stop_fields(job, self.clock())
            fields["destroyed"] = True
            if can_transition(job.status, JobStatus.STOPPED):
                fields["status"] = JobStatus.STOPPED
            job = self.store.update_fields(job_id, **fields)
        logging.info(f"[job_id={job_id}] Scan stopped")
        self._notify(notifications.SCAN_STOPPED, job_id)
        return job

    def request_destroy(self, job_id: str) -> ScanJob:
        with self.locks.get(job_id):
            job = self.store.get_job(job_id)
            artifacts = self.artifacts(job_id)
            if job.destroyed:
                artifacts.remove()
                return job
            if job.status == JobStatus.MANUAL:
                raise InvalidTransitionError(job_id, job.status.value, JobStatus.DESTROYED.value)
            self._teardown(job)

            fields = self._stop_fields(job, self.clock())
            fields["destroyed"] = True
            if can_transition(job.status, JobStatus.DESTROYED):
                fields["status"] = JobStatus.DESTROYED
            job = self.store.update_fields(job_id, **fields)
            self._finalize_cost(job_id)
            artifacts.remove()
        logging.info(f"[job_id={job_id}] Scan destroyed")
        return self.store.get_job(job_id)

    # callbacks

    def report_external_completion(self, job_id: str) -> ScanJob:
        with self.locks.get(job_id):
            job = self.store.get_job(job_id)
            fields = self._stop_fields(job, self.clock())
            self._transition(job_id, JobStatus.DESTROYED, destroyed=True, **fields)
            self._finalize_cost(job_id)
        self._notify(notifications.SCAN_FINISHED, job_id)
        return self.store.get_job(job_id)

    def update_status(self, job_id: str, status: str) -> ScanJob:
        try:
            target = JobStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown status {status!r}")
        if target == JobStatus.DESTROYED:
            return self.report_external_completion(job_id)
        with self.locks.get(job_id):
            job = self.store.get_job(job_id)
            fields = {}
            if target in (JobStatus.FINISHED, JobStatus.FAILED, JobStatus.STOPPED) and job.end_time is None:
                fields["end_time"] = self.clock()
            job = self._transition(job_id, target, **fields)
        if target == JobStatus.FINISHED:
            self._notify(notifications.SCAN_FINISHED, job_id)
        elif target == JobStatus.FAILED:
            self._notify(notifications.SCAN_FAILED, job_id, error="reported by scan host")
        return job

    # manual import

    def import_manual(self, name: str, client_id: Optional[str] = None) -> ScanJob:
        if not name:
            raise ValidationError("name is required")
        now = self.clock()
        job = self.store.create_job(
            name=name, client_id=client_id, status=JobStatus.MANUAL,
            start_time=now, end_time=now,
        )
        logging.info(f"[job_id={job.id}] Created manual scan {name}")
        return job

    def collect_imported_results(self, job_id: str, results: List[dict], progress=None) -> dict:
        """Check the findings for a manual scan. `save_imported_results` persists them."""
        self.store.get_job(job_id)
        rows, skipped = [], 0
        total = len(results)
        for index, result in enumerate(results, start=1):
            if isinstance(result, dict) and result:
                rows.append(result)
            else:
                skipped += 1
            if progress:
                progress(int(index * 90 / total), f"Checked {index}/{total}")
        if skipped:
            logging.warning(f"[job_id={job_id}] Skipped {skipped} empty imported result(s)")
        return {"scan_id": job_id, "imported": len(rows), "skipped": skipped, "results": rows}

    def save_imported_results(self, result: dict) -> None:
        rows = result.pop("results")
        self.store.add_imported_results(result["scan_id"], rows)
        self._log(result["scan_id"], STDOUT, f"Imported {len(rows)} result(s)")
