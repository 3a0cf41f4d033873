import json
import os
import threading
import time
from datetime import timedelta
from decimal import Decimal

import pytest

from engine.errors import (
    ArtifactValidationError,
    ConflictError,
    ExecutionError,
    InvalidTransitionError,
    ValidationError,
)
from engine.lifecycle import ALLOWED_TRANSITIONS, can_transition
from engine.models import JobStatus
from engine.vault_bridge import load_scan_vars

EXPECTED_GRAPH = {
    "Created": {"Generating"},
    "Manual": set(),
    "Generating": {"Deploying", "Failed", "Stopped"},
    "Deploying": {"Running", "Failed", "Stopped"},
    "Running": {"Finished", "Failed", "Stopped", "Destroyed"},
    "Finished": {"Destroyed"},
    "Failed": {"Generating", "Destroyed"},
    "Stopped": {"Destroyed"},
    "Destroyed": set(),
}


def test_transition_graph_matches_table():
    assert set(ALLOWED_TRANSITIONS) == set(JobStatus)
    for current in JobStatus:
        for target in JobStatus:
            assert can_transition(current, target) == (target.value in EXPECTED_GRAPH[current.value])


def test_generate_writes_artifacts_and_leaves_job_generating(engine, executor, notifier):
    job = engine.lifecycle.request_generate("job-1")

    assert job.status == JobStatus.GENERATING
    assert job.vm_size == "s-1vcpu-1gb"
    assert job.start_time is not None
    assert len(job.ephemeral_secret) == 64
    int(job.ephemeral_secret, 16)

    artifacts = engine.lifecycle.artifacts("job-1")
    scan_vars = load_scan_vars(open(artifacts.scan_vars).read())
    assert scan_vars["client"] == "Acme"
    assert scan_vars["vm"]["do_size"] == "s-1vcpu-1gb"
    with open(artifacts.targets_file) as f:
        assert json.load(f) == ["https://example.com"]
    assert os.path.isdir(artifacts.inventory)
    assert os.path.exists(artifacts.profile_file)

    assert executor.ran("generate.yml") == [("generate.yml", "job-1", job.ephemeral_secret)]
    assert ("scan_started", "job-1") in notifier.events


def test_generate_rejects_job_already_generating(engine):
    engine.lifecycle.request_generate("job-1")
    with pytest.raises(ConflictError):
        engine.lifecycle.request_generate("job-1")


def test_start_runs_generate_then_deploy(engine, executor):
    job = engine.lifecycle.request_start("job-1")
    assert job.status == JobStatus.RUNNING
    assert [call[0] for call in executor.calls] == ["generate.yml", "deploy.yml"]
    assert not engine.lifecycle.is_busy("job-1")


def test_deploy_syntax_failure_fails_job_without_compute(engine, executor, notifier):
    executor.syntax_failures["deploy.yml"] = "ERROR! 'hostz' is not a valid attribute for a Play"

    with pytest.raises(ArtifactValidationError):
        engine.lifecycle.request_start("job-1")

    job = engine.store.get_job("job-1")
    assert job.status == JobStatus.FAILED
    assert job.vm_start_time is None
    assert job.end_time is not None
    assert executor.ran("deploy.yml") == []
    log = [entry.content for entry in engine.store.read_log("job-1")]
    assert any("is not a valid attribute" in line for line in log)
    assert ("scan_failed", "job-1") in notifier.events


def test_generate_execution_failure_keeps_log_and_fails(engine, executor):
    executor.run_failures["generate.yml"] = ExecutionError("generate.yml failed with exit code 2", returncode=2,
                                                          stderr="fatal: boom")
    with pytest.raises(ExecutionError):
        engine.lifecycle.request_generate("job-1")

    job = engine.store.get_job("job-1")
    assert job.status == JobStatus.FAILED
    assert any("fatal: boom" in entry.content for entry in engine.store.read_log("job-1"))


def test_failed_job_can_be_generated_again(engine, executor):
    executor.run_failures["generate.yml"] = ExecutionError("boom")
    with pytest.raises(ExecutionError):
        engine.lifecycle.request_generate("job-1")
    del executor.run_failures["generate.yml"]

    job = engine.lifecycle.request_generate("job-1")
    assert job.status == JobStatus.GENERATING


def test_deploy_requires_generating(engine):
    with pytest.raises(InvalidTransitionError):
        engine.lifecycle.request_deploy("job-1")


def test_stop_finalizes_cost_and_tears_down_once(engine, executor, notifier, clock):
    engine.lifecycle.request_start("job-1")
    engine.store.update_fields("job-1", vm_start_time=clock() - timedelta(hours=2, minutes=10))

    job = engine.lifecycle.request_stop("job-1")
    assert job.status == JobStatus.STOPPED
    assert job.destroyed
    assert job.end_time is not None and job.vm_stop_time is not None
    assert job.cost == Decimal("0.30")
    assert len(executor.ran("destroy.yml")) == 1
    assert ("scan_stopped", "job-1") in notifier.events

    again = engine.lifecycle.request_stop("job-1")
    assert again.status == JobStatus.STOPPED
    assert len(executor.ran("destroy.yml")) == 1


def test_destroy_removes_files_and_is_idempotent(engine, executor):
    engine.lifecycle.request_start("job-1")
    scan_dir = engine.lifecycle.artifacts("job-1").scan_dir
    assert os.path.isdir(scan_dir)

    job = engine.lifecycle.request_destroy("job-1")
    assert job.status == JobStatus.DESTROYED
    assert job.destroyed
    assert not os.path.exists(scan_dir)

    engine.lifecycle.request_destroy("job-1")
    assert len(executor.ran("destroy.yml")) == 1


def test_destroy_after_failure(engine, executor):
    executor.syntax_failures["deploy.yml"] = "bad"
    with pytest.raises(ArtifactValidationError):
        engine.lifecycle.request_start("job-1")

    job = engine.lifecycle.request_destroy("job-1")
    assert job.status == JobStatus.DESTROYED


def test_stop_before_generate_skips_teardown(engine, executor):
    job = engine.lifecycle.request_stop("job-1")
    assert job.destroyed
    assert job.status == JobStatus.CREATED
    assert executor.ran("destroy.yml") == []


def test_external_completion_marks_destroyed(engine, notifier):
    engine.lifecycle.request_start("job-1")
    job = engine.lifecycle.report_external_completion("job-1")
    assert job.status == JobStatus.DESTROYED
    assert job.destroyed and job.vm_stop_time is not None
    assert ("scan_finished", "job-1") in notifier.events


def test_external_completion_bills_the_vm_window(engine, clock):
    engine.lifecycle.request_start("job-1")
    engine.store.update_fields("job-1", vm_start_time=clock() - timedelta(hours=2, minutes=10))

    job = engine.lifecycle.update_status("job-1", "Destroyed")
    assert job.status == JobStatus.DESTROYED
    assert job.cost == Decimal("0.30")


def test_concurrent_stop_and_destroy_tear_down_once(engine, executor):
    engine.lifecycle.request_start("job-1")
    run_playbook = executor.run_playbook

    def slow_run_playbook(job_id, playbook, *args, **kwargs):
        if playbook.endswith("destroy.yml"):
            time.sleep(0.2)
        return run_playbook(job_id, playbook, *args, **kwargs)

    executor.run_playbook = slow_run_playbook
    barrier = threading.Barrier(2)
    errors = []

    def call(operation):
        barrier.wait()
        try:
            operation("job-1")
        except Exception as e:
            errors.append(e)

    threads = [
        threading.Thread(target=call, args=(engine.lifecycle.request_stop,)),
        threading.Thread(target=call, args=(engine.lifecycle.request_destroy,)),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert errors == []
    assert len(executor.ran("destroy.yml")) == 1
    job = engine.store.get_job("job-1")
    assert job.destroyed
    assert job.status in (JobStatus.STOPPED, JobStatus.DESTROYED)
    assert not os.path.exists(engine.lifecycle.artifacts("job-1").scan_dir)


def test_update_status_checks_graph(engine):
    with pytest.raises(ValidationError):
        engine.lifecycle.update_status("job-1", "Exploded")
    with pytest.raises(InvalidTransitionError):
        engine.lifecycle.update_status("job-1", "Running")


def test_manual_import_creates_terminal_job(engine):
    job = engine.lifecycle.import_manual("pentest import", client_id="client-1")
    assert job.status == JobStatus.MANUAL

    result = engine.lifecycle.collect_imported_results(job.id, [{"name": "xss"}, {}, {"name": "sqli"}])
    assert result["imported"] == 2 and result["skipped"] == 1
    assert engine.store.count_imported_results(job.id) == 0

    engine.lifecycle.save_imported_results(result)
    assert result == {"scan_id": job.id, "imported": 2, "skipped": 1}
    assert engine.store.count_imported_results(job.id) == 2
    assert engine.store.read_log(job.id)[-1].content == "Imported 2 result(s)"

    with pytest.raises(InvalidTransitionError):
        engine.lifecycle.request_generate(job.id)
