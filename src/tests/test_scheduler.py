import time
from datetime import datetime
from unittest import mock

import pytest
from fastapi.testclient import TestClient

from engine.errors import NotFoundError, ValidationError
from engine.models import JobStatus
from engine.scheduler import ScanScheduler, build_cron_expression, next_fire
from main import create_app


@pytest.mark.parametrize("frequency,details,custom,expected", [
    ("daily", None, None, "0 0 * * *"),
    ("weekly", {"selected_days": ["Monday", "friday", "funday", "monday"]}, None, "0 0 * * 1,5"),
    ("weekly", {"selected_days": []}, None, None),
    ("monthly", {"monthly_type": "date", "monthly_date": 15}, None, "0 0 15 * *"),
    ("monthly", {"monthly_type": "date", "monthly_date": 0}, None, None),
    ("monthly", {"monthly_type": "day", "monthly_day": "Tuesday", "monthly_week": "second"}, None, "0 0 * * 2#2"),
    ("monthly", {"monthly_type": "day", "monthly_day": "friday", "monthly_week": "last"}, None, "0 0 * * L5"),
    ("monthly", {"monthly_type": "day", "monthly_day": "friday", "monthly_week": "fifth"}, None, None),
    ("custom", {"frequency": "daily"}, None, "0 0 * * *"),
    ("daily", None, " 30 2 * * 1 ", "30 2 * * 1"),
    ("hourly", None, None, None),
])
def test_build_cron_expression(frequency, details, custom, expected):
    assert build_cron_expression(frequency, details, custom) == expected


def test_next_fire_follows_generated_expressions():
    monday_noon = datetime(2024, 1, 1, 12, 0)
    assert next_fire("0 0 * * *", monday_noon) == datetime(2024, 1, 2)
    assert next_fire("0 0 * * 1,5", monday_noon) == datetime(2024, 1, 5)
    assert next_fire("0 0 15 * *", monday_noon) == datetime(2024, 1, 15)
    assert next_fire("0 0 * * 2#2", monday_noon) == datetime(2024, 1, 9)


@pytest.fixture
def scheduler(engine, clock):
    return ScanScheduler(engine.store, engine.lifecycle, mock.Mock(), clock=clock)


def test_create_computes_first_run_from_now(scheduler):
    schedule = scheduler.create("job-1", "daily", datetime(2024, 1, 1))
    assert schedule.cron_expression == "0 0 * * *"
    assert schedule.next_run_at == datetime(2024, 1, 2)


def test_create_waits_for_a_future_start_date(scheduler):
    schedule = scheduler.create("job-1", "daily", "2024-03-10T08:00:00Z")
    assert schedule.start_date == datetime(2024, 3, 10, 8)
    assert schedule.next_run_at == datetime(2024, 3, 11)


def test_create_rejects_unschedulable_input(scheduler):
    with pytest.raises(ValidationError):
        scheduler.create("job-1", "weekly", datetime(2024, 1, 1), details={"selected_days": []})
    with pytest.raises(ValidationError):
        scheduler.create("job-1", "custom", datetime(2024, 1, 1), cron_expression="every tuesday")
    with pytest.raises(ValidationError):
        scheduler.create("job-1", "daily", datetime(2024, 1, 5), end_date=datetime(2024, 1, 1))
    with pytest.raises(NotFoundError):
        scheduler.create("nope", "daily", datetime(2024, 1, 1))
    assert scheduler.list_schedules() == []


def test_run_due_clones_the_template_and_submits_a_start(scheduler, engine):
    schedule = scheduler.create("job-1", "daily", datetime(2024, 1, 1))

    assert scheduler.run_due(datetime(2024, 1, 1, 23, 59)) == []
    started = scheduler.run_due(datetime(2024, 1, 2))
    assert len(started) == 1

    job = engine.store.get_job(started[0])
    template = engine.store.get_job("job-1")
    assert job.id != template.id
    assert job.status == JobStatus.CREATED
    assert job.name == "weekly (2024-01-02 00:00)"
    assert (job.client_id, job.target_set_id, job.scan_profile_id, job.interact_id) == \
        (template.client_id, template.target_set_id, template.scan_profile_id, template.interact_id)
    assert template.status == JobStatus.CREATED

    scheduler.job_manager.submit_job.assert_called_once_with(scheduler._start, job.id, job_type="scheduled_scan")
    stored = scheduler.list_schedules()[0]
    assert stored.id == schedule.id
    assert stored.last_run_at == datetime(2024, 1, 2)
    assert stored.last_job_id == job.id
    assert stored.next_run_at == datetime(2024, 1, 3)

    # same tick again does nothing
    assert scheduler.run_due(datetime(2024, 1, 2)) == []


def test_missed_runs_fire_once(scheduler):
    scheduler.create("job-1", "daily", datetime(2024, 1, 1))
    assert len(scheduler.run_due(datetime(2024, 1, 5, 6, 0))) == 1
    assert scheduler.list_schedules()[0].next_run_at == datetime(2024, 1, 6)


def test_expired_schedule_is_skipped(scheduler):
    scheduler.create("job-1", "daily", datetime(2024, 1, 1), end_date=datetime(2024, 1, 1, 18, 0))
    assert scheduler.run_due(datetime(2024, 1, 2)) == []
    assert scheduler.list_schedules()[0].last_run_at is None
    scheduler.job_manager.submit_job.assert_not_called()


def test_scheduled_start_runs_the_cloned_job(scheduler, engine, executor):
    scheduler.create("job-1", "daily", datetime(2024, 1, 1))
    job_id = scheduler.run_due(datetime(2024, 1, 2))[0]

    result = scheduler._start(job_id)
    assert result == {"scan_id": job_id, "status": "Running"}
    assert [call[1] for call in executor.ran("deploy.yml")] == [job_id]
    assert engine.store.get_job("job-1").status == JobStatus.CREATED


def test_scheduler_thread_launches_due_runs(engine, clock):
    engine.scheduler.create("job-1", "daily", datetime(2024, 1, 1))
    clock.advance(hours=12)

    def finished_runs():
        with engine.job_manager.lock:
            return [entry for entry in engine.job_manager.jobs.values()
                    if entry.job_type == "scheduled_scan" and entry.status != "running"]

    assert engine.start_scheduler(0) is None
    thread = engine.start_scheduler(0.01)
    try:
        deadline = time.time() + 5
        while not finished_runs() and time.time() < deadline:
            time.sleep(0.01)
    finally:
        engine.shutdown()

    runs = finished_runs()
    assert [run.status for run in runs] == ["completed"]
    job_id = runs[0].result["scan_id"]
    assert engine.store.get_job(job_id).status == JobStatus.RUNNING
    assert engine.scheduler.list_schedules()[0].last_job_id == job_id
    assert not thread.is_alive()


@pytest.fixture
def client(engine):
    return TestClient(create_app(engine))


def test_schedule_endpoints(client):
    resp = client.post("/scan/schedule", json={
        "scan_id": "job-1",
        "frequency": "weekly",
        "start_date": "2024-01-01T00:00:00Z",
        "schedule_details": {"frequency": "weekly", "selectedDays": ["monday"]},
    })
    assert resp.status_code == 200
    schedule = resp.json()["schedule"]
    assert schedule["cron_expression"] == "0 0 * * 1"
    assert schedule["next_run_at"] == "2024-01-08T00:00:00Z"
    assert schedule["schedule_details"] == {"frequency": "weekly", "selected_days": ["monday"]}

    listed = client.get("/scan/scheduled").json()
    assert [item["id"] for item in listed] == [schedule["id"]]
    assert client.get("/scan/scheduled", params={"scan_id": "other"}).json() == []

    resp = client.delete(f"/scan/scheduled/{schedule['id']}")
    assert resp.json() == {"success": True, "message": "Scheduled scan deleted"}
    assert client.get("/scan/scheduled").json() == []
    assert client.delete(f"/scan/scheduled/{schedule['id']}").status_code == 404


def test_schedule_validation_errors(client):
    base = {"scan_id": "job-1", "start_date": "2024-01-01T00:00:00Z"}
    assert client.post("/scan/schedule", json={**base, "frequency": "hourly"}).status_code == 400
    assert client.post("/scan/schedule", json={"scan_id": "job-1", "frequency": "daily"}).status_code == 422
    assert client.post("/scan/schedule", json={**base, "scan_id": "nope", "frequency": "daily"}).status_code == 404
