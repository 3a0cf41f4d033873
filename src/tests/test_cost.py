import time
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from engine.cost import billable_hours
from engine.errors import ValidationError
from engine.models import JobStatus


@pytest.mark.parametrize("duration,hours", [
    (timedelta(0), 0),
    (timedelta(seconds=-5), 0),
    (timedelta(minutes=1), 1),
    (timedelta(hours=2), 2),
    (timedelta(hours=2, minutes=10), 3),
])
def test_billable_hours_round_up(duration, hours):
    start = datetime(2024, 1, 1)
    assert billable_hours(start, start + duration) == hours


def test_finalize_bills_started_hours(engine, clock):
    t0 = clock()
    engine.store.update_fields("job-1", vm_start_time=t0, vm_stop_time=t0 + timedelta(hours=2, minutes=10))

    assert engine.cost.finalize("job-1") == Decimal("0.30")
    assert engine.store.get_job("job-1").cost == Decimal("0.30")


def test_finalize_is_idempotent(engine, clock, pricing_client):
    t0 = clock()
    engine.store.update_fields("job-1", vm_start_time=t0, vm_stop_time=t0 + timedelta(hours=1))
    first = engine.cost.finalize("job-1")

    pricing_client.price = Decimal("9.99")
    engine.store.update_fields("job-1", vm_stop_time=t0 + timedelta(hours=5))

    assert engine.cost.finalize("job-1") == first
    assert engine.store.get_job("job-1").cost == Decimal("0.10")
    assert len(pricing_client.lookups) == 1


def test_conditional_write_only_succeeds_once(store):
    assert store.set_cost_if_unset("job-1", Decimal("1.50"))
    assert not store.set_cost_if_unset("job-1", Decimal("2.00"))
    assert store.get_job("job-1").cost == Decimal("1.50")


def test_finalize_falls_back_to_start_and_end_time(engine, clock):
    engine.store.update_fields("job-1", start_time=clock() - timedelta(minutes=30), end_time=clock())
    assert engine.cost.finalize("job-1") == Decimal("0.10")


def test_finalize_without_start_does_nothing(engine):
    assert engine.cost.finalize("job-1") is None
    assert engine.store.get_job("job-1").cost is None


def test_estimate_uses_now_and_does_not_write(engine, clock, pricing_client):
    engine.store.update_fields("job-1", vm_start_time=clock() - timedelta(hours=4, minutes=1))

    quote = engine.cost.estimate("job-1")
    assert not quote.final
    assert quote.hours == 5
    assert quote.cost == Decimal("0.50")
    assert pricing_client.lookups == [("do-token", "ams3", "s-1vcpu-1gb")]
    assert engine.store.get_job("job-1").cost is None


def test_estimate_returns_final_cost(engine):
    engine.store.set_cost_if_unset("job-1", Decimal("0.70"))
    quote = engine.cost.estimate("job-1")
    assert quote.final
    assert quote.cost == Decimal("0.70")


def test_callback_cost_uses_reported_window_and_size(engine, pricing_client):
    start = datetime(2024, 1, 1, 10, 0)
    cost = engine.cost.record_callback_cost("job-1", start, start + timedelta(minutes=90), "s-2vcpu-4gb")
    assert cost == Decimal("0.20")
    assert pricing_client.lookups[-1][2] == "s-2vcpu-4gb"

    again = engine.cost.record_callback_cost("job-1", start, start + timedelta(hours=10), "s-2vcpu-4gb")
    assert again == Decimal("0.20")


def test_callback_cost_rejects_reversed_window(engine):
    start = datetime(2024, 1, 1, 10, 0)
    with pytest.raises(ValidationError):
        engine.cost.record_callback_cost("job-1", start, start - timedelta(minutes=1), "s-1vcpu-1gb")


def test_sweep_bills_stopped_jobs_and_skips_manual(engine, clock):
    t0 = clock()
    engine.store.update_fields("job-1", vm_start_time=t0, vm_stop_time=t0 + timedelta(minutes=20))
    manual = engine.lifecycle.import_manual("import")
    engine.store.update_fields(manual.id, vm_start_time=t0, vm_stop_time=t0 + timedelta(hours=1))

    assert engine.cost.finalize_pending() == 1
    assert engine.store.get_job("job-1").cost == Decimal("0.10")
    assert engine.store.get_job(manual.id).cost is None
    assert engine.store.get_job(manual.id).status == JobStatus.MANUAL
    assert engine.cost.finalize_pending() == 0


def test_sweeper_thread_finalizes_in_background(engine, clock):
    t0 = clock()
    engine.store.update_fields("job-1", vm_start_time=t0, vm_stop_time=t0 + timedelta(minutes=30))

    assert engine.start_cost_sweeper(0) is None
    thread = engine.start_cost_sweeper(0.01)
    try:
        deadline = time.time() + 5
        while engine.store.get_job("job-1").cost is None and time.time() < deadline:
            time.sleep(0.01)
    finally:
        engine.shutdown()

    assert engine.store.get_job("job-1").cost == Decimal("0.10")
    assert not thread.is_alive()
