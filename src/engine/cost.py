# src/engine/cost.py
"""
CostAccountant: bills a scan as whole VM hours times the provider's hourly price.

The cost column is written once. Every path that finalizes goes through a
conditional update that only succeeds while the cost is still empty, so a
stop racing a cost callback or the periodic sweep bills the job exactly once.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from engine.errors import ValidationError
from engine.models import utcnow


@dataclass(frozen=True)
class CostQuote:
    cost: Decimal
    final: bool
    hours: int
    hourly_price: Optional[Decimal]

    def to_dict(self):
        return {
            "cost": str(self.cost),
            "final": self.final,
            "hours": self.hours,
            "hourly_price": str(self.hourly_price) if self.hourly_price is not None else None,
        }


def billable_hours(start: datetime, end: datetime) -> int:
    seconds = (end - start).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 3600)


class CostAccountant:
    def __init__(self, store, pricing, clock=utcnow):
        self.store = store
        self.pricing = pricing
        self.clock = clock

    def _window(self, job, now):
        start = job.vm_start_time or job.start_time
        end = job.vm_stop_time or job.end_time or now
        return start, end

    def hourly_price(self, job, vm_size=None) -> Decimal:
        profile = self.store.get_profile(job.scan_profile_id)
        provider = self.store.get_provider(profile.vm_provider_id)
        size = vm_size or job.vm_size or profile.vm_size
        if not size:
            raise ValidationError(f"Could not determine VM size for scan {job.id}")
        region = (provider.settings or {}).get("region", "")
        return self.pricing.hourly_price(provider, region, size)

    def _store_once(self, job_id, hours, price) -> Decimal:
        cost = Decimal(hours) * price
        if self.store.set_cost_if_unset(job_id, cost):
            logging.info(f"[job_id={job_id}] Cost finalized: {hours}h x {price} = {cost}")
            return cost
        # lost the race, someone else already billed this job
        return self.store.get_job(job_id).cost

    def finalize(self, job_id: str) -> Optional[Decimal]:
        job = self.store.get_job(job_id)
        if job.cost is not None:
            return job.cost
        start, end = self._window(job, self.clock())
        if start is None:
            logging.warning(f"[job_id={job_id}] No start time recorded, cost not finalized")
            return None
        hours = billable_hours(start, end)
        return self._store_once(job_id, hours, self.hourly_price(job))

    def estimate(self, job_id: str) -> CostQuote:
        job = self.store.get_job(job_id)
        if job.cost is not None:
            return CostQuote(cost=job.cost, final=True, hours=0, hourly_price=None)
        start = job.vm_start_time or job.start_time
        if start is None:
            return CostQuote(cost=Decimal("0"), final=False, hours=0, hourly_price=None)
        hours = billable_hours(start, self.clock())
        price = self.hourly_price(job)
        return CostQuote(cost=Decimal(hours) * price, final=False, hours=hours, hourly_price=price)

    def record_callback_cost(self, job_id: str, start: datetime, end: datetime, vm_size: str) -> Decimal:
        job = self.store.get_job(job_id)
        if job.cost is not None:
            return job.cost
        if end < start:
            raise ValidationError("end_time is before start_time")
        hours = billable_hours(start, end)
        return self._store_once(job_id, hours, self.hourly_price(job, vm_size))

    def finalize_pending(self) -> int:
        """Finalize every stopped job still missing a cost. Returns how many were billed."""
        billed = 0
        for job in self.store.jobs_pending_cost():
            try:
                if self.finalize(job.id) is not None:
                    billed += 1
            except Exception as e:
                logging.error(f"[job_id={job.id}] Cost sweep failed: {e}")
        if billed:
            logging.info(f"[cost] Sweep finalized {billed} job(s)")
        return billed
