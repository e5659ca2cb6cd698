"""
Market Brain — Sweep Health Monitor
─────────────────────────────────────
Every scheduled sweep stamps its last run into mb:rq:sweeps. The monitor
compares those stamps against each sweep's expected interval:

  unhealthy  ⇔  last_run is missing  OR  now - last_run > expected + buffer

Only sweep names, run times and minutes overdue leave this module.
Nothing about jobs, symbols or quota is exposed here.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from refresh_engine.cache.redis_client import KEY_SWEEP_RUNS, as_str
from refresh_engine.cache.ttl_config import SWEEP_INTERVALS

log = logging.getLogger("mb.health")

# sweep name → expected interval (minutes)
CRITICAL_SWEEPS: Dict[str, int] = {name: expected for name, (_, expected) in SWEEP_INTERVALS.items()}


@dataclass(frozen=True)
class JobHealthRecord:
    job_name:                  str
    last_run:                  Optional[float]
    expected_interval_minutes: int

    def minutes_since_run(self, now: float) -> Optional[float]:
        if self.last_run is None:
            return None
        return (now - self.last_run) / 60

    def is_stale(self, now: float, buffer_minutes: float = 0) -> bool:
        since = self.minutes_since_run(now)
        if since is None:
            return True
        return since > self.expected_interval_minutes + buffer_minutes

    def to_dict(self, now: float) -> dict:
        since = self.minutes_since_run(now)
        return {
            "name":                      self.job_name,
            "last_run":                  self.last_run,
            "expected_interval_minutes": self.expected_interval_minutes,
            "minutes_since_run":         round(since, 1) if since is not None else None,
        }


@dataclass
class HealthStatus:
    healthy:    bool
    jobs:       List[dict]
    stale_jobs: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        if self.healthy:
            return {"status": "healthy", "jobs": self.jobs}
        return {"status": "unhealthy", "staleJobs": self.stale_jobs}


class HealthMonitor:

    def __init__(self, redis, sweeps: Optional[Dict[str, int]] = None, buffer_minutes: float = 0):
        self.redis          = redis
        self.sweeps         = dict(sweeps if sweeps is not None else CRITICAL_SWEEPS)
        self.buffer_minutes = buffer_minutes

    async def record_run(self, job_name: str, now: Optional[float] = None):
        await self.redis.hset(KEY_SWEEP_RUNS, job_name, repr(time.time() if now is None else now))

    async def records(self) -> List[JobHealthRecord]:
        raw = await self.redis.hgetall(KEY_SWEEP_RUNS) or {}
        runs = {as_str(k): float(as_str(v)) for k, v in raw.items()}
        return [
            JobHealthRecord(name, runs.get(name), expected)
            for name, expected in self.sweeps.items()
        ]

    async def status(self, now: Optional[float] = None) -> HealthStatus:
        now     = time.time() if now is None else now
        records = await self.records()
        stale   = []
        for r in records:
            if not r.is_stale(now, self.buffer_minutes):
                continue
            since = r.minutes_since_run(now)
            overdue = None if since is None else round(since - r.expected_interval_minutes - self.buffer_minutes, 1)
            stale.append({**r.to_dict(now), "minutes_overdue": overdue})

        if stale:
            log.warning(f"Stale sweeps: {[s['name'] for s in stale]}")
        return HealthStatus(
            healthy    = not stale,
            jobs       = [r.to_dict(now) for r in records],
            stale_jobs = stale,
        )
