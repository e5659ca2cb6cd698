"""
Market Brain — Refresh Sweep Scheduler
═══════════════════════════════════════════════════════════════════════

Every sweep has a single, specific reason to exist, and every sweep
stamps its last run so the health check can tell when one has stalled.

─────────────────────────────────────────────────────────────────────
SWEEPS                         every   health alarm after
─────────────────────────────────────────────────────────────────────
  process-queue                1 min   2 min
         └─ Claim a batch of pending jobs and run them through the
            worker pipeline (quota gate → fetch → validate → write).

  check-stale-data             1 min   10 min
         └─ Fallback for the subscription path: re-admit any watched
            (symbol, data type) whose record has outlived its TTL.

  queue-scheduled-refreshes    1 min   5 min
         └─ Global reference data (exchange lists) refreshed on TTL
            whether or not anyone is watching.

  cleanup-subscriptions        1 min   20 min
         └─ Drop subscriptions without a heartbeat for 5 minutes.

  reap-expired-leases          2 min   10 min
         └─ Fail jobs whose worker died mid-flight and requeue them.

  refresh-registry             15 min  (not critical)
         └─ Rebuild the registry from defaults + stored overrides.
"""

import logging
import time
from typing import Awaitable, Callable, Optional

from refresh_engine.cache.ttl_config import SWEEP_INTERVALS
from refresh_engine.engine import RefreshEngine

log = logging.getLogger("mb.scheduler")

_scheduler  = None
_is_running = False

GRACE_S = 30   # misfire grace window


def tracked(name: str, engine: RefreshEngine, func: Callable[[], Awaitable]) -> Callable[[], Awaitable]:
    """Wrap a sweep so every completed run is recorded for the health check."""
    async def _job():
        t0 = time.monotonic()
        try:
            result = await func()
        except Exception as e:
            # no stamp: a sweep that keeps failing shows up as stale
            log.error(f"[{name}] failed: {e}")
            return
        await engine.health.record_run(name)
        elapsed = round(time.monotonic() - t0, 2)
        log.debug(f"[{name}] done in {elapsed}s → {result}")
    _job.__name__ = name.replace("-", "_")
    return _job


def build_jobs(engine: RefreshEngine, pool=None):
    """(job_id, every_minutes, coroutine function) for every sweep."""
    s = engine.settings
    jobs = [
        ("check-stale-data",          engine.enqueuer.sweep_stale),
        ("queue-scheduled-refreshes", engine.enqueuer.queue_scheduled),
        ("cleanup-subscriptions",     engine.tracker.cleanup),
        ("reap-expired-leases",       lambda: engine.queue.requeue_expired_leases(s.lease_timeout_s)),
    ]
    if pool is not None:
        jobs.insert(0, ("process-queue", lambda: pool.run_batch(s.batch_size, s.max_concurrent_jobs)))

    out = [(name, SWEEP_INTERVALS[name][0], tracked(name, engine, func)) for name, func in jobs]

    async def _refresh_registry():
        await engine.registry.refresh(engine.redis)
    out.append(("refresh-registry", s.registry_refresh_minutes, _refresh_registry))
    return out


# ─────────────────────────────────────────────────────────────
# SCHEDULER CONTROL
# ─────────────────────────────────────────────────────────────

def start_scheduler(engine: RefreshEngine, pool=None):
    global _scheduler, _is_running
    if _is_running:
        log.warning("Refresh scheduler already running, start ignored")
        return

    from apscheduler.schedulers.asyncio import AsyncIOScheduler
    from apscheduler.triggers.interval import IntervalTrigger

    _scheduler = AsyncIOScheduler(timezone="UTC")

    log.info("Refresh scheduler: registering sweeps")
    jobs = build_jobs(engine, pool)
    for job_id, minutes, func in jobs:
        _scheduler.add_job(
            func,
            IntervalTrigger(minutes=minutes),
            id                 = job_id,
            name               = job_id,
            max_instances      = 1,
            coalesce           = True,
            misfire_grace_time = GRACE_S,
            replace_existing   = True,
        )
        log.info(f"  every {minutes:>3} min  {job_id}")

    _scheduler.start()
    _is_running = True
    log.info(f"Refresh scheduler live: {len(jobs)} sweeps")


def stop_scheduler():
    """Shut down without waiting; a sweep in flight finishes on its own."""
    global _scheduler, _is_running
    if not _is_running:
        return
    _scheduler.shutdown(wait=False)
    _scheduler, _is_running = None, False
    log.info("Refresh scheduler stopped")


def get_scheduler_status() -> dict:
    """Sweeps in next-run order. Health lives in /health-check, not here."""
    if not _is_running:
        return {"running": False, "jobs": []}

    sweeps = sorted(
        _scheduler.get_jobs(),
        key=lambda j: j.next_run_time.timestamp() if j.next_run_time else float("inf"),
    )
    return {
        "running": True,
        "jobs": [{
            "id":               j.id,
            "interval_minutes": int(j.trigger.interval.total_seconds() // 60),
            "next_run":         j.next_run_time.isoformat() if j.next_run_time else None,
        } for j in sweeps],
    }


async def run_sweep_now(engine: RefreshEngine, name: str, pool=None) -> Optional[bool]:
    """Run one sweep out of schedule (worker CLI / tests). None if unknown."""
    for job_id, _, func in build_jobs(engine, pool):
        if job_id == name:
            await func()
            return True
    return None
