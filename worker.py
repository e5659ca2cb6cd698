"""
Market Brain — Refresh Worker
──────────────────────────────
Standalone worker process. Run as many as the provider quota allows;
they coordinate only through Redis.

  python worker.py --mode forever      claim and process jobs until stopped
  python worker.py --mode batch        process one batch and exit
  python worker.py --mode sweep --sweep check-stale-data
  python worker.py --mode status       print queue, quota and sweep health
"""

import argparse
import asyncio
import logging
import signal

from refresh_engine.cache.redis_client import close_redis, get_redis
from refresh_engine.cache.ttl_config import SWEEP_INTERVALS
from refresh_engine.config import get_settings
from refresh_engine.engine import RefreshEngine, provider_client
from refresh_engine.orchestrator.scheduler import run_sweep_now

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)
log = logging.getLogger("mb.worker")


async def print_status(engine: RefreshEngine):
    counts = await engine.queue.counts()
    usage  = await engine.ledger.usage()
    stats  = await engine.queue.daily_stats()
    health = await engine.health.status()
    print("\n══════════════════════════════════════════")
    print("  Market Brain — Refresh Queue Status")
    print("══════════════════════════════════════════")
    for k, v in counts.items():
        print(f"  {k:<12} {v}")
    print(f"\n  Quota {usage.date}: {usage.total_bytes:,} / {usage.cap_bytes:,} bytes ({usage.used_pct}%)")
    print(f"  Today: {stats['completed']} ok  {stats['failed']} failed  {stats['stale_rejections']} stale")
    print(f"\n  Sweeps: {'healthy' if health.healthy else 'UNHEALTHY'}")
    for j in health.jobs:
        print(f"    {j['name']:<28} last run {j['minutes_since_run']} min ago")
    print("══════════════════════════════════════════\n")


async def main(mode: str, sweep: str = None):
    settings = get_settings()
    redis    = await get_redis()
    engine   = RefreshEngine.build(redis, settings)
    await engine.registry.refresh(redis)

    client = provider_client(settings)
    pool   = engine.worker_pool(client)
    try:
        if mode == "status":
            await print_status(engine)
        elif mode == "batch":
            result = await pool.run_batch(settings.batch_size, settings.max_concurrent_jobs)
            print(f"\nResult: {result}")
        elif mode == "sweep":
            if await run_sweep_now(engine, sweep, pool) is None:
                raise SystemExit(f"unknown sweep {sweep!r}")
        else:
            stop = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, stop.set)
            await pool.run_forever(settings.batch_size, settings.max_concurrent_jobs, stop=stop)
    finally:
        await client.aclose()
        await close_redis()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Market Brain Refresh Worker")
    parser.add_argument(
        "--mode",
        choices=["forever", "batch", "sweep", "status"],
        default="forever",
        help=(
            "forever=process jobs until stopped  "
            "batch=one batch then exit  "
            "sweep=run one scheduled sweep now  "
            "status=print queue status"
        )
    )
    parser.add_argument("--sweep", choices=sorted(SWEEP_INTERVALS), default="check-stale-data")
    args = parser.parse_args()
    asyncio.run(main(args.mode, args.sweep))
