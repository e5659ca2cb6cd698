"""
Market Brain — Worker Pool
────────────────────────────
Claims jobs from the queue and runs each through the refresh pipeline:

  1. quota gate          QuotaExceeded → fail, no fetch, retry after UTC midnight
  2. fetch               timeouts / 5xx / 429 → TransientNetworkError
  3. parse               strict schema, drift → ValidationError
  4. wire size           transport bytes, summed across endpoints
  5. source timestamp    not newer than stored → StalenessViolation, no write,
                         wire bytes still charged to quota
  6. guarded upsert      keyed by the registry's conflict key
  7. complete            charges wire bytes to today's quota

Any failure goes to fail_job with the error's retryable flag.

run_batch() is the scheduled processor sweep; run_forever() is a
dedicated worker process.
"""

import asyncio
import logging
import os
import socket
import time
from typing import Dict, Optional

import httpx

from fetch_workers.base import FetchWorker
from refresh_engine.cache.storage import Storage
from refresh_engine.errors import InvalidTransition, QuotaExceeded, RefreshError, StalenessViolation
from refresh_engine.orchestrator.health import HealthMonitor
from refresh_engine.orchestrator.staleness import StalenessDetector
from refresh_engine.queue.models import QueueJob
from refresh_engine.queue.store import QueueStore
from refresh_engine.quota.ledger import QuotaLedger
from refresh_engine.registry.models import DataType

log = logging.getLogger("mb.pool")


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class WorkerPool:

    def __init__(
        self,
        queue:     QueueStore,
        ledger:    QuotaLedger,
        detector:  StalenessDetector,
        storage:   Storage,
        workers:   Dict[DataType, FetchWorker],
        client:    httpx.AsyncClient,
        worker_id: Optional[str] = None,
        job_timeout: float = 60.0,
        health:    Optional[HealthMonitor] = None,
    ):
        self.queue       = queue
        self.ledger      = ledger
        self.detector    = detector
        self.storage     = storage
        self.workers     = workers
        self.client      = client
        self.worker_id   = worker_id or default_worker_id()
        self.job_timeout = job_timeout
        self.health      = health

    # ── One job ───────────────────────────────────────────────

    async def _refresh(self, job: QueueJob) -> int:
        dt     = DataType(job.data_type)
        entry  = self.queue.registry.lookup(dt)
        worker = self.workers[dt]

        if await self.ledger.is_exceeded():
            raise QuotaExceeded(f"daily quota of {self.ledger.cap_bytes:,} bytes reached")

        records, wire_bytes = await worker.fetch(self.client, job.entity_key)
        source_ts = worker.source_timestamp(records)
        try:
            await self.detector.check_source_timestamp(job.entity_key, dt, source_ts)

            rows = worker.to_rows(job.entity_key, records, fetched_at=time.time())
            written = await self.storage.upsert(
                entry.storage_target, rows, entry.conflict_key,
                guard_field=entry.source_timestamp_field,
            )
            if written == 0:
                # another write landed between the pre-check and the upsert
                raise StalenessViolation(f"{dt.value}:{job.entity_key} upsert rejected by source timestamp guard")
        except StalenessViolation:
            # the provider billed the response even though nothing is stored
            await self.ledger.record(wire_bytes)
            raise

        await self.queue.complete_job(job.id, wire_bytes, source_ts)
        return wire_bytes

    async def _fail(self, job: QueueJob, error, retryable: bool, category: Optional[str] = None) -> Optional[str]:
        try:
            return await self.queue.fail_job(job.id, error, retryable, category=category)
        except InvalidTransition as e:
            # reaper got there first; its replacement job carries on
            log.warning(f"{job.data_type}:{job.entity_key}: {e}")
            return None

    async def process_job(self, job: QueueJob) -> str:
        """Returns 'complete', 'retry' or 'failed'."""
        tag = f"{job.data_type}:{job.entity_key}"
        try:
            await asyncio.wait_for(self._refresh(job), timeout=self.job_timeout)
            return "complete"
        except InvalidTransition as e:
            log.warning(f"{tag}: {e}")
            return "failed"
        except RefreshError as e:
            retry_id = await self._fail(job, e, e.retryable)
        except asyncio.TimeoutError:
            log.warning(f"{tag}: job exceeded {self.job_timeout:.0f}s")
            retry_id = await self._fail(job, "job timed out", True, category="transient")
        except Exception as e:
            log.exception(f"{tag}: unexpected error")
            retry_id = await self._fail(job, f"{type(e).__name__}: {e}", False, category="internal")
        return "retry" if retry_id else "failed"

    # ── Batches ───────────────────────────────────────────────

    async def run_batch(self, batch_size: int = 10, concurrency: int = 5) -> Dict[str, int]:
        """Claim up to batch_size jobs and process them, concurrency at a time."""
        sem    = asyncio.Semaphore(max(concurrency, 1))
        counts = {"claimed": 0, "complete": 0, "retry": 0, "failed": 0}

        async def _one(job: QueueJob):
            async with sem:
                try:
                    outcome = await self.process_job(job)
                except Exception:
                    # fail_job itself broke; the reaper reclaims the lease later
                    log.exception(f"{job.data_type}:{job.entity_key}: could not record outcome")
                    outcome = "failed"
                counts[outcome] += 1

        tasks = []
        for _ in range(batch_size):
            job = await self.queue.claim_next(self.worker_id)
            if job is None:
                break
            counts["claimed"] += 1
            tasks.append(asyncio.create_task(_one(job)))

        if tasks:
            await asyncio.gather(*tasks)
            log.info(
                f"Batch done — {counts['claimed']} claimed  {counts['complete']} ok  "
                f"{counts['retry']} retrying  {counts['failed']} failed"
            )
        return counts

    async def run_forever(
        self,
        batch_size:  int = 10,
        concurrency: int = 5,
        idle_sleep:  float = 2.0,
        stop:        Optional[asyncio.Event] = None,
    ):
        log.info(f"Worker {self.worker_id} started")
        stop = stop or asyncio.Event()
        while not stop.is_set():
            try:
                counts = await self.run_batch(batch_size, concurrency)
                if self.health is not None:
                    await self.health.record_run("process-queue")
            except Exception as e:
                log.error(f"Batch error: {e}")
                counts = {"claimed": 0}
            if counts["claimed"] == 0:
                try:
                    await asyncio.wait_for(stop.wait(), timeout=idle_sleep)
                except asyncio.TimeoutError:
                    pass
        log.info(f"Worker {self.worker_id} stopped")
