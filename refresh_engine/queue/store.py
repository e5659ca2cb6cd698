"""
Market Brain — Queue Store
────────────────────────────
Refresh jobs in Redis. Every state change is one Lua script call
(see LuaScripts), so concurrent API requests and worker processes never
race each other through a read-then-write gap.

Lifecycle:
  pending ──claim──► processing ──complete──► complete
                        │
                        └──fail──► failed ──(retryable, attempts left)──► new pending job

Jobs are never deleted; a retry is a new job pointing back at its parent.
"""

import logging
import time
import uuid
from typing import Dict, Iterable, List, Optional, Union

from refresh_engine.cache.lua_scripts import LuaScripts
from refresh_engine.cache.redis_client import (
    DAY_KEY_TTL_S, JOB_KEY_PREFIX, KEY_DELAYED, KEY_PENDING, KEY_PROCESSING,
    as_str, key_active, key_job, key_quota, key_record, key_stats,
)
from refresh_engine.cache.storage import Storage
from refresh_engine.errors import InvalidTransition, JobNotFound, RefreshError, StalenessViolation
from refresh_engine.queue.models import Admission, Outcome, QueueJob, pending_rank
from refresh_engine.queue.retry import RetryPolicy
from refresh_engine.quota.ledger import utc_date
from refresh_engine.registry.models import GLOBAL_ENTITY, DataType, Scope
from refresh_engine.registry.registry import Registry

log = logging.getLogger("mb.queue")


def _new_id() -> str:
    return uuid.uuid4().hex


def _num(value: float) -> str:
    return repr(float(value))


class QueueStore:

    def __init__(self, redis, registry: Registry, policy: Optional[RetryPolicy] = None):
        self.redis    = redis
        self.registry = registry
        self.policy   = policy or RetryPolicy()
        self.storage  = Storage(redis)

    def entity_for(self, entity_key: str, data_type) -> str:
        """Global data types share one record regardless of who asked."""
        if self.registry.lookup(data_type).scope is Scope.GLOBAL:
            return GLOBAL_ENTITY
        return entity_key

    # ── Admission ─────────────────────────────────────────────

    async def enqueue_if_stale(
        self,
        entity_key: str,
        data_type:  Union[DataType, str],
        priority:   int = 0,
        now:        Optional[float] = None,
    ) -> Admission:
        dt = self.registry.lookup(data_type).data_type
        result = await self.enqueue_batch(entity_key, [dt], priority, now)
        return result[dt]

    async def enqueue_batch(
        self,
        entity_key: str,
        data_types: Iterable[Union[DataType, str]],
        priority:   int = 0,
        now:        Optional[float] = None,
    ) -> Dict[DataType, Admission]:
        """Admit one job per stale, unqueued data type. One round trip for all types."""
        now     = time.time() if now is None else now
        entries = []
        for raw in data_types:
            entry = self.registry.lookup(raw)
            if entry not in entries:
                entries.append(entry)
        if not entries:
            return {}

        rank = _num(pending_rank(priority, now))
        keys: List[str] = [KEY_PENDING]
        args: List[str] = [_num(now), str(priority), str(len(entries))]
        for entry in entries:
            entity = self.entity_for(entity_key, entry.data_type)
            job_id = _new_id()
            keys += [
                key_active(entry.data_type.value, entity),
                key_record(entry.storage_target, entity),
                key_job(job_id),
            ]
            args += [
                str(entry.ttl_seconds), entry.freshness_column, job_id,
                entity, entry.data_type.value, rank,
            ]

        replies = await self.redis.eval(LuaScripts.ENQUEUE_BATCH, len(keys), *keys, *args)
        result = {e.data_type: Admission.from_reply(r) for e, r in zip(entries, replies)}

        admitted = [dt.value for dt, a in result.items() if a.outcome is Outcome.ADMITTED]
        if admitted:
            log.info(f"Enqueued {entity_key}: {admitted} (priority {priority})")
        return result

    # ── Claim ─────────────────────────────────────────────────

    async def claim_next(self, worker_id: str, now: Optional[float] = None) -> Optional[QueueJob]:
        now = time.time() if now is None else now
        job_id = await self.redis.eval(
            LuaScripts.CLAIM_NEXT, 3,
            KEY_PENDING, KEY_DELAYED, KEY_PROCESSING,
            _num(now), worker_id, JOB_KEY_PREFIX,
        )
        if not job_id:
            return None

        job   = await self.get_job(as_str(job_id))
        entry = self.registry.lookup(job.data_type)
        if entry.source_timestamp_field:
            # what is stored right now is the floor the completed job must beat
            baseline = await self.storage.get_number(
                entry.storage_target, job.entity_key, entry.source_timestamp_field,
            )
            if baseline is not None:
                await self.redis.hset(key_job(job.id), "baseline_source_ts", _num(baseline))
                job.baseline_source_ts = baseline

        log.debug(f"{worker_id} claimed {job.data_type}:{job.entity_key} ({job.id})")
        return job

    # ── Terminal transitions ──────────────────────────────────

    async def complete_job(
        self,
        job_id:           str,
        actual_wire_bytes: int,
        source_timestamp: Optional[float] = None,
        now:              Optional[float] = None,
    ) -> int:
        """
        processing → complete. Charges actual_wire_bytes to today's quota.

        actual_wire_bytes must come from the transport (Content-Length or
        bytes downloaded), never from re-serialising the parsed payload.
        Returns the day's new quota total.
        """
        if isinstance(actual_wire_bytes, bool) or not isinstance(actual_wire_bytes, int) or actual_wire_bytes < 0:
            raise ValueError(f"actual_wire_bytes must be a non-negative int, got {actual_wire_bytes!r}")

        now   = time.time() if now is None else now
        job   = await self.get_job(job_id)
        entry = self.registry.lookup(job.data_type)
        if entry.source_timestamp_field and source_timestamp is None:
            raise ValueError(f"{entry.data_type.value} requires a source timestamp to complete")

        date  = utc_date(now)
        reply = as_str(await self.redis.eval(
            LuaScripts.COMPLETE_JOB, 5,
            key_job(job_id), KEY_PROCESSING, key_quota(date), key_stats(date),
            key_active(job.data_type, job.entity_key),
            _num(now), str(actual_wire_bytes),
            _num(source_timestamp) if source_timestamp is not None else "",
            job_id, str(DAY_KEY_TTL_S),
        ))
        kind, _, detail = reply.partition(":")
        if kind == "stale":
            raise StalenessViolation(
                f"{job.data_type}:{job.entity_key} source ts {detail} not newer than {job.baseline_source_ts}",
                new_ts=source_timestamp, stored_ts=job.baseline_source_ts,
            )
        if kind == "invalid":
            raise InvalidTransition(f"cannot complete job {job_id} in status {detail}")

        log.info(f"Completed {job.data_type}:{job.entity_key} — {actual_wire_bytes:,} bytes (day total {int(detail):,})")
        return int(detail)

    async def fail_job(
        self,
        job_id:      str,
        error:       Union[Exception, str],
        retryable:   bool,
        retry_delay: Optional[float] = None,
        category:    Optional[str] = None,
        now:         Optional[float] = None,
    ) -> Optional[str]:
        """
        processing → failed. When retryable and attempts remain, spawns a
        new pending job and returns its id; otherwise returns None.
        """
        now = time.time() if now is None else now
        job = await self.get_job(job_id)

        if category is None:
            category = error.category if isinstance(error, RefreshError) else "internal"
        will_retry = self.policy.should_retry(job.attempt_count, retryable)
        if not will_retry:
            retry_delay = 0.0
        elif retry_delay is None:
            if isinstance(error, Exception):
                retry_delay = self.policy.delay_for(error, job.attempt_count, now)
            else:
                retry_delay = self.policy.backoff(job.attempt_count)

        eligible = now + max(retry_delay, 0.0)
        retry_id = _new_id()
        date     = utc_date(now)
        field    = "stale_rejections" if category == "stale_data" else "failed"

        reply = as_str(await self.redis.eval(
            LuaScripts.FAIL_JOB, 7,
            key_job(job_id), KEY_PROCESSING, key_active(job.data_type, job.entity_key),
            KEY_PENDING, KEY_DELAYED, key_job(retry_id), key_stats(date),
            _num(now), str(error)[:500], category, "1" if will_retry else "0",
            str(self.policy.max_attempts), job_id, retry_id,
            _num(eligible), _num(pending_rank(job.priority, eligible)), field, str(DAY_KEY_TTL_S),
        ))
        kind, _, detail = reply.partition(":")
        if kind == "invalid":
            raise InvalidTransition(f"cannot fail job {job_id} in status {detail}")

        tag = f"{job.data_type}:{job.entity_key}"
        if kind == "retry":
            log.warning(f"Failed {tag} [{category}] attempt {job.attempt_count} — retry in {retry_delay:.0f}s: {error}")
            return detail
        log.error(f"Failed {tag} [{category}] attempt {job.attempt_count} — giving up: {error}")
        return None

    # ── Reaper ────────────────────────────────────────────────

    async def requeue_expired_leases(
        self,
        lease_timeout_s: float,
        now:             Optional[float] = None,
    ) -> List[str]:
        """
        Fail every job processing for longer than the lease and spawn its
        replacement immediately. Returns the ids of the replacements.
        """
        now = time.time() if now is None else now
        expired = await self.redis.zrangebyscore(KEY_PROCESSING, "-inf", _num(now - lease_timeout_s))
        spawned = []
        for raw in expired:
            job_id = as_str(raw)
            try:
                retry_id = await self.fail_job(
                    job_id, "lease expired", retryable=True,
                    retry_delay=0, category="lease_expired", now=now,
                )
            except InvalidTransition:
                continue   # worker finished between the scan and the script
            except JobNotFound:
                await self.redis.zrem(KEY_PROCESSING, job_id)
                continue
            if retry_id:
                spawned.append(retry_id)
        if expired:
            log.warning(f"Reaper: {len(expired)} expired leases, {len(spawned)} requeued")
        return spawned

    # ── Reads ─────────────────────────────────────────────────

    async def get_job(self, job_id: str) -> QueueJob:
        raw = await self.redis.hgetall(key_job(job_id))
        if not raw:
            raise JobNotFound(f"job {job_id} not found")
        return QueueJob.from_hash(raw)

    async def active_job_id(self, entity_key: str, data_type) -> Optional[str]:
        dt = self.registry.lookup(data_type).data_type
        return as_str(await self.redis.get(key_active(dt.value, self.entity_for(entity_key, dt))))

    async def counts(self) -> Dict[str, int]:
        pipe = self.redis.pipeline(transaction=False)
        pipe.zcard(KEY_PENDING)
        pipe.zcard(KEY_DELAYED)
        pipe.zcard(KEY_PROCESSING)
        pending, delayed, processing = await pipe.execute()
        return {"pending": int(pending), "delayed": int(delayed), "processing": int(processing)}

    async def stuck_jobs(self, older_than_s: float, now: Optional[float] = None) -> List[QueueJob]:
        now = time.time() if now is None else now
        ids = await self.redis.zrangebyscore(KEY_PROCESSING, "-inf", _num(now - older_than_s))
        jobs = []
        for job_id in ids:
            try:
                jobs.append(await self.get_job(as_str(job_id)))
            except JobNotFound:
                continue
        return jobs

    async def daily_stats(self, date: Optional[str] = None) -> Dict[str, int]:
        raw = await self.redis.hgetall(key_stats(date or utc_date()))
        stats = {"completed": 0, "failed": 0, "stale_rejections": 0}
        for k, v in (raw or {}).items():
            stats[as_str(k)] = int(v)
        return stats
