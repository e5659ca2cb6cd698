"""
Market Brain — Quota Ledger
─────────────────────────────
Cumulative provider wire bytes per UTC day, against a daily cap.
Replaces per-process token buckets: every worker process increments the
same Redis counter, so the total is shared.

  is_exceeded(date)       admission gate, checked BEFORE every fetch
  usage(date)             QuotaUsageRecord for monitoring
  record(bytes, date)     single atomic INCRBY
  seconds_until_reset()   wait until the next UTC midnight

The gate is soft: a worker checks, then fetches, while others complete.
A small overshoot is accepted because the counter resets daily.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from refresh_engine.cache.redis_client import DAY_KEY_TTL_S, key_quota
from refresh_engine.cache.storage import Storage

log = logging.getLogger("mb.quota")


def utc_date(now: Optional[float] = None) -> str:
    ts = time.time() if now is None else now
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")


def seconds_until_reset(now: Optional[float] = None) -> float:
    ts  = time.time() if now is None else now
    dt  = datetime.fromtimestamp(ts, tz=timezone.utc)
    nxt = (dt + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return nxt.timestamp() - ts


@dataclass(frozen=True)
class QuotaUsageRecord:
    date:        str
    total_bytes: int
    cap_bytes:   int

    @property
    def exceeded(self) -> bool:
        return self.total_bytes >= self.cap_bytes

    @property
    def used_pct(self) -> float:
        if self.cap_bytes <= 0:
            return 100.0
        return round(self.total_bytes / self.cap_bytes * 100, 2)

    def to_dict(self) -> dict:
        return {
            "date":        self.date,
            "total_bytes": self.total_bytes,
            "cap_bytes":   self.cap_bytes,
            "used_pct":    self.used_pct,
            "exceeded":    self.exceeded,
        }


class QuotaLedger:

    def __init__(self, redis, cap_bytes: int):
        self.redis     = redis
        self.storage   = Storage(redis)
        self.cap_bytes = cap_bytes

    async def usage(self, date: Optional[str] = None) -> QuotaUsageRecord:
        date = date or utc_date()
        raw  = await self.redis.get(key_quota(date))
        return QuotaUsageRecord(date=date, total_bytes=int(raw or 0), cap_bytes=self.cap_bytes)

    async def is_exceeded(self, date: Optional[str] = None) -> bool:
        return (await self.usage(date)).exceeded

    async def record(self, wire_bytes: int, date: Optional[str] = None) -> int:
        if wire_bytes < 0:
            raise ValueError("wire_bytes must be non-negative")
        total = await self.storage.increment(key_quota(date or utc_date()), wire_bytes, ttl_s=DAY_KEY_TTL_S)
        if total >= self.cap_bytes:
            log.warning(f"Daily quota reached: {total:,} / {self.cap_bytes:,} bytes")
        return total
