"""
Market Brain — Subscription Tracker
─────────────────────────────────────
Which (entity, data type) pairs a dashboard is watching right now.
Clients heartbeat through /track-subscription; pairs not seen for
SUBSCRIPTION_MAX_AGE_S are dropped by the cleanup sweep. The stale-data
sweep walks the live set.
"""

import logging
import time
from typing import Iterable, List, Optional, Tuple

from refresh_engine.cache.redis_client import KEY_SUBSCRIPTIONS, as_str
from refresh_engine.cache.ttl_config import SUBSCRIPTION_MAX_AGE_S

log = logging.getLogger("mb.subscriptions")


def _member(entity_key: str, data_type: str) -> str:
    return f"{data_type}|{entity_key}"


class SubscriptionTracker:

    def __init__(self, redis, max_age_s: float = SUBSCRIPTION_MAX_AGE_S):
        self.redis     = redis
        self.max_age_s = max_age_s

    async def touch(self, entity_key: str, data_types: Iterable[str], now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        mapping = {_member(entity_key, getattr(dt, "value", dt)): now for dt in data_types}
        if not mapping:
            return 0
        return int(await self.redis.zadd(KEY_SUBSCRIPTIONS, mapping))

    async def active(self, since: Optional[float] = None, now: Optional[float] = None) -> List[Tuple[str, str]]:
        """(entity_key, data_type) pairs seen at or after `since`."""
        now   = time.time() if now is None else now
        since = now - self.max_age_s if since is None else since
        out = []
        for raw in await self.redis.zrangebyscore(KEY_SUBSCRIPTIONS, since, "+inf"):
            data_type, _, entity_key = as_str(raw).partition("|")
            out.append((entity_key, data_type))
        return out

    async def cleanup(self, max_age_s: Optional[float] = None, now: Optional[float] = None) -> int:
        now    = time.time() if now is None else now
        cutoff = now - (self.max_age_s if max_age_s is None else max_age_s)
        removed = int(await self.redis.zremrangebyscore(KEY_SUBSCRIPTIONS, "-inf", f"({cutoff}"))
        if removed:
            log.info(f"Dropped {removed} expired subscriptions")
        return removed
