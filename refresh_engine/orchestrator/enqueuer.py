"""
Market Brain — Enqueuer
─────────────────────────
Two ways into the queue:

  on_subscription   a user opened a symbol; one entity, several data types,
                    one Redis round trip. Best effort: failures are logged
                    and swallowed so the request still succeeds.
  sweeps            scheduled; many entities. The stale-data sweep is the
                    fallback that catches anything the subscription path missed.
"""

import logging
import time
from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from refresh_engine.cache.ttl_config import PRIORITY_SCHEDULED, PRIORITY_SUBSCRIPTION, PRIORITY_SWEEP
from refresh_engine.errors import RegistryNotFound
from refresh_engine.orchestrator.subscriptions import SubscriptionTracker
from refresh_engine.queue.models import Admission, Outcome
from refresh_engine.queue.store import QueueStore
from refresh_engine.registry.models import GLOBAL_ENTITY, DataType, Scope

log = logging.getLogger("mb.enqueuer")


def _admitted(results: Dict[DataType, Admission]) -> int:
    return sum(1 for a in results.values() if a.outcome is Outcome.ADMITTED)


class Enqueuer:

    def __init__(self, queue: QueueStore, tracker: Optional[SubscriptionTracker] = None):
        self.queue   = queue
        self.tracker = tracker

    async def on_subscription(
        self,
        entity_key: str,
        data_types: List[DataType],
        now:        Optional[float] = None,
    ) -> Optional[Dict[DataType, Admission]]:
        now = time.time() if now is None else now
        try:
            if self.tracker is not None:
                await self.tracker.touch(entity_key, data_types, now)
            return await self.queue.enqueue_batch(entity_key, data_types, PRIORITY_SUBSCRIPTION, now)
        except Exception as e:
            # the stale-data sweep picks this up within a few minutes
            log.error(f"Subscription enqueue failed for {entity_key} {[d.value for d in data_types]}: {e}")
            return None

    async def sweep(
        self,
        entity_keys: Iterable[str],
        data_types:  List[DataType],
        priority:    int = PRIORITY_SWEEP,
        now:         Optional[float] = None,
    ) -> int:
        """Enqueue every stale (entity, type) pair. Returns jobs admitted."""
        now = time.time() if now is None else now
        admitted = 0
        for entity_key in entity_keys:
            try:
                admitted += _admitted(await self.queue.enqueue_batch(entity_key, data_types, priority, now))
            except Exception as e:
                log.error(f"Sweep enqueue failed for {entity_key}: {e}")
        return admitted

    async def sweep_stale(self, now: Optional[float] = None) -> int:
        """Re-check everything subscribed in the last few minutes."""
        if self.tracker is None:
            return 0
        now = time.time() if now is None else now
        by_entity: Dict[str, List[DataType]] = defaultdict(list)
        for entity_key, raw_type in await self.tracker.active(now=now):
            try:
                by_entity[entity_key].append(self.queue.registry.lookup(raw_type).data_type)
            except RegistryNotFound:
                log.warning(f"Ignoring subscription to unknown data type {raw_type!r}")

        admitted = 0
        for entity_key, types in by_entity.items():
            admitted += await self.sweep([entity_key], types, PRIORITY_SWEEP, now)
        if admitted:
            log.info(f"Stale-data sweep admitted {admitted} jobs across {len(by_entity)} entities")
        return admitted

    async def queue_scheduled(self, now: Optional[float] = None) -> int:
        """Global reference data is refreshed on its TTL whether or not anyone is watching."""
        types = [e.data_type for e in self.queue.registry.entries() if e.scope is Scope.GLOBAL]
        if not types:
            return 0
        return await self.sweep([GLOBAL_ENTITY], types, PRIORITY_SCHEDULED, now)
