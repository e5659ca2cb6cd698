"""
Market Brain — Staleness Detector
───────────────────────────────────
Two rules decide whether a stored record can be trusted.

  TTL rule (admission):   now - fetched_at >= ttl   → stale
                          exactly ttl counts as stale; no record is stale
  Source rule (write):    incoming source ts <= stored source ts
                          → StalenessViolation, even on a 200 OK

The second rule catches an upstream cache serving yesterday's payload
behind a fresh-looking response.
"""

import logging
import time
from typing import Optional

from refresh_engine.cache.storage import Storage
from refresh_engine.errors import StalenessViolation
from refresh_engine.registry.models import GLOBAL_ENTITY, Scope
from refresh_engine.registry.registry import Registry

log = logging.getLogger("mb.staleness")


class StalenessDetector:

    def __init__(self, storage: Storage, registry: Registry):
        self.storage  = storage
        self.registry = registry

    def _entity(self, entity_key: str, entry) -> str:
        return GLOBAL_ENTITY if entry.scope is Scope.GLOBAL else entity_key

    async def last_fetched_at(self, entity_key: str, data_type) -> Optional[float]:
        entry = self.registry.lookup(data_type)
        return await self.storage.get_number(
            entry.storage_target, self._entity(entity_key, entry), entry.freshness_column,
        )

    async def is_stale(self, entity_key: str, data_type, now: Optional[float] = None) -> bool:
        now     = time.time() if now is None else now
        entry   = self.registry.lookup(data_type)
        fetched = await self.last_fetched_at(entity_key, data_type)
        if fetched is None:
            return True
        return now - fetched >= entry.ttl_seconds

    async def stored_source_timestamp(self, entity_key: str, data_type) -> Optional[float]:
        entry = self.registry.lookup(data_type)
        if not entry.source_timestamp_field:
            return None
        return await self.storage.get_number(
            entry.storage_target, self._entity(entity_key, entry), entry.source_timestamp_field,
        )

    async def check_source_timestamp(self, entity_key: str, data_type, new_ts: Optional[float]) -> None:
        """Raise StalenessViolation unless new_ts is strictly newer than what is stored."""
        entry = self.registry.lookup(data_type)
        if not entry.source_timestamp_field or new_ts is None:
            return
        stored = await self.stored_source_timestamp(entity_key, data_type)
        if stored is not None and new_ts <= stored:
            log.warning(
                f"Stale-but-200-OK: {entry.data_type.value}:{entity_key} "
                f"source ts {new_ts} <= stored {stored}"
            )
            raise StalenessViolation(
                f"{entry.data_type.value}:{entity_key} source ts {new_ts} not newer than {stored}",
                new_ts=new_ts, stored_ts=stored,
            )
