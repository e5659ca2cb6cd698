"""
Market Brain — Record Storage
───────────────────────────────
Generic storage interface over Redis hashes. Provider records are kept
one hash per (table, conflict key); every column is JSON-encoded so
numbers, strings and nested payloads round-trip unchanged.

  get_record(table, key)                       point lookup
  get_number(table, key, column)               numeric column (freshness, source ts)
  upsert(table, records, conflict_key, guard)  row count written
  increment(key, amount, ttl)                  atomic add, optional expiry
"""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional

import redis.asyncio as aioredis

from refresh_engine.cache.lua_scripts import LuaScripts
from refresh_engine.cache.redis_client import as_str, key_record

log = logging.getLogger("mb.storage")


def _encode(value: Any) -> str:
    return json.dumps(value, default=str, separators=(",", ":"))


def _decode(raw: str) -> Any:
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return raw


class Storage:

    def __init__(self, redis: aioredis.Redis):
        self.redis = redis

    async def get_record(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        raw = await self.redis.hgetall(key_record(table, key))
        if not raw:
            return None
        return {as_str(k): _decode(as_str(v)) for k, v in raw.items()}

    async def get_number(self, table: str, key: str, column: str) -> Optional[float]:
        raw = await self.redis.hget(key_record(table, key), column)
        if raw is None:
            return None
        value = _decode(as_str(raw))
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
        return None

    async def upsert(
        self,
        table:        str,
        records:      Iterable[Dict[str, Any]],
        conflict_key: str,
        guard_field:  Optional[str] = None,
    ) -> int:
        """
        Upsert records keyed by record[conflict_key].

        With guard_field set, each row is written only if its guard value is
        strictly greater than the stored one; rows that lose are skipped and
        not counted. All rows go out in one pipeline round trip.
        """
        rows = list(records)
        if not rows:
            return 0

        pipe = self.redis.pipeline(transaction=False)
        for row in rows:
            if row.get(conflict_key) in (None, ""):
                raise ValueError(f"{table}: record missing conflict key '{conflict_key}'")
            args: List[str] = [guard_field or "", ""]
            if guard_field:
                guard = row.get(guard_field)
                if guard is None:
                    raise ValueError(f"{table}: record missing guard field '{guard_field}'")
                args[1] = _encode(guard)
            for column, value in row.items():
                args.extend([column, _encode(value)])
            pipe.eval(LuaScripts.GUARDED_UPSERT, 1, key_record(table, str(row[conflict_key])), *args)

        written = sum(int(r) for r in await pipe.execute())
        log.debug(f"{table}: upserted {written}/{len(rows)} rows")
        return written

    async def increment(self, key: str, amount: int, ttl_s: Optional[int] = None) -> int:
        pipe = self.redis.pipeline(transaction=True)
        pipe.incrby(key, amount)
        if ttl_s is not None:
            pipe.expire(key, ttl_s)
        results = await pipe.execute()
        return int(results[0])
