"""
Market Brain — Data Type Registry
───────────────────────────────────
Per data type: where it is stored, which column says when it was fetched,
how long it stays fresh, and which embedded field (if any) carries the
provider's own timestamp.

Defaults live in code. Operators can override ttl_minutes,
fallback_wire_bytes, storage_target or freshness_column per type
through the mb:rq:registry hash. refresh() rebuilds the whole map
and swaps it in a single assignment, so readers always see either the
old map or the new one.
"""

import json
import logging
from dataclasses import replace
from typing import Dict, List, Optional

from refresh_engine.cache.redis_client import KEY_REGISTRY, as_str
from refresh_engine.cache.ttl_config import FALLBACK_WIRE_BYTES, TTL_MINUTES
from refresh_engine.errors import RegistryNotFound
from refresh_engine.registry.models import DataType, RegistryEntry, Scope

log = logging.getLogger("mb.registry")

_POSITIVE_INTS = ("ttl_minutes", "fallback_wire_bytes")
_NAMES         = ("storage_target", "freshness_column")


def _validate_overrides(overrides) -> Dict[str, object]:
    """Overridable fields only, type-checked. Raises ValueError on any bad value."""
    if not isinstance(overrides, dict):
        raise ValueError(f"expected a JSON object, got {type(overrides).__name__}")
    changes = {}
    for f in _POSITIVE_INTS:
        if f in overrides:
            v = overrides[f]
            if isinstance(v, bool) or not isinstance(v, int) or v <= 0:
                raise ValueError(f"{f} must be a positive integer, got {v!r}")
            changes[f] = v
    for f in _NAMES:
        if f in overrides:
            v = overrides[f]
            if not isinstance(v, str) or not v.strip():
                raise ValueError(f"{f} must be a non-empty string, got {v!r}")
            changes[f] = v
    return changes


def default_entries() -> Dict[DataType, RegistryEntry]:
    def entry(dt: DataType, **kw) -> RegistryEntry:
        return RegistryEntry(
            data_type           = dt,
            ttl_minutes         = TTL_MINUTES[dt.value],
            fallback_wire_bytes = FALLBACK_WIRE_BYTES[dt.value],
            freshness_column    = "fetched_at",
            **kw,
        )

    return {
        DataType.QUOTE: entry(
            DataType.QUOTE,
            storage_target         = "live_quote_indicators",
            source_timestamp_field = "api_timestamp",
        ),
        DataType.PROFILE: entry(
            DataType.PROFILE,
            storage_target = "profiles",
        ),
        DataType.FINANCIAL_STATEMENTS: entry(
            DataType.FINANCIAL_STATEMENTS,
            storage_target         = "financial_statements",
            source_timestamp_field = "accepted_ts",
        ),
        DataType.AVAILABLE_EXCHANGES: entry(
            DataType.AVAILABLE_EXCHANGES,
            storage_target = "available_exchanges",
            scope          = Scope.GLOBAL,
            conflict_key   = "scope_key",
        ),
    }


def parse_data_type(raw: str) -> DataType:
    try:
        return DataType(raw)
    except ValueError:
        raise RegistryNotFound(f"unknown data type: {raw!r}") from None


class Registry:

    def __init__(self, entries: Optional[Dict[DataType, RegistryEntry]] = None):
        self._entries: Dict[DataType, RegistryEntry] = dict(entries or default_entries())

    def lookup(self, data_type) -> RegistryEntry:
        if not isinstance(data_type, DataType):
            data_type = parse_data_type(data_type)
        try:
            return self._entries[data_type]
        except KeyError:
            raise RegistryNotFound(f"no registry entry for {data_type.value}") from None

    def entries(self) -> List[RegistryEntry]:
        return list(self._entries.values())

    async def refresh(self, redis) -> int:
        """Rebuild from defaults + stored overrides. Returns number of overridden types."""
        raw = await redis.hgetall(KEY_REGISTRY)
        fresh = default_entries()
        applied = 0
        for k, v in (raw or {}).items():
            name = as_str(k)
            try:
                dt = DataType(name)
                changes = _validate_overrides(json.loads(as_str(v)))
            except (TypeError, ValueError) as e:
                log.warning(f"Registry override for {name!r} ignored: {e}")
                continue
            if changes:
                fresh[dt] = replace(fresh[dt], **changes)
                applied += 1

        self._entries = fresh
        log.info(f"Registry refreshed — {len(fresh)} types, {applied} overridden")
        return applied


_registry: Optional[Registry] = None


def get_registry() -> Registry:
    global _registry
    if _registry is None:
        _registry = Registry()
    return _registry
