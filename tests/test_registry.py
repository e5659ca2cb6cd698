import json

import pytest

from conftest import NOW
from refresh_engine.cache.redis_client import KEY_REGISTRY
from refresh_engine.engine import RefreshEngine
from refresh_engine.errors import RegistryNotFound
from refresh_engine.queue.models import Outcome
from refresh_engine.registry.models import DataType, Scope
from refresh_engine.registry.registry import Registry, parse_data_type


def test_lookup_accepts_enum_and_wire_string():
    reg = Registry()
    assert reg.lookup(DataType.QUOTE) is reg.lookup("quote")
    entry = reg.lookup("quote")
    assert entry.storage_target == "live_quote_indicators"
    assert entry.freshness_column == "fetched_at"
    assert entry.source_timestamp_field == "api_timestamp"
    assert entry.ttl_seconds == 5 * 60


def test_every_data_type_has_an_entry():
    reg = Registry()
    assert {e.data_type for e in reg.entries()} == set(DataType)
    assert reg.lookup("profile").source_timestamp_field is None
    assert reg.lookup("financial-statements").source_timestamp_field == "accepted_ts"
    assert reg.lookup("available-exchanges").scope is Scope.GLOBAL


def test_unknown_data_type_is_not_found():
    with pytest.raises(RegistryNotFound):
        Registry().lookup("dividends")
    with pytest.raises(KeyError):
        parse_data_type("QUOTE")


@pytest.mark.asyncio
async def test_refresh_swaps_whole_map_with_overrides(redis):
    reg = Registry()
    before = reg.lookup("quote")
    await redis.hset(KEY_REGISTRY, "quote", json.dumps({"ttl_minutes": 1, "unknown_field": 5}))

    applied = await reg.refresh(redis)

    assert applied == 1
    assert reg.lookup("quote").ttl_minutes == 1
    assert before.ttl_minutes == 5          # old entry object untouched
    assert reg.lookup("profile").ttl_minutes == 24 * 60


@pytest.mark.asyncio
async def test_refresh_ignores_bad_overrides(redis):
    await redis.hset(KEY_REGISTRY, mapping={"quote": "{not json", "dividends": json.dumps({"ttl_minutes": 3})})
    reg = Registry()
    assert await reg.refresh(redis) == 0
    assert reg.lookup("quote").ttl_minutes == 5


@pytest.mark.asyncio
@pytest.mark.parametrize("override", [
    "42",
    json.dumps(["ttl_minutes", 1]),
    json.dumps({"ttl_minutes": "5"}),
    json.dumps({"ttl_minutes": 0}),
    json.dumps({"ttl_minutes": True}),
    json.dumps({"ttl_minutes": 2.5}),
    json.dumps({"fallback_wire_bytes": -1}),
    json.dumps({"storage_target": ""}),
    json.dumps({"freshness_column": 7}),
])
async def test_refresh_rejects_mistyped_overrides(redis, override):
    await redis.hset(KEY_REGISTRY, "quote", override)
    reg = Registry()

    assert await reg.refresh(redis) == 0
    entry = reg.lookup("quote")
    assert entry.ttl_seconds == 300
    assert entry.storage_target == "live_quote_indicators"
    assert entry.freshness_column == "fetched_at"


@pytest.mark.asyncio
async def test_mistyped_ttl_does_not_make_old_records_fresh(redis, settings):
    await redis.hset(KEY_REGISTRY, "quote", json.dumps({"ttl_minutes": "5"}))
    engine = RefreshEngine.build(redis, settings, registry=Registry())
    await engine.registry.refresh(redis)
    await engine.storage.upsert(
        "live_quote_indicators", [{"symbol": "AAPL", "fetched_at": NOW - 86400, "api_timestamp": 1}], "symbol",
    )

    result = await engine.queue.enqueue_if_stale("AAPL", "quote", now=NOW)
    assert result.outcome is Outcome.ADMITTED
