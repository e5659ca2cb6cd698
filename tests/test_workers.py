import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest

from conftest import NOW, quote_payload
from fetch_workers import WORKER_CLASSES, build_workers
from fetch_workers.financial_statements import accepted_epoch
from fetch_workers.quote import QuoteWorker
from refresh_engine.cache.redis_client import KEY_SWEEP_RUNS
from refresh_engine.errors import ConfigError, ValidationError
from refresh_engine.queue.models import JobStatus
from refresh_engine.quota.ledger import seconds_until_reset
from refresh_engine.registry.models import DataType


async def _run_one(engine, pool, entity, data_type):
    admitted = await engine.queue.enqueue_if_stale(entity, data_type, 1000, now=NOW)
    counts = await pool.run_batch(batch_size=5, concurrency=2)
    return admitted.job_id, counts


def test_every_data_type_has_a_worker():
    workers = build_workers("k")
    assert set(workers) == set(DataType)
    assert len(WORKER_CLASSES) == len(DataType)


def test_worker_subclass_must_declare_data_type():
    from fetch_workers.base import FetchWorker

    with pytest.raises(TypeError):
        class Broken(FetchWorker):
            endpoints = ("/x",)


# ── Happy path ───────────────────────────────────────────────

@pytest.mark.asyncio
async def test_quote_refresh_charges_content_length(engine, pool, fmp):
    body = json.dumps(quote_payload()).ljust(1000).encode()
    fmp.raw("quote", body, headers={"content-length": "742"})

    job_id, counts = await _run_one(engine, pool, "AAPL", "quote")

    assert counts == {"claimed": 1, "complete": 1, "retry": 0, "failed": 0}
    assert (await engine.ledger.usage()).total_bytes == 742
    job = await engine.queue.get_job(job_id)
    assert job.status is JobStatus.COMPLETE
    assert job.source_ts == 1_760_000_000

    record = await engine.storage.get_record("live_quote_indicators", "AAPL")
    assert record["current_price"] == 189.5
    assert record["api_timestamp"] == 1_760_000_000
    assert record["market_cap"] == 2_850_000_000_000
    assert record["fetched_at"] > NOW


@pytest.mark.asyncio
async def test_wire_bytes_match_response_body(engine, pool, fmp):
    fmp.json("profile", [{"symbol": "AAPL", "companyName": "Apple Inc.", "price": 189.5}])

    await _run_one(engine, pool, "AAPL", "profile")

    expected = len(json.dumps([{"symbol": "AAPL", "companyName": "Apple Inc.", "price": 189.5}]).encode())
    assert (await engine.ledger.usage()).total_bytes == expected


def test_wire_size_uses_registry_fallback_without_transport_size():
    assert QuoteWorker("k").wire_size(httpx.Response(200)) == 2000


# ── Failures ─────────────────────────────────────────────────

@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [
    quote_payload(price="189.5"),
    [{k: v for k, v in quote_payload()[0].items() if k != "timestamp"}],
    [],
])
async def test_schema_drift_fails_without_write(engine, pool, fmp, payload):
    fmp.json("quote", payload)

    job_id, counts = await _run_one(engine, pool, "AAPL", "quote")

    assert counts["failed"] == 1
    job = await engine.queue.get_job(job_id)
    assert job.error_category == "validation"
    assert await engine.queue.active_job_id("AAPL", "quote") is None
    assert await engine.storage.get_record("live_quote_indicators", "AAPL") is None
    assert (await engine.ledger.usage()).total_bytes == 0


@pytest.mark.asyncio
async def test_same_source_timestamp_is_rejected_and_retried(engine, pool, fmp):
    await engine.storage.upsert(
        "live_quote_indicators",
        [{"symbol": "AAPL", "current_price": 180.0, "api_timestamp": 1_760_000_000, "fetched_at": NOW - 3600}],
        "symbol",
    )
    fmp.json("quote", quote_payload(price=189.5, timestamp=1_760_000_000))

    job_id, counts = await _run_one(engine, pool, "AAPL", "quote")

    assert counts["retry"] == 1
    job = await engine.queue.get_job(job_id)
    assert job.error_category == "stale_data"
    retry = await engine.queue.get_job(await engine.queue.active_job_id("AAPL", "quote"))
    assert retry.eligible_at - job.finished_at == pytest.approx(300, abs=1)
    assert (await engine.storage.get_record("live_quote_indicators", "AAPL"))["current_price"] == 180.0
    assert (await engine.queue.daily_stats())["stale_rejections"] == 1
    # the rejected response was still billed
    expected = len(json.dumps(quote_payload(price=189.5, timestamp=1_760_000_000)).encode())
    assert (await engine.ledger.usage()).total_bytes == expected


@pytest.mark.asyncio
async def test_quota_exhausted_skips_fetch(engine, pool, fmp):
    fmp.json("quote", quote_payload())
    await engine.ledger.record(engine.ledger.cap_bytes)

    job_id, counts = await _run_one(engine, pool, "AAPL", "quote")

    assert fmp.calls == []
    assert counts["retry"] == 1
    assert (await engine.queue.get_job(job_id)).error_category == "quota_exceeded"
    retry = await engine.queue.get_job(await engine.queue.active_job_id("AAPL", "quote"))
    assert retry.eligible_at == pytest.approx(retry.created_at + seconds_until_reset(retry.created_at), abs=1)
    assert (await engine.queue.counts())["delayed"] == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("status,outcome,category", [
    (503, "retry", "transient"),
    (429, "retry", "transient"),
    (404, "failed", "upstream"),
])
async def test_http_errors_are_classified(engine, pool, fmp, status, outcome, category):
    fmp.json("quote", {"error": "x"}, status=status)

    job_id, counts = await _run_one(engine, pool, "AAPL", "quote")

    assert counts[outcome] == 1
    assert (await engine.queue.get_job(job_id)).error_category == category


@pytest.mark.asyncio
async def test_connection_error_is_transient(engine, pool, fmp):
    fmp.error("quote", httpx.ConnectError("refused"))
    job_id, counts = await _run_one(engine, pool, "AAPL", "quote")
    assert counts["retry"] == 1
    assert (await engine.queue.get_job(job_id)).error_category == "transient"


@pytest.mark.asyncio
async def test_missing_api_key_is_config_error(fmp):
    async with httpx.AsyncClient(base_url="https://fmp.test/stable", transport=httpx.MockTransport(fmp.handler)) as c:
        with pytest.raises(ConfigError):
            await QuoteWorker("").fetch(c, "AAPL")
    assert fmp.calls == []


# ── Multi-endpoint and global types ──────────────────────────

def _statement(date, accepted, **items):
    return {"date": date, "symbol": "AAPL", "period": "FY", "acceptedDate": accepted,
            "reportedCurrency": "USD", "fiscalYear": date[:4], **items}


@pytest.mark.asyncio
async def test_financial_statements_consolidate_by_period(engine, pool, fmp):
    fmp.json("income-statement", [
        _statement("2024-09-28", "2024-11-01 06:01:36", revenue=391035000000),
        _statement("2023-09-30", "2023-11-03 06:01:36", revenue=383285000000),
    ])
    fmp.json("balance-sheet-statement", [_statement("2024-09-28", "2024-11-01 06:01:36", totalAssets=364980000000)])
    fmp.json("cash-flow-statement", [])

    job_id, counts = await _run_one(engine, pool, "AAPL", "financial-statements")

    assert counts["complete"] == 1
    assert sorted(fmp.calls) == ["balance-sheet-statement", "cash-flow-statement", "income-statement"]
    record = await engine.storage.get_record("financial_statements", "AAPL")
    latest, older = record["statements"]
    assert latest["date"] == "2024-09-28"
    assert latest["income_statement"]["revenue"] == 391035000000
    assert latest["balance_sheet"]["totalAssets"] == 364980000000
    assert "cash_flow" not in latest
    assert older["date"] == "2023-09-30"
    expected_ts = datetime(2024, 11, 1, 6, 1, 36, tzinfo=timezone.utc).timestamp()
    assert record["accepted_ts"] == expected_ts
    assert (await engine.queue.get_job(job_id)).source_ts == expected_ts


@pytest.mark.asyncio
async def test_financial_statements_all_empty_is_validation_error(engine, pool, fmp):
    for endpoint in ("income-statement", "balance-sheet-statement", "cash-flow-statement"):
        fmp.json(endpoint, [])
    job_id, counts = await _run_one(engine, pool, "AAPL", "financial-statements")
    assert counts["failed"] == 1
    assert (await engine.queue.get_job(job_id)).error_category == "validation"


def test_accepted_date_parsing():
    assert accepted_epoch("2024-11-01 06:01:36") == datetime(2024, 11, 1, 6, 1, 36, tzinfo=timezone.utc).timestamp()
    with pytest.raises(ValidationError):
        accepted_epoch("last tuesday")


@pytest.mark.asyncio
async def test_available_exchanges_stored_once_globally(engine, pool, fmp):
    fmp.json("available-exchanges", [
        {"exchange": "NASDAQ", "name": "NASDAQ Global Market", "countryCode": "US"},
        {"exchange": "LSE", "name": "London Stock Exchange", "countryCode": "GB", "symbolSuffix": ".L"},
    ])

    _, counts = await _run_one(engine, pool, "MSFT", "available-exchanges")

    assert counts["complete"] == 1
    record = await engine.storage.get_record("available_exchanges", "GLOBAL")
    assert record["count"] == 2
    assert [e["exchange"] for e in record["exchanges"]] == ["NASDAQ", "LSE"]
    assert await engine.storage.get_record("available_exchanges", "MSFT") is None


# ── Races and batch isolation ────────────────────────────────

@pytest.mark.asyncio
async def test_write_landing_after_precheck_rejects_upsert(engine, pool, fmp, monkeypatch):
    fmp.json("quote", quote_payload(price=189.5, timestamp=1_760_000_000))
    original = engine.detector.check_source_timestamp

    async def _then_concurrent_write(entity_key, data_type, source_ts):
        await original(entity_key, data_type, source_ts)
        await engine.storage.upsert(
            "live_quote_indicators",
            [{"symbol": "AAPL", "current_price": 200.0, "api_timestamp": 1_760_000_500, "fetched_at": NOW}],
            "symbol",
        )
    monkeypatch.setattr(engine.detector, "check_source_timestamp", _then_concurrent_write)

    job_id, counts = await _run_one(engine, pool, "AAPL", "quote")

    assert counts["retry"] == 1
    assert (await engine.queue.get_job(job_id)).error_category == "stale_data"
    record = await engine.storage.get_record("live_quote_indicators", "AAPL")
    assert record["current_price"] == 200.0
    assert record["api_timestamp"] == 1_760_000_500
    assert (await engine.ledger.usage()).total_bytes > 0


@pytest.mark.asyncio
async def test_broken_failure_bookkeeping_does_not_sink_the_batch(engine, pool, fmp, monkeypatch):
    from redis.exceptions import ConnectionError as RedisConnectionError

    async def _redis_gone(*args, **kwargs):
        raise RedisConnectionError("connection reset")
    monkeypatch.setattr(engine.queue, "fail_job", _redis_gone)

    fmp.json("quote", {"error": "x"}, status=503)
    fmp.json("profile", [{"symbol": "AAPL", "companyName": "Apple Inc.", "price": 189.5}])
    await engine.queue.enqueue_if_stale("AAPL", "quote", now=NOW)
    await engine.queue.enqueue_if_stale("AAPL", "profile", now=NOW)

    counts = await pool.run_batch(batch_size=5, concurrency=2)

    assert counts == {"claimed": 2, "complete": 1, "retry": 0, "failed": 1}
    assert (await engine.storage.get_record("profiles", "AAPL"))["company_name"] == "Apple Inc."


# ── Dedicated worker loop ────────────────────────────────────

@pytest.mark.asyncio
async def test_run_forever_stamps_process_queue_health(engine, pool, redis, monkeypatch):
    stop = asyncio.Event()

    async def _one_batch(batch_size, concurrency):
        stop.set()
        return {"claimed": 1, "complete": 1, "retry": 0, "failed": 0}
    monkeypatch.setattr(pool, "run_batch", _one_batch)

    await pool.run_forever(stop=stop)

    assert "process-queue" in await redis.hgetall(KEY_SWEEP_RUNS)
    assert "process-queue" not in [s["name"] for s in (await engine.health.status()).stale_jobs]


@pytest.mark.asyncio
async def test_run_forever_does_not_stamp_failed_batches(pool, redis, monkeypatch):
    stop = asyncio.Event()

    async def _broken_batch(batch_size, concurrency):
        stop.set()
        raise RuntimeError("redis down")
    monkeypatch.setattr(pool, "run_batch", _broken_batch)

    await pool.run_forever(stop=stop, idle_sleep=0.01)

    assert "process-queue" not in await redis.hgetall(KEY_SWEEP_RUNS)
