import pytest

from conftest import NOW
from refresh_engine.errors import StalenessViolation


async def _store_quote(engine, fetched_at: float, api_timestamp: int = 1000):
    await engine.storage.upsert(
        "live_quote_indicators",
        [{"symbol": "AAPL", "current_price": 100.0, "fetched_at": fetched_at, "api_timestamp": api_timestamp}],
        "symbol",
    )


@pytest.mark.asyncio
async def test_missing_record_is_stale(engine):
    assert await engine.detector.is_stale("AAPL", "quote", NOW) is True


@pytest.mark.asyncio
async def test_ttl_boundary_is_inclusive(engine):
    # quote TTL is 5 minutes
    await _store_quote(engine, fetched_at=NOW - 5 * 60)
    assert await engine.detector.is_stale("AAPL", "quote", NOW) is True

    await _store_quote(engine, fetched_at=NOW - 4 * 60, api_timestamp=2000)
    assert await engine.detector.is_stale("AAPL", "quote", NOW) is False


@pytest.mark.asyncio
@pytest.mark.parametrize("incoming", [999, 1000])
async def test_source_timestamp_not_newer_is_rejected(engine, incoming):
    await _store_quote(engine, fetched_at=NOW, api_timestamp=1000)
    with pytest.raises(StalenessViolation) as exc:
        await engine.detector.check_source_timestamp("AAPL", "quote", incoming)
    assert exc.value.stored_ts == 1000
    assert exc.value.retryable is True


@pytest.mark.asyncio
async def test_newer_source_timestamp_passes(engine):
    await _store_quote(engine, fetched_at=NOW, api_timestamp=1000)
    await engine.detector.check_source_timestamp("AAPL", "quote", 1001)


@pytest.mark.asyncio
async def test_source_rule_skipped_without_field_or_history(engine):
    # profile has no embedded source timestamp
    await engine.detector.check_source_timestamp("AAPL", "profile", 1)
    # nothing stored yet
    await engine.detector.check_source_timestamp("MSFT", "quote", 1)
    assert await engine.detector.stored_source_timestamp("MSFT", "quote") is None
