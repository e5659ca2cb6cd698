import json
from typing import Callable, Dict, List

import fakeredis
import httpx
import pytest
import pytest_asyncio

from refresh_engine.config import Settings
from refresh_engine.engine import RefreshEngine, provider_client
from refresh_engine.registry.registry import Registry

NOW = 1_760_000_000.0   # 2025-10-09 08:53:20 UTC

BASE_URL = "https://fmp.test/stable"


@pytest_asyncio.fixture
async def redis():
    r = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield r
    await r.aclose()


@pytest.fixture
def settings():
    return Settings(
        fmp_api_key             = "test-key",
        fmp_base_url            = BASE_URL,
        subscriber_api_keys     = ("sub-key-1", "sub-key-2"),
        daily_quota_bytes       = 1_000_000,
        max_attempts            = 3,
        retry_base_delay_s      = 30.0,
        retry_max_delay_s       = 900.0,
        staleness_retry_delay_s = 300.0,
        lease_timeout_s         = 300,
        run_scheduler           = False,
    )


@pytest.fixture
def engine(redis, settings):
    return RefreshEngine.build(redis, settings, registry=Registry())


class FakeFMP:
    """Routes provider calls by last path segment; records every hit."""

    def __init__(self):
        self.routes: Dict[str, Callable[[httpx.Request], httpx.Response]] = {}
        self.calls: List[str] = []

    def json(self, endpoint: str, payload, status: int = 200, headers: dict = None):
        body = json.dumps(payload).encode()
        self.routes[endpoint] = lambda req: httpx.Response(status, content=body, headers=headers)
        return self

    def raw(self, endpoint: str, body: bytes, status: int = 200, headers: dict = None):
        self.routes[endpoint] = lambda req: httpx.Response(status, content=body, headers=headers)
        return self

    def error(self, endpoint: str, exc: Exception):
        def _raise(req):
            raise exc
        self.routes[endpoint] = _raise
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        endpoint = request.url.path.rsplit("/", 1)[-1]
        self.calls.append(endpoint)
        if endpoint not in self.routes:
            return httpx.Response(404, json={"error": "not mocked"})
        return self.routes[endpoint](request)


@pytest.fixture
def fmp():
    return FakeFMP()


@pytest_asyncio.fixture
async def pool(engine, settings, fmp):
    client = provider_client(settings, transport=httpx.MockTransport(fmp.handler))
    yield engine.worker_pool(client, worker_id="test-worker")
    await client.aclose()


def quote_payload(symbol: str = "AAPL", price: float = 189.5, timestamp: int = 1_760_000_000, **extra) -> list:
    q = {
        "symbol":           symbol,
        "name":             "Apple Inc.",
        "price":            price,
        "changePercentage": 0.42,
        "change":           0.8,
        "volume":           51234567,
        "dayLow":           187.1,
        "dayHigh":          190.2,
        "yearHigh":         237.2,
        "yearLow":          164.1,
        "marketCap":        2_850_000_000_000.0005,
        "priceAvg50":       182.3,
        "priceAvg200":      190.9,
        "exchange":         "NASDAQ",
        "open":             188.0,
        "previousClose":    188.7,
        "timestamp":        timestamp,
    }
    q.update(extra)
    return [q]
