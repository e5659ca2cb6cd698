"""
Market Brain — Quote Worker
─────────────────────────────
FMP stable/quote → live_quote_indicators (one row per symbol).
Source timestamp: the quote's own `timestamp` (epoch seconds).
"""

from typing import Any, Dict, List, Optional

from pydantic import Field

from fetch_workers.base import FetchWorker, StrictRecord, parse_list
from refresh_engine.registry.models import DataType


class FmpQuote(StrictRecord):
    symbol:            str   = Field(min_length=1)
    price:             float = Field(ge=0, lt=1_000_000)   # BRK-A is ~700k; delisted quotes are 0
    timestamp:         int   = Field(ge=0)
    changePercentage:  Optional[float] = None
    changesPercentage: Optional[float] = None   # older spelling, still served for some symbols
    change:            Optional[float] = None
    volume:            Optional[float] = Field(default=None, ge=0)
    dayLow:            Optional[float] = Field(default=None, ge=0)
    dayHigh:           Optional[float] = Field(default=None, ge=0)
    yearHigh:          Optional[float] = Field(default=None, ge=0)
    yearLow:           Optional[float] = Field(default=None, ge=0)
    marketCap:         Optional[float] = Field(default=None, ge=0)
    priceAvg50:        Optional[float] = None
    priceAvg200:       Optional[float] = None
    exchange:          Optional[str]   = None
    open:              Optional[float] = Field(default=None, ge=0)
    previousClose:     Optional[float] = Field(default=None, ge=0)


def _trunc(v: Optional[float]) -> Optional[int]:
    return int(v) if v is not None else None


class QuoteWorker(FetchWorker):

    data_type = DataType.QUOTE
    endpoints = ("/quote",)

    def parse(self, raw: bytes, endpoint: str) -> List[FmpQuote]:
        return parse_list(FmpQuote, raw, "quote")

    def source_timestamp(self, records: List[FmpQuote]) -> Optional[float]:
        return float(records[0].timestamp)

    def to_rows(self, entity_key: str, records: List[FmpQuote], fetched_at: float) -> List[Dict[str, Any]]:
        q = records[0]
        return [{
            "symbol":            entity_key,
            "current_price":     q.price,
            "change_percentage": q.changePercentage if q.changePercentage is not None else q.changesPercentage,
            "day_change":        q.change,
            "volume":            _trunc(q.volume),
            "day_low":           q.dayLow,
            "day_high":          q.dayHigh,
            "market_cap":        _trunc(q.marketCap),
            "day_open":          q.open,
            "previous_close":    q.previousClose,
            "sma_50d":           q.priceAvg50,
            "sma_200d":          q.priceAvg200,
            "year_high":         q.yearHigh,
            "year_low":          q.yearLow,
            "exchange":          q.exchange,
            "api_timestamp":     q.timestamp,
            "fetched_at":        fetched_at,
        }]
