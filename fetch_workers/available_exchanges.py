"""
Market Brain — Available Exchanges Worker
───────────────────────────────────────────
FMP stable/available-exchanges → available_exchanges. Global data type:
one record for the whole provider, refreshed by the scheduled sweep.
"""

from typing import Any, Dict, List, Optional

from pydantic import Field

from fetch_workers.base import FetchWorker, StrictRecord, parse_list
from refresh_engine.registry.models import GLOBAL_ENTITY, DataType


class FmpExchange(StrictRecord):
    exchange:     str = Field(min_length=1)
    name:         Optional[str] = None
    countryName:  Optional[str] = None
    countryCode:  Optional[str] = None
    symbolSuffix: Optional[str] = None
    delay:        Optional[str] = None


class AvailableExchangesWorker(FetchWorker):

    data_type = DataType.AVAILABLE_EXCHANGES
    endpoints = ("/available-exchanges",)

    def params(self, entity_key: str) -> Dict[str, str]:
        return {}

    def parse(self, raw: bytes, endpoint: str) -> List[FmpExchange]:
        return parse_list(FmpExchange, raw, "available-exchanges")

    def to_rows(self, entity_key: str, records: List[FmpExchange], fetched_at: float) -> List[Dict[str, Any]]:
        exchanges = [{
            "exchange":      e.exchange,
            "name":          e.name,
            "country_name":  e.countryName,
            "country_code":  e.countryCode,
            "symbol_suffix": e.symbolSuffix,
            "delay":         e.delay,
        } for e in records]
        return [{
            "scope_key":  GLOBAL_ENTITY,
            "exchanges":  exchanges,
            "count":      len(exchanges),
            "fetched_at": fetched_at,
        }]
