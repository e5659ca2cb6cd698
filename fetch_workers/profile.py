"""
Market Brain — Profile Worker
───────────────────────────────
FMP stable/profile → profiles. No embedded source timestamp, so only the
TTL rule applies.
"""

from typing import Any, Dict, List, Optional

from pydantic import Field

from fetch_workers.base import FetchWorker, StrictRecord, parse_list
from refresh_engine.registry.models import DataType


class FmpProfile(StrictRecord):
    symbol:            str   = Field(min_length=1)
    companyName:       str   = Field(min_length=1)
    price:             float = Field(gt=0, lt=1_000_000)
    marketCap:         Optional[float] = Field(default=None, ge=0)
    beta:              Optional[float] = None
    currency:          Optional[str]   = Field(default=None, min_length=3, max_length=3)
    exchange:          Optional[str]   = None
    exchangeFullName:  Optional[str]   = None
    industry:          Optional[str]   = None
    sector:            Optional[str]   = None
    country:           Optional[str]   = None
    website:           Optional[str]   = None
    description:       Optional[str]   = None
    ceo:               Optional[str]   = None
    fullTimeEmployees: Optional[str]   = None
    image:             Optional[str]   = None
    ipoDate:           Optional[str]   = None
    isEtf:             Optional[bool]  = None
    isActivelyTrading: Optional[bool]  = None
    isAdr:             Optional[bool]  = None
    isFund:            Optional[bool]  = None


class ProfileWorker(FetchWorker):

    data_type = DataType.PROFILE
    endpoints = ("/profile",)

    def parse(self, raw: bytes, endpoint: str) -> List[FmpProfile]:
        return parse_list(FmpProfile, raw, "profile")

    def to_rows(self, entity_key: str, records: List[FmpProfile], fetched_at: float) -> List[Dict[str, Any]]:
        p = records[0]
        return [{
            "symbol":              entity_key,
            "company_name":        p.companyName,
            "price":               p.price,
            "market_cap":          int(p.marketCap) if p.marketCap is not None else None,
            "beta":                p.beta,
            "currency":            p.currency,
            "exchange":            p.exchange,
            "exchange_full_name":  p.exchangeFullName,
            "industry":            p.industry,
            "sector":              p.sector,
            "country":             p.country,
            "website":             p.website or None,
            "description":         p.description,
            "ceo":                 p.ceo,
            "full_time_employees": p.fullTimeEmployees,
            "image":               p.image or None,
            "ipo_date":            p.ipoDate,
            "is_etf":              p.isEtf,
            "is_actively_trading": p.isActivelyTrading,
            "is_adr":              p.isAdr,
            "is_fund":             p.isFund,
            "fetched_at":          fetched_at,
        }]
