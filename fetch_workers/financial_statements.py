"""
Market Brain — Financial Statements Worker
────────────────────────────────────────────
Three FMP calls per symbol (income, balance sheet, cash flow),
consolidated by (date, period) into one statement list.

Source timestamp: the newest acceptedDate across all statements. A
restatement or a new filing moves it forward; a cached response does not.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import ConfigDict, Field

from fetch_workers.base import FetchWorker, StrictRecord, parse_list
from refresh_engine.errors import ValidationError
from refresh_engine.registry.models import DataType

INCOME   = "/income-statement"
BALANCE  = "/balance-sheet-statement"
CASHFLOW = "/cash-flow-statement"

_PAYLOAD_KEY = {
    INCOME:   "income_statement",
    BALANCE:  "balance_sheet",
    CASHFLOW: "cash_flow",
}


class FmpStatement(StrictRecord):
    # line items vary by statement type and are kept as-is
    model_config = ConfigDict(strict=True, extra="allow", frozen=True)

    date:             str = Field(min_length=1)
    symbol:           str = Field(min_length=1)
    period:           str = Field(min_length=1)
    acceptedDate:     str = Field(min_length=1)
    reportedCurrency: Optional[str] = None
    cik:              Optional[str] = None
    filingDate:       Optional[str] = None
    fiscalYear:       Optional[str] = None


class TaggedStatement:
    __slots__ = ("kind", "statement")

    def __init__(self, kind: str, statement: FmpStatement):
        self.kind      = kind
        self.statement = statement


def accepted_epoch(value: str) -> float:
    """'2024-11-01 06:01:36' → epoch seconds (FMP reports these in UTC)."""
    try:
        dt = datetime.fromisoformat(value)
    except ValueError as e:
        raise ValidationError(f"unparseable acceptedDate {value!r}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


class FinancialStatementsWorker(FetchWorker):

    data_type = DataType.FINANCIAL_STATEMENTS
    endpoints = (INCOME, BALANCE, CASHFLOW)

    def parse(self, raw: bytes, endpoint: str) -> List[TaggedStatement]:
        kind = _PAYLOAD_KEY[endpoint]
        return [TaggedStatement(kind, s) for s in parse_list(FmpStatement, raw, kind, allow_empty=True)]

    def source_timestamp(self, records: List[TaggedStatement]) -> Optional[float]:
        if not records:
            raise ValidationError("financial-statements: all three statement lists are empty")
        return max(accepted_epoch(r.statement.acceptedDate) for r in records)

    def to_rows(self, entity_key: str, records: List[TaggedStatement], fetched_at: float) -> List[Dict[str, Any]]:
        by_period: Dict[str, Dict[str, Any]] = {}
        for r in records:
            s   = r.statement
            key = f"{s.date}-{s.period}"
            row = by_period.setdefault(key, {
                "date":              s.date,
                "period":            s.period,
                "fiscal_year":       s.fiscalYear,
                "reported_currency": s.reportedCurrency,
                "cik":               s.cik,
                "filing_date":       s.filingDate,
                "accepted_date":     s.acceptedDate,
            })
            row[r.kind] = s.model_dump()

        statements = sorted(by_period.values(), key=lambda x: x["date"], reverse=True)
        return [{
            "symbol":      entity_key,
            "statements":  statements,
            "accepted_ts": self.source_timestamp(records),
            "fetched_at":  fetched_at,
        }]
