"""
Market Brain Fetch Workers
────────────────────────────
One typed worker per DataType. The pool dispatches claimed jobs here.

    from fetch_workers import build_workers
    workers = build_workers(settings.fmp_api_key)
"""

from typing import Dict

from .available_exchanges import AvailableExchangesWorker
from .base import FetchWorker
from .financial_statements import FinancialStatementsWorker
from .profile import ProfileWorker
from .quote import QuoteWorker
from refresh_engine.registry.models import DataType

WORKER_CLASSES = (QuoteWorker, ProfileWorker, FinancialStatementsWorker, AvailableExchangesWorker)


def build_workers(api_key: str) -> Dict[DataType, FetchWorker]:
    workers = {cls.data_type: cls(api_key) for cls in WORKER_CLASSES}
    missing = set(DataType) - set(workers)
    if missing:
        raise TypeError(f"no worker for data types: {sorted(m.value for m in missing)}")
    return workers


__all__ = ["FetchWorker", "build_workers", "WORKER_CLASSES"]
