"""
Market Brain — Fetch Worker Base
──────────────────────────────────
One FetchWorker per data type. Each worker knows how to call FMP for
one entity and turn the raw bytes into validated records.

Subclasses must provide:
  - data_type: DataType class attribute (checked at class definition)
  - endpoints: provider paths called per job, in order
  - parse(raw, endpoint) -> list of strict pydantic records
  - to_rows(entity_key, records, fetched_at) -> storage rows

And may override:
  - params(entity_key)          query params (apikey is added here)
  - source_timestamp(records)   provider's own timestamp, epoch seconds
  - wire_size(response)         bytes billed for one response

parse() never coerces. A renamed, missing or retyped field raises
ValidationError instead of reaching storage as null.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type

import httpx
from pydantic import BaseModel, ConfigDict, TypeAdapter
from pydantic import ValidationError as SchemaError

from refresh_engine.errors import ConfigError, TransientNetworkError, UpstreamError, ValidationError
from refresh_engine.registry.models import DataType
from refresh_engine.registry.registry import get_registry

log = logging.getLogger("mb.workers")


class StrictRecord(BaseModel):
    """Provider record: required fields must exist with the right JSON type."""
    model_config = ConfigDict(strict=True, extra="ignore", frozen=True)


def parse_list(model: Type[BaseModel], raw: bytes, what: str, allow_empty: bool = False) -> List[Any]:
    try:
        records = TypeAdapter(List[model]).validate_json(raw, strict=True)
    except SchemaError as e:
        raise ValidationError(f"{what}: schema drift — {e.error_count()} errors: {e.errors()[:3]}") from e
    if not records and not allow_empty:
        raise ValidationError(f"{what}: provider returned an empty list")
    return records


class FetchWorker(ABC):

    data_type: DataType
    endpoints: Sequence[str] = ()

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        if not isinstance(getattr(cls, "data_type", None), DataType):
            raise TypeError(f"{cls.__name__} must declare a DataType as data_type")
        if not cls.endpoints:
            raise TypeError(f"{cls.__name__} must declare at least one endpoint")

    def __init__(self, api_key: str):
        self.api_key = api_key

    # ── Contract ──────────────────────────────────────────────

    @abstractmethod
    def parse(self, raw: bytes, endpoint: str) -> List[Any]: ...

    @abstractmethod
    def to_rows(self, entity_key: str, records: List[Any], fetched_at: float) -> List[Dict[str, Any]]: ...

    def params(self, entity_key: str) -> Dict[str, str]:
        return {"symbol": entity_key}

    def source_timestamp(self, records: List[Any]) -> Optional[float]:
        return None

    def wire_size(self, response: httpx.Response) -> int:
        """
        Bytes billed for this response. Content-Length first, then what the
        transport actually downloaded; the registry estimate only when the
        transport reports nothing. Never len(json.dumps(parsed)).
        """
        declared = response.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > 0:
            return int(declared)
        if response.num_bytes_downloaded > 0:
            return response.num_bytes_downloaded
        fallback = get_registry().lookup(self.data_type).fallback_wire_bytes // len(self.endpoints)
        log.warning(f"{self.data_type.value}: no size on response, charging fallback {fallback:,} bytes")
        return fallback

    # ── Fetch ─────────────────────────────────────────────────

    async def fetch(self, client: httpx.AsyncClient, entity_key: str) -> Tuple[List[Any], int]:
        """Call every endpoint for one entity. Returns (records, total wire bytes)."""
        if not self.api_key:
            raise ConfigError("FMP_API_KEY is not set")

        records: List[Any] = []
        wire = 0
        for endpoint in self.endpoints:
            params = {**self.params(entity_key), "apikey": self.api_key}
            try:
                r = await client.get(endpoint, params=params)
            except httpx.TimeoutException as e:
                raise TransientNetworkError(f"{endpoint}: timed out") from e
            except httpx.TransportError as e:
                raise TransientNetworkError(f"{endpoint}: {type(e).__name__}") from e

            wire += self.wire_size(r)
            if r.status_code == 429 or r.status_code >= 500:
                raise TransientNetworkError(f"{endpoint}: HTTP {r.status_code}")
            if r.status_code >= 400:
                raise UpstreamError(f"{endpoint}: HTTP {r.status_code}")

            records.extend(self.parse(r.content, endpoint))

        log.debug(f"{self.data_type.value}:{entity_key} fetched {len(records)} records, {wire:,} bytes")
        return records, wire
