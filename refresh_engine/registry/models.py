from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional


class DataType(str, Enum):
    QUOTE                = "quote"
    PROFILE              = "profile"
    FINANCIAL_STATEMENTS = "financial-statements"
    AVAILABLE_EXCHANGES  = "available-exchanges"


class Scope(str, Enum):
    SYMBOL = "symbol"   # one record per ticker
    GLOBAL = "global"   # one record for the whole provider (exchange lists etc.)


GLOBAL_ENTITY = "GLOBAL"


@dataclass(frozen=True)
class RegistryEntry:
    data_type:              DataType
    storage_target:         str
    freshness_column:       str
    ttl_minutes:            int
    source_timestamp_field: Optional[str] = None
    scope:                  Scope = Scope.SYMBOL
    conflict_key:           str = "symbol"
    fallback_wire_bytes:    int = 50_000

    @property
    def ttl_seconds(self) -> int:
        return self.ttl_minutes * 60

    def to_dict(self) -> dict:
        d = asdict(self)
        d["data_type"] = self.data_type.value
        d["scope"]     = self.scope.value
        return d
