"""
Market Brain — Refresh Engine Configuration
─────────────────────────────────────────────
Every tunable comes from the environment (or a local .env file).

Environment variables:
  REDIS_URL                 — shared queue / quota / record store
  FMP_API_KEY               — Financial Modeling Prep key (required by workers)
  FMP_BASE_URL              — https://financialmodelingprep.com/stable
  SUBSCRIBER_API_KEYS       — comma-separated bearer tokens for /track-subscription
  DAILY_QUOTA_BYTES         — provider bandwidth cap per UTC day
  MAX_ATTEMPTS              — attempts per (entity, data type) before giving up
  RETRY_BASE_DELAY_S        — first transient retry waits up to this long
  RETRY_MAX_DELAY_S         — cap on any transient retry delay
  STALENESS_RETRY_DELAY_S   — wait before re-fetching after stale-but-200-OK
  LEASE_TIMEOUT_S           — processing jobs older than this are reaped
  BATCH_SIZE                — jobs claimed per processor sweep
  MAX_CONCURRENT_JOBS       — jobs processed in parallel per batch
  REQUEST_TIMEOUT           — provider HTTP timeout (seconds)
  HEALTH_BUFFER_MINUTES     — grace added to every sweep's expected interval
  REGISTRY_REFRESH_MINUTES  — registry reload interval
  RUN_SCHEDULER             — run the sweep scheduler inside the API process (default 1)
  PORT                      — API listen port
"""

import os
from dataclasses import dataclass, field
from typing import Tuple

from dotenv import load_dotenv

load_dotenv()

GIB = 1024 ** 3


def _int(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


def _float(name: str, default: float) -> float:
    return float(os.environ.get(name, str(default)))


def _csv(name: str) -> Tuple[str, ...]:
    raw = os.environ.get(name, "")
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    redis_url:                str   = "redis://localhost:6379"
    fmp_api_key:              str   = ""
    fmp_base_url:             str   = "https://financialmodelingprep.com/stable"
    subscriber_api_keys:      Tuple[str, ...] = field(default_factory=tuple)

    daily_quota_bytes:        int   = 20 * GIB     # FMP starter plan bandwidth
    max_attempts:             int   = 3
    retry_base_delay_s:       float = 30.0
    retry_max_delay_s:        float = 900.0
    staleness_retry_delay_s:  float = 300.0
    lease_timeout_s:          int   = 300

    batch_size:               int   = 10
    max_concurrent_jobs:      int   = 5
    request_timeout:          float = 10.0

    health_buffer_minutes:    int   = 0
    registry_refresh_minutes: int   = 15
    run_scheduler:            bool  = True
    port:                     int   = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            redis_url                = os.environ.get("REDIS_URL", cls.redis_url),
            fmp_api_key              = os.environ.get("FMP_API_KEY", ""),
            fmp_base_url             = os.environ.get("FMP_BASE_URL", cls.fmp_base_url).rstrip("/"),
            subscriber_api_keys      = _csv("SUBSCRIBER_API_KEYS"),
            daily_quota_bytes        = _int("DAILY_QUOTA_BYTES", cls.daily_quota_bytes),
            max_attempts             = _int("MAX_ATTEMPTS", cls.max_attempts),
            retry_base_delay_s       = _float("RETRY_BASE_DELAY_S", cls.retry_base_delay_s),
            retry_max_delay_s        = _float("RETRY_MAX_DELAY_S", cls.retry_max_delay_s),
            staleness_retry_delay_s  = _float("STALENESS_RETRY_DELAY_S", cls.staleness_retry_delay_s),
            lease_timeout_s          = _int("LEASE_TIMEOUT_S", cls.lease_timeout_s),
            batch_size               = _int("BATCH_SIZE", cls.batch_size),
            max_concurrent_jobs      = _int("MAX_CONCURRENT_JOBS", cls.max_concurrent_jobs),
            request_timeout          = _float("REQUEST_TIMEOUT", cls.request_timeout),
            health_buffer_minutes    = _int("HEALTH_BUFFER_MINUTES", cls.health_buffer_minutes),
            registry_refresh_minutes = _int("REGISTRY_REFRESH_MINUTES", cls.registry_refresh_minutes),
            run_scheduler            = os.environ.get("RUN_SCHEDULER", "1").lower() not in ("0", "false", "no"),
            port                     = _int("PORT", cls.port),
        )


_settings = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings
