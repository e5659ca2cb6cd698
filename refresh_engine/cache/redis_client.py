"""
Market Brain — Redis Client
─────────────────────────────
One shared async Redis connection plus every key the refresh engine
touches. Queue, quota and stored records all live here so that every
worker process sees the same state.

Key layout:
  mb:rq:job:{id}                hash   QueueJob
  mb:rq:active:{type}:{entity}  string id of the one non-terminal job
  mb:rq:pending                 zset   claimable jobs, ranked by priority then age
  mb:rq:delayed                 zset   retries waiting for eligible_at
  mb:rq:processing              zset   claimed jobs, scored by claimed_at (lease)
  mb:rq:quota:{YYYY-MM-DD}      int    wire bytes used that UTC day
  mb:rq:stats:{YYYY-MM-DD}      hash   completed / failed / stale_rejections
  mb:rq:sweeps                  hash   sweep name → last run (epoch seconds)
  mb:rq:registry                hash   data type → JSON overrides
  mb:rq:subscriptions           zset   "{type}|{entity}" → last seen
  mb:store:{table}:{key}        hash   stored provider record
"""

import logging
from typing import Optional

import redis.asyncio as aioredis

from refresh_engine.config import get_settings

log = logging.getLogger("mb.redis")

_redis: Optional[aioredis.Redis] = None

PREFIX            = "mb:rq"
KEY_PENDING       = f"{PREFIX}:pending"
KEY_DELAYED       = f"{PREFIX}:delayed"
KEY_PROCESSING    = f"{PREFIX}:processing"
KEY_SWEEP_RUNS    = f"{PREFIX}:sweeps"
KEY_REGISTRY      = f"{PREFIX}:registry"
KEY_SUBSCRIPTIONS = f"{PREFIX}:subscriptions"
JOB_KEY_PREFIX    = f"{PREFIX}:job:"

# Day counters are kept for a month of history
DAY_KEY_TTL_S = 35 * 24 * 3600


def key_job(job_id: str) -> str:
    return f"{JOB_KEY_PREFIX}{job_id}"


def key_active(data_type: str, entity_key: str) -> str:
    return f"{PREFIX}:active:{data_type}:{entity_key}"


def key_quota(date: str) -> str:
    return f"{PREFIX}:quota:{date}"


def key_stats(date: str) -> str:
    return f"{PREFIX}:stats:{date}"


def key_record(table: str, key: str) -> str:
    return f"mb:store:{table}:{key}"


def as_str(value) -> Optional[str]:
    """Script replies may arrive as bytes depending on the client."""
    if isinstance(value, bytes):
        return value.decode()
    return value


async def get_redis() -> aioredis.Redis:
    global _redis
    if _redis is None:
        url = get_settings().redis_url
        _redis = aioredis.from_url(url, decode_responses=True, socket_timeout=5)
        await _redis.ping()
        log.info("Redis connected")
    return _redis


async def close_redis():
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None
