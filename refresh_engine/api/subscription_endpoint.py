"""
Market Brain — Subscription API Endpoint
──────────────────────────────────────────
POST /track-subscription   { "entityKey": "AAPL", "dataTypes": ["quote", "profile"] }

THIS ENDPOINT NEVER MAKES EXTERNAL API CALLS.
It records the heartbeat and admits refresh jobs in one Redis round trip.
If that fails the caller still gets 200; the stale-data sweep catches up.
"""

import logging
from typing import List

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as SchemaError

from refresh_engine.engine import RefreshEngine
from refresh_engine.errors import BadRequest, RegistryNotFound
from refresh_engine.registry.registry import parse_data_type

log = logging.getLogger("mb.api.subscription")


class SubscriptionEvent(BaseModel):
    model_config = ConfigDict(strict=True, extra="ignore")

    entityKey: str       = Field(min_length=1, max_length=32)
    dataTypes: List[str] = Field(min_length=1, max_length=16)


def parse_subscription(body: bytes) -> SubscriptionEvent:
    try:
        event = SubscriptionEvent.model_validate_json(body)
    except SchemaError as e:
        raise BadRequest(f"invalid subscription body: {e.error_count()} errors") from e
    if not event.entityKey.strip():
        raise BadRequest("entityKey is blank")
    return event


async def track_subscription(engine: RefreshEngine, body: bytes) -> dict:
    event = parse_subscription(body)
    entity_key = event.entityKey.strip().upper()
    try:
        data_types = list(dict.fromkeys(parse_data_type(t) for t in event.dataTypes))
    except RegistryNotFound as e:
        raise BadRequest(str(e)) from e

    results = await engine.enqueuer.on_subscription(entity_key, data_types)
    if results is not None:
        summary = {dt.value: a.outcome.value for dt, a in results.items()}
        log.debug(f"{entity_key}: {summary}")

    return {
        "success":   True,
        "entityKey": entity_key,
        "dataTypes": [dt.value for dt in data_types],
    }
