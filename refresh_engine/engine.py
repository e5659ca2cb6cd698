"""
Market Brain — Refresh Engine wiring
──────────────────────────────────────
Builds every component over one Redis connection so the API process,
the scheduler and standalone workers share identical wiring.
"""

from dataclasses import dataclass
from typing import Optional

import httpx

from refresh_engine.cache.storage import Storage
from refresh_engine.config import Settings
from refresh_engine.orchestrator.alerts import MonitoringAlerts
from refresh_engine.orchestrator.enqueuer import Enqueuer
from refresh_engine.orchestrator.health import HealthMonitor
from refresh_engine.orchestrator.staleness import StalenessDetector
from refresh_engine.orchestrator.subscriptions import SubscriptionTracker
from refresh_engine.queue.retry import RetryPolicy
from refresh_engine.queue.store import QueueStore
from refresh_engine.quota.ledger import QuotaLedger
from refresh_engine.registry.registry import Registry, get_registry


@dataclass
class RefreshEngine:
    settings: Settings
    redis:    object
    registry: Registry
    storage:  Storage
    ledger:   QuotaLedger
    queue:    QueueStore
    detector: StalenessDetector
    tracker:  SubscriptionTracker
    enqueuer: Enqueuer
    health:   HealthMonitor
    alerts:   MonitoringAlerts

    @classmethod
    def build(cls, redis, settings: Settings, registry: Optional[Registry] = None) -> "RefreshEngine":
        registry = registry or get_registry()
        storage  = Storage(redis)
        ledger   = QuotaLedger(redis, settings.daily_quota_bytes)
        queue    = QueueStore(redis, registry, RetryPolicy.from_settings(settings))
        tracker  = SubscriptionTracker(redis)
        return cls(
            settings = settings,
            redis    = redis,
            registry = registry,
            storage  = storage,
            ledger   = ledger,
            queue    = queue,
            detector = StalenessDetector(storage, registry),
            tracker  = tracker,
            enqueuer = Enqueuer(queue, tracker),
            health   = HealthMonitor(redis, buffer_minutes=settings.health_buffer_minutes),
            alerts   = MonitoringAlerts(queue, ledger),
        )

    def worker_pool(self, client: httpx.AsyncClient, worker_id: Optional[str] = None):
        # imported here: fetch_workers depends on refresh_engine, not the reverse
        from fetch_workers import build_workers
        from fetch_workers.pool import WorkerPool
        return WorkerPool(
            queue     = self.queue,
            ledger    = self.ledger,
            detector  = self.detector,
            storage   = self.storage,
            workers   = build_workers(self.settings.fmp_api_key),
            client    = client,
            worker_id = worker_id,
            health    = self.health,
        )


def provider_client(settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url  = settings.fmp_base_url,
        timeout   = settings.request_timeout,
        transport = transport,
        headers   = {"Accept": "application/json"},
    )
