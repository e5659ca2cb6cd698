"""
Market Brain — Monitoring Alerts
──────────────────────────────────
Threshold checks for uptime monitors. Each returns status "alert" or
"healthy"; the API maps those to 503 / 200.

  queue_success_rate   completed / (completed + failed) < 90%
                       stale-data rejections are expected and excluded
  quota_usage          today's wire bytes > 80% of the daily cap
  stuck_jobs           more than 10 jobs processing for over 10 minutes
"""

import time
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

from refresh_engine.queue.store import QueueStore
from refresh_engine.quota.ledger import QuotaLedger

SUCCESS_RATE_MIN_PCT = 90.0
QUOTA_ALERT_PCT      = 80.0
STUCK_JOBS_MAX       = 10
STUCK_AFTER_S        = 10 * 60


@dataclass(frozen=True)
class AlertResult:
    alert_type:   str
    status:       str
    message:      str
    metric_value: float
    threshold:    str

    @property
    def alerting(self) -> bool:
        return self.status == "alert"

    def to_dict(self) -> dict:
        return asdict(self)


class MonitoringAlerts:

    def __init__(self, queue: QueueStore, ledger: QuotaLedger, stuck_after_s: float = STUCK_AFTER_S):
        self.queue         = queue
        self.ledger        = ledger
        self.stuck_after_s = stuck_after_s

    async def queue_success_rate(self, date: Optional[str] = None) -> AlertResult:
        stats     = await self.queue.daily_stats(date)
        completed = stats["completed"]
        failed    = stats["failed"]
        stale     = stats["stale_rejections"]
        total     = completed + failed
        rate      = 100.0 if total == 0 else round(completed / total * 100, 2)

        if rate < SUCCESS_RATE_MIN_PCT:
            message = (f"Queue success rate is {rate:.2f}% (below {SUCCESS_RATE_MIN_PCT:.0f}% threshold). "
                       f"{failed} actual failures, {stale} stale data rejections (expected).")
        else:
            message = (f"Queue success rate is {rate:.2f}% "
                       f"({failed} actual failures, {stale} stale data rejections excluded)")
        return AlertResult(
            alert_type   = "queue_success_rate",
            status       = "alert" if rate < SUCCESS_RATE_MIN_PCT else "healthy",
            message      = message,
            metric_value = rate,
            threshold    = f"{SUCCESS_RATE_MIN_PCT:.0f}%",
        )

    async def quota_usage(self, date: Optional[str] = None) -> AlertResult:
        usage   = await self.ledger.usage(date)
        pct     = usage.used_pct
        alert   = pct > QUOTA_ALERT_PCT
        message = f"Quota usage is {pct:.2f}%"
        if alert:
            message += f" (above {QUOTA_ALERT_PCT:.0f}% threshold)"
        return AlertResult(
            alert_type   = "quota_usage",
            status       = "alert" if alert else "healthy",
            message      = message,
            metric_value = pct,
            threshold    = f"{QUOTA_ALERT_PCT:.0f}%",
        )

    async def stuck_jobs(self, now: Optional[float] = None) -> AlertResult:
        now   = time.time() if now is None else now
        jobs  = await self.queue.stuck_jobs(self.stuck_after_s, now)
        count = len(jobs)
        types = len({j.data_type for j in jobs})
        alert = count > STUCK_JOBS_MAX
        return AlertResult(
            alert_type   = "stuck_jobs",
            status       = "alert" if alert else "healthy",
            message      = (f"{count} stuck jobs detected (above {STUCK_JOBS_MAX} threshold) affecting {types} data types"
                            if alert else f"{count} stuck jobs (within threshold)"),
            metric_value = count,
            threshold    = f"{STUCK_JOBS_MAX} jobs",
        )

    async def all_alerts(self) -> Dict:
        results: List[AlertResult] = [
            await self.queue_success_rate(),
            await self.quota_usage(),
            await self.stuck_jobs(),
        ]
        return {
            "status": "alert" if any(r.alerting for r in results) else "healthy",
            "alerts": [r.to_dict() for r in results],
        }
