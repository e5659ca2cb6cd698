"""
Market Brain — TTL Configuration
─────────────────────────────────
Default freshness windows, fallback wire sizes, sweep cadence and queue
priorities. Registry overrides stored in Redis take precedence at runtime.
"""

# ── Per data-type TTL (minutes) ───────────────────────────────

TTL_MINUTES = {
    # live on the dashboard
    "quote":                5,

    # company metadata, daily
    "profile":              24 * 60,

    # filed quarterly; weekly re-check picks up restatements
    "financial-statements": 7 * 24 * 60,

    # exchange list, weekly
    "available-exchanges":  7 * 24 * 60,
}

# ── Fallback wire size (bytes) ────────────────────────────────
# Charged only when a response carries neither Content-Length nor a
# transport byte count. Estimates err high.
FALLBACK_WIRE_BYTES = {
    "quote":                2_000,
    "profile":              50_000,
    "financial-statements": 600_000,   # three statements × 200 KB
    "available-exchanges":  50_000,
}

# ── Sweep cadence (minutes) ───────────────────────────────────
# (run every, expected interval for the health check)
SWEEP_INTERVALS = {
    "process-queue":             (1, 2),
    "check-stale-data":          (1, 10),
    "queue-scheduled-refreshes": (1, 5),
    "cleanup-subscriptions":     (1, 20),
    "reap-expired-leases":       (2, 10),
}

# Subscriptions not heartbeated for this long are dropped
SUBSCRIPTION_MAX_AGE_S = 5 * 60

# ── Queue priorities ──────────────────────────────────────────
PRIORITY_SUBSCRIPTION = 1000   # a user is looking at it right now
PRIORITY_SWEEP        = 100    # stale-data fallback sweep
PRIORITY_SCHEDULED    = 10     # global reference data
