import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials

from refresh_engine.api.auth import BEARER_SCHEME, verify_bearer
from refresh_engine.api.subscription_endpoint import track_subscription
from refresh_engine.cache.redis_client import close_redis, get_redis
from refresh_engine.config import get_settings
from refresh_engine.engine import RefreshEngine, provider_client
from refresh_engine.errors import RefreshError
from refresh_engine.orchestrator.scheduler import get_scheduler_status, start_scheduler, stop_scheduler

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
log = logging.getLogger("mb.app")

STATUS_BY_CATEGORY = {
    "bad_request":  400,
    "unauthorized": 401,
    "not_found":    404,
    "conflict":     409,
    "config":       500,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    redis    = await get_redis()
    engine   = RefreshEngine.build(redis, settings)
    await engine.registry.refresh(redis)
    app.state.engine = engine

    client = None
    if settings.run_scheduler:
        client = provider_client(settings)
        start_scheduler(engine, engine.worker_pool(client))
    yield
    stop_scheduler()
    if client is not None:
        await client.aclose()
    await close_redis()


app = FastAPI(
    title="Market Brain Refresh Queue",
    description="Staleness-aware refresh queue for FMP financial data.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _engine(request: Request) -> RefreshEngine:
    return request.app.state.engine


# ── Errors: generic message + category, never the detail ─────

@app.exception_handler(RefreshError)
async def refresh_error_handler(request: Request, exc: RefreshError):
    status = STATUS_BY_CATEGORY.get(exc.category, 500)
    if status >= 500:
        log.error(f"{request.method} {request.url.path} [{exc.category}]: {exc}")
    else:
        log.info(f"{request.method} {request.url.path} → {status} [{exc.category}]: {exc}")
    return JSONResponse({"error": exc.public_message, "category": exc.category}, status_code=status)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    log.exception(f"{request.method} {request.url.path}: unhandled error")
    return JSONResponse({"error": "Internal server error", "category": "internal"}, status_code=500)


# ── Routes ────────────────────────────────────────────────────

@app.get("/")
async def root():
    return {
        "service": "Market Brain Refresh Queue",
        "version": "1.0.0",
        "endpoints": ["/track-subscription", "/health-check", "/monitoring/{alert}"],
    }


@app.post("/track-subscription", tags=["Subscriptions"])
async def post_track_subscription(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(BEARER_SCHEME),
):
    engine = _engine(request)
    verify_bearer(credentials, engine.settings.subscriber_api_keys)
    return await track_subscription(engine, await request.body())


@app.get("/health-check", tags=["Monitoring"])
async def health_check(request: Request):
    status = await _engine(request).health.status()
    return JSONResponse(status.to_dict(), status_code=200 if status.healthy else 503)


@app.get("/monitoring/{alert}", tags=["Monitoring"])
async def monitoring(alert: str, request: Request):
    alerts = _engine(request).alerts
    checks = {
        "queue-success-rate": alerts.queue_success_rate,
        "quota-usage":        alerts.quota_usage,
        "stuck-jobs":         alerts.stuck_jobs,
    }
    if alert == "all-alerts":
        result = await alerts.all_alerts()
        return JSONResponse(result, status_code=503 if result["status"] == "alert" else 200)
    if alert not in checks:
        return JSONResponse({"error": "Unknown alert", "category": "not_found"}, status_code=404)
    result = await checks[alert]()
    return JSONResponse(result.to_dict(), status_code=503 if result.alerting else 200)


@app.get("/scheduler/status", tags=["Monitoring"])
async def scheduler_status():
    return get_scheduler_status()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app:app", host="0.0.0.0", port=get_settings().port)
