from contextlib import asynccontextmanager

import redis.asyncio as aioredis
import sentry_sdk
import structlog
from alembic.config import Config as AlembicConfig
from alembic.script import ScriptDirectory
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import Counter, Histogram, generate_latest
from prometheus_fastapi_instrumentator import Instrumentator
from redis.exceptions import RedisError
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.responses import Response

from app.admin.routes import router as admin_router
from app.bookings.routes import router as bookings_router
from app.config import settings
from app.database import async_session
from app.jobs.routes import router as jobs_router
from app.middleware import RequestContextMiddleware, SecurityHeadersMiddleware
from app.notifications.routes import router as notifications_router
from app.payments.routes import router as payments_router
from app.presence.routes import router as presence_router
from app.providers.routes import router as providers_router
from app.services.scheduler import scheduler, start_scheduler
from app.utils.log_mask import mask_sensitive_fields
from app.utils.rate_limit import limiter

# JSON logs in production, console renderer locally
processors = [
    structlog.contextvars.merge_contextvars,
    structlog.processors.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
    mask_sensitive_fields,
]
if settings.is_production:
    processors.append(structlog.processors.JSONRenderer())
else:
    processors.append(structlog.dev.ConsoleRenderer())

structlog.configure(
    processors=processors,
    wrapper_class=structlog.make_filtering_bound_logger(0),
)

logger = structlog.get_logger()

if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        traces_sample_rate=0.1,
        environment=settings.APP_ENV,
        send_default_pii=False,
    )


async def _check_migration_head() -> None:
    """Warn when the database is not at the alembic head. Never raises."""
    try:
        head_rev = ScriptDirectory.from_config(AlembicConfig("alembic.ini")).get_current_head()

        def _current_rev(connection):
            if not connection.dialect.has_table(connection, "alembic_version"):
                return None
            row = connection.execute(text("SELECT version_num FROM alembic_version")).fetchone()
            return row[0] if row else None

        async with async_session() as session:
            conn = await session.connection()
            current_rev = await conn.run_sync(_current_rev)
    except Exception as exc:
        logger.warning("alembic_version_check_failed", error=str(exc))
        return

    if current_rev is None:
        logger.warning("alembic_version_check", status="no_alembic_version_table")
    elif current_rev != head_rev:
        logger.warning("alembic_version_mismatch", current=current_rev, head=head_rev)
    else:
        logger.info("alembic_version_ok", version=current_rev)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("servly_startup", env=settings.APP_ENV, mock_stripe=not settings.STRIPE_SECRET_KEY)
    await _check_migration_head()

    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.warning("stripe_webhook_secret_empty", signature_verification=False)
    if settings.DISABLE_PAYOUTS:
        logger.warning("payouts_disabled")

    start_scheduler()
    yield
    scheduler.shutdown(wait=True)
    logger.info("servly_shutdown")


app = FastAPI(
    title="Servly API",
    description="Local services marketplace: bookings, job requests and provider payouts",
    version="0.1.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_exception", path=request.url.path)
    if settings.APP_ENV != "development":
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})
    raise exc


# Middleware is LIFO: the last one added runs first
if settings.is_production:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        allow_headers=["Authorization", "Content-Type", "Idempotency-Key"],
    )
    if not settings.cors_origins_list:
        logger.warning("cors_origins_empty_in_production", app_env=settings.APP_ENV)
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:8081", "http://localhost:19006"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
app.add_middleware(SecurityHeadersMiddleware, is_production=settings.is_production)
app.add_middleware(RequestContextMiddleware)


_HTTP_REQUESTS = Counter(
    "servly_http_requests_total", "Total HTTP requests", ["method", "status", "handler"],
)
_HTTP_LATENCY = Histogram(
    "servly_http_request_duration_seconds", "Request latency", ["method", "handler"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30),
)


def _record_request(info) -> None:
    # Replaces metrics.default(), which fails on non-numeric Content-Length
    _HTTP_REQUESTS.labels(info.method, info.modified_status, info.modified_handler).inc()
    _HTTP_LATENCY.labels(info.method, info.modified_handler).observe(info.modified_duration)


Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    excluded_handlers=["/health", "/metrics"],
).add(_record_request).instrument(app)


@app.get("/metrics", include_in_schema=False)
async def metrics_endpoint(request: Request):
    """Prometheus scrape endpoint, guarded by x-metrics-key when configured."""
    if settings.is_production and not settings.METRICS_API_KEY:
        raise HTTPException(status_code=503, detail="Metrics not available")
    if settings.METRICS_API_KEY and request.headers.get("x-metrics-key", "") != settings.METRICS_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid metrics API key")
    return Response(content=generate_latest(), media_type="text/plain; version=0.0.4; charset=utf-8")


app.include_router(bookings_router, prefix="/bookings", tags=["bookings"])
app.include_router(jobs_router, prefix="/jobs", tags=["jobs"])
app.include_router(providers_router, prefix="/providers", tags=["providers"])
app.include_router(payments_router, prefix="/payments", tags=["payments"])
app.include_router(presence_router, prefix="/presence", tags=["presence"])
app.include_router(notifications_router, prefix="/notifications", tags=["notifications"])
app.include_router(admin_router)


@app.get("/health")
@limiter.limit("60/minute")
async def health_check(request: Request):
    """Database, Redis and scheduler status. Redis is optional outside production."""
    try:
        async with async_session() as db:
            await db.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError):
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "database": "disconnected", "redis": "unknown"},
        )

    redis_state = "not_configured"
    if settings.REDIS_URL:
        try:
            r = aioredis.from_url(settings.REDIS_URL, socket_connect_timeout=2)
            await r.ping()
            await r.aclose()
            redis_state = "connected"
        except (RedisError, OSError):
            redis_state = "unavailable"

    result = {
        "status": "ok",
        "database": "connected",
        "redis": redis_state,
        "scheduler": "running" if scheduler.running else "stopped",
    }
    if settings.is_production and (redis_state != "connected" or not scheduler.running):
        result["status"] = "unhealthy"
    return result
