import re
import time
import uuid
from contextlib import asynccontextmanager

import sentry_sdk
import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import generate_latest
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from app.config import settings
from app.database import async_session
from app.metrics import record_http_request
from app.referrals.routes import router as referrals_router
from app.services.errors import (
    InvalidTransitionError,
    NotFoundError,
    ReferralError,
    ReferralValidationError,
    TransientStoreError,
)
from app.utils.rate_limit import limiter


def configure_logging() -> None:
    """structlog setup: JSON lines in production/staging, console output otherwise."""
    renderer = structlog.processors.JSONRenderer() if settings.is_production else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
    )


configure_logging()
logger = structlog.get_logger()

if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.APP_ENV,
        traces_sample_rate=0.1,
        send_default_pii=False,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("referrals_startup", env=settings.APP_ENV)
    yield
    logger.info("referrals_shutdown")


_docs_enabled = not settings.is_production

app = FastAPI(
    title="Kommute Referrals API",
    description="Referral program: fraud-screened referrals, trip progress and one-time rewards",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if _docs_enabled else None,
    redoc_url="/redoc" if _docs_enabled else None,
    openapi_url="/openapi.json" if _docs_enabled else None,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Most specific class first; ReferralError is the fallback.
_ERROR_STATUS: list[tuple[type[ReferralError], int]] = [
    (NotFoundError, 404),
    (ReferralValidationError, 422),
    (InvalidTransitionError, 409),
    (TransientStoreError, 503),
    (ReferralError, 400),
]


@app.exception_handler(ReferralError)
async def referral_error_handler(request: Request, exc: ReferralError):
    status_code = next(code for cls, code in _ERROR_STATUS if isinstance(exc, cls))
    if isinstance(exc, ReferralValidationError):
        # Expected outcome, the registry already logged it at info level
        return JSONResponse(
            status_code=status_code,
            content={"detail": exc.reason, "fraud_score": exc.fraud_score, "checks": exc.checks},
        )
    if isinstance(exc, TransientStoreError):
        logger.error("service_unavailable", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=status_code,
            content={"detail": "Service temporarily unavailable, please retry"},
            headers={"Retry-After": "5"},
        )
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_exception", path=request.url.path)
    if settings.APP_ENV == "development":
        raise exc
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


if settings.is_production:
    if not settings.cors_origins_list:
        logger.warning("cors_origins_empty_in_production", app_env=settings.APP_ENV)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list or ["http://localhost:8081", "http://localhost:19006"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

# Client-supplied ids are only trusted when they cannot inject into log lines
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9\-]{1,64}$")
SLOW_REQUEST_MS = 1000


@app.middleware("http")
async def bind_request_id(request: Request, call_next):
    supplied = request.headers.get("X-Request-ID", "")
    request_id = supplied if _REQUEST_ID_PATTERN.match(supplied) else str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(request_id=request_id)
    started = time.monotonic()
    try:
        response = await call_next(request)
        elapsed_ms = (time.monotonic() - started) * 1000
        response.headers["X-Request-ID"] = request_id
        if elapsed_ms > SLOW_REQUEST_MS:
            logger.warning(
                "slow_request",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(elapsed_ms, 1),
            )
        return response
    finally:
        structlog.contextvars.clear_contextvars()


Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    excluded_handlers=["/health", "/metrics"],
).add(record_http_request).instrument(app)


@app.get("/metrics", include_in_schema=False)
async def metrics(request: Request):
    """Prometheus scrape endpoint. Requires X-Metrics-Key when METRICS_API_KEY is set."""
    if settings.is_production and not settings.METRICS_API_KEY:
        raise HTTPException(status_code=503, detail="Metrics not available")
    if settings.METRICS_API_KEY and request.headers.get("x-metrics-key") != settings.METRICS_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid metrics API key")
    return Response(content=generate_latest(), media_type="text/plain; version=0.0.4; charset=utf-8")


app.include_router(referrals_router, prefix="/referrals", tags=["referrals"])


@app.get("/health")
@limiter.limit("60/minute")
async def health_check(request: Request):
    try:
        async with async_session() as db:
            await db.execute(text("SELECT 1"))
    except Exception:
        logger.warning("health_check_database_unreachable")
        return JSONResponse(status_code=503, content={"status": "unhealthy", "database": "disconnected"})
    return {"status": "ok", "database": "connected"}
