"""
PropYield — FastAPI Application
════════════════════════════════
Deal underwriting and listing ingestion API with:
  • Centralized exception handling ({error, code} bodies)
  • Request ID tracking
  • Latency monitoring
  • CORS configuration
  • Health & readiness probes
"""
from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import auth, store
from .api import auth_routes, billing_routes, ingest_routes, listings_routes, underwriting_routes
from .config import settings
from .errors import IRRConvergenceError, RateLimitExceeded, SignatureError, UnderwritingError, UpstreamError

APP_VERSION = "1.0.0"

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger("propyield")

START_TIME = time.time()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Application startup/shutdown lifecycle."""
    store.init_db()
    auth.cleanup_blacklist()
    logger.info("PropYield v%s started — %s mode", APP_VERSION, settings.environment)
    yield
    logger.info("PropYield v%s shutting down", APP_VERSION)


app = FastAPI(
    title=settings.app_name,
    version=APP_VERSION,
    description="Buy-to-let underwriting, scenario analysis and listing ingestion",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


def _error(status_code: int, message: str, code: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, "code": code, **extra})


def _internal_error(exc: Exception, request_id: str | None = None) -> JSONResponse:
    extra = {"request_id": request_id} if request_id else {}
    if settings.is_development:
        extra["details"] = f"{type(exc).__name__}: {exc}"
    return _error(500, "Internal Server Error", "ERR_INTERNAL", **extra)


# ═══════════════════════════════════════════════════════════════
#  Middleware
# ═══════════════════════════════════════════════════════════════

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_logger(request: Request, call_next):
    """Request logging with UUID tracking and latency measurement."""
    request_id = str(uuid.uuid4())[:8]
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as exc:
        logger.exception("[%s] Unhandled error: %s", request_id, exc)
        return _internal_error(exc, request_id)
    duration = (time.perf_counter() - start) * 1000
    response.headers["X-Request-Id"] = request_id
    response.headers["X-Response-Time"] = f"{duration:.2f}ms"

    level = logging.WARNING if response.status_code >= 400 else logging.INFO
    logger.log(
        level,
        "[%s] %s %s → %s (%.1fms)",
        request_id, request.method, request.url.path, response.status_code, duration,
    )
    return response


# ═══════════════════════════════════════════════════════════════
#  Centralized Exception Handlers
# ═══════════════════════════════════════════════════════════════

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_: Request, exc: RequestValidationError):
    """Structured validation error response."""
    details = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]
    return _error(400, "Validation error", "ERR_VALIDATION", details=details)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(_: Request, exc: StarletteHTTPException):
    detail = exc.detail
    if isinstance(detail, dict):
        message = detail.get("error", "Request failed")
        code = detail.get("code", f"ERR_HTTP_{exc.status_code}")
    else:
        message = str(detail)
        code = "ERR_AUTH" if exc.status_code == 401 else f"ERR_HTTP_{exc.status_code}"
    response = _error(exc.status_code, message, code)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(SignatureError)
async def signature_error_handler(_: Request, exc: SignatureError):
    code = "ERR_SIGNATURE_MISSING" if exc.status_code == 401 else "ERR_SIGNATURE_INVALID"
    if exc.status_code >= 500:
        logger.error("Webhook verification misconfigured: %s", exc.message)
        code = "ERR_WEBHOOK_CONFIG"
    return _error(exc.status_code, exc.message, code)


@app.exception_handler(UpstreamError)
async def upstream_error_handler(_: Request, exc: UpstreamError):
    logger.warning("Upstream failure [%s]: %s", exc.code, exc.message)
    return _error(exc.status_code, exc.message, exc.code)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(_: Request, exc: RateLimitExceeded):
    response = _error(429, str(exc), "RATE_LIMITED")
    response.headers["Retry-After"] = str(exc.retry_after)
    return response


@app.exception_handler(ValueError)
async def value_error_handler(_: Request, exc: ValueError):
    if isinstance(exc, IRRConvergenceError):
        code = "ERR_IRR_NO_CONVERGENCE"
    elif isinstance(exc, UnderwritingError):
        code = "ERR_UNDERWRITING"
    else:
        code = "ERR_BAD_REQUEST"
    return _error(400, str(exc), code)


@app.exception_handler(Exception)
async def global_exception_handler(_: Request, exc: Exception):
    logger.exception("Unhandled exception: %s", exc)
    return _internal_error(exc)


# ═══════════════════════════════════════════════════════════════
#  Routes
# ═══════════════════════════════════════════════════════════════

app.include_router(auth_routes.router)
app.include_router(underwriting_routes.router)
app.include_router(listings_routes.router)
app.include_router(ingest_routes.router)
app.include_router(ingest_routes.webhook_router)
app.include_router(billing_routes.router)


# ═══════════════════════════════════════════════════════════════
#  Health & Readiness
# ═══════════════════════════════════════════════════════════════

@app.get("/health")
def health() -> dict:
    """Health check with system info."""
    return {
        "status": "ok",
        "app": settings.app_name,
        "version": APP_VERSION,
        "environment": settings.environment,
        "uptime_seconds": int(time.time() - START_TIME),
        "endpoints": {
            "auth": "/api/v1/auth",
            "underwriting": "/api/v1/underwriting",
            "listings": "/api/v1/listings",
            "ingest": "/api/v1/ingest",
            "webhooks": "/webhooks",
        },
    }


@app.get("/ready")
def readiness() -> dict:
    """Readiness probe: the database answers a trivial query."""
    with store.get_conn() as conn:
        conn.execute("SELECT 1").fetchone()
    return {"status": "ready"}
