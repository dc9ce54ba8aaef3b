"""
main.py — Box Scan FastAPI application entry point.

Start with: uvicorn boxscan.main:app --reload --port 8000
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from boxscan.config import settings
from boxscan.errors import ScanSessionError

# ---------------------------------------------------------------------------
# Logging: configured before anything else
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)

# Concurrent Mistral OCR calls per process
OCR_CONCURRENCY = 4


# ---------------------------------------------------------------------------
# Lifespan: startup & shutdown hooks
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
      1. Redis connection pool (session records + locks)
      2. httpx client for the bot webhook
      3. Mistral client + OCR semaphore
    Shutdown:
      1. Close httpx client
      2. Close Redis pool
    """
    # --- 1. Redis ---
    from boxscan.cache import create_redis_pool
    app.state.redis = await create_redis_pool()

    # --- 2. Webhook client (timeout stays below the 10s session lock TTL) ---
    app.state.http = httpx.AsyncClient(timeout=settings.webhook_timeout_seconds)

    # --- 3. Mistral client, one per process for connection pool reuse ---
    if settings.mistral_api_key:
        from mistralai import Mistral
        app.state.mistral = Mistral(api_key=settings.mistral_api_key)
        logger.info("Mistral client initialized model=%s", settings.ocr_model)
    else:
        app.state.mistral = None
        logger.warning("MISTRAL_API_KEY not set — POST /api/ocr will return 503")

    # asyncio.Semaphore MUST be created inside async context (not module level)
    app.state.ocr_semaphore = asyncio.Semaphore(OCR_CONCURRENCY)

    if not settings.bot_webhook_url:
        logger.warning("BOT_WEBHOOK_URL not set — finalize will fail with DELIVERY_FAILED")

    logger.info("Box Scan v%s starting up", settings.app_version)
    yield

    # --- Shutdown ---
    await app.state.http.aclose()
    await app.state.redis.aclose()
    logger.info("Redis connection pool closed")
    logger.info("Box Scan shutting down")


# ---------------------------------------------------------------------------
# FastAPI application instance
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Box Scan API",
    version=settings.app_version,
    description=(
        "Warehouse box scanning against supplier invoices: scan sessions, "
        "asynchronous label OCR, manual resolution and one-shot completion webhooks."
    ),
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# ---------------------------------------------------------------------------
# CORS middleware: restricted to frontend origins from settings
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error response helper
# ---------------------------------------------------------------------------
def _make_error_response(
    code: str,
    message: str,
    details: list[dict[str, Any]] | None = None,
    status_code: int = 500,
) -> JSONResponse:
    """Build a standard {error: {code, message, details}} response."""
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details or [],
        }
    }
    return JSONResponse(status_code=status_code, content=body)


# ---------------------------------------------------------------------------
# Global exception handlers: registered BEFORE routers
# ---------------------------------------------------------------------------
@app.exception_handler(ScanSessionError)
async def scan_session_error_handler(
    request: Request, exc: ScanSessionError
) -> JSONResponse:
    """
    Domain failures carry their own status and code (errors.py).
    SYSTEM_BUSY (503) is retryable; the rest are terminal for that request.
    """
    log = logger.warning if exc.status_code >= 500 else logger.info
    log(
        "%s on %s %s token=%s: %s",
        exc.code, request.method, request.url.path, exc.token, exc.message,
    )
    response = _make_error_response(
        code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
    )
    if exc.status_code == 503:
        response.headers["Retry-After"] = "1"
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Converts Pydantic / FastAPI 422 validation errors to standard format.
    Returns ALL field violations in one response.
    """
    details = []
    for error in exc.errors():
        # Build dot-notation field path, excluding the top-level 'body' loc
        field = ".".join(str(loc) for loc in error["loc"] if loc != "body")
        details.append({"field": field or None, "issue": error["msg"]})
    return _make_error_response(
        code="VALIDATION_ERROR",
        message="Request validation failed",
        details=details,
        status_code=422,
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    """
    Converts FastAPI HTTPException to standard error format with semantic code.
    """
    code_map = {
        400: "BAD_REQUEST",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
        409: "CONFLICT",
        422: "VALIDATION_ERROR",
        503: "SERVICE_UNAVAILABLE",
    }
    code = code_map.get(exc.status_code, f"HTTP_{exc.status_code}")
    return _make_error_response(
        code=code,
        message=str(exc.detail),
        status_code=exc.status_code,
    )


@app.exception_handler(ValueError)
async def value_error_handler(
    request: Request, exc: ValueError
) -> JSONResponse:
    """
    Catches explicit ValueError raises from business logic (engine.py).
    Surfaces as 422 VALIDATION_ERROR so the caller understands it's a data issue.
    """
    return _make_error_response(
        code="VALIDATION_ERROR",
        message=str(exc),
        status_code=422,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """
    Catch-all for unexpected errors (including Redis connection failures).
    DEBUG=true  → includes exception type & message in details (dev only).
    DEBUG=false → generic message; full traceback logged server-side only.
    """
    logger.error(
        "Unhandled exception on %s %s",
        request.method,
        request.url.path,
        exc_info=True,
    )
    if settings.debug:
        details = [{"issue": f"{type(exc).__name__}: {exc}"}]
        message = "An unexpected error occurred (debug details included)"
    else:
        details = []
        message = "An unexpected error occurred"
    return _make_error_response(
        code="INTERNAL_ERROR",
        message=message,
        details=details,
        status_code=500,
    )


# ---------------------------------------------------------------------------
# Health endpoint (no auth required)
# ---------------------------------------------------------------------------
@app.get("/api/health", tags=["System"])
async def health_check() -> dict:
    """Returns service health status."""
    return {
        "status": "ok",
        "version": settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
from boxscan.sessions.routes import router as session_router
from boxscan.ocr.routes import router as ocr_router
from boxscan.finalize.routes import router as finalize_router
from boxscan.issue.routes import router as issue_router

app.include_router(session_router)
app.include_router(ocr_router)
app.include_router(finalize_router)
app.include_router(issue_router)
