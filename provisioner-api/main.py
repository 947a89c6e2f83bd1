"""
Store Provisioning Platform: Orchestrator API

Main entrypoint. Sets up FastAPI with:
  - Orchestration service lifecycle (startup reconcile, task shutdown)
  - CORS for dashboard access
  - Rate limiting (slowapi)
  - Prometheus metrics (/metrics)
  - Health check (/health) with Redis status
  - Store routes (/api/stores)
"""

import logging
import uvicorn
from datetime import datetime, timezone
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from config import settings
from routers.stores import limiter, router as stores_router
from services import events, metrics
from services.errors import (
    InvalidTransitionError,
    StoreDeletionError,
    StoreLimitExceededError,
    StoreNotFoundError,
    StorePlatformError,
)
from services.kubernetes_service import KubernetesResourceClient
from services.orchestrator import StoreOrchestrationService

# --- Logging ---
logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("orchestrator-api")

VERSION = "1.0.0"

ERROR_STATUS = {
    StoreNotFoundError: (404, "STORE_NOT_FOUND"),
    StoreLimitExceededError: (429, "STORE_LIMIT_REACHED"),
    InvalidTransitionError: (409, "INVALID_TRANSITION"),
    StoreDeletionError: (500, "DELETION_FAILED"),
}


# --- Lifespan ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Store Platform Orchestrator API starting...")
    orchestrator = getattr(app.state, "orchestrator", None)
    if orchestrator is None:
        orchestrator = StoreOrchestrationService(KubernetesResourceClient())
        app.state.orchestrator = orchestrator
    await orchestrator.startup()
    yield
    logger.info("Store Platform Orchestrator API shutting down...")
    await orchestrator.shutdown()
    await events.close_redis()


# --- FastAPI app ---
app = FastAPI(
    title="Store Provisioning Platform API",
    description="Orchestrator API for Kubernetes-native multi-tenant store provisioning",
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",")],
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=True,
)

# --- Rate Limiting ---
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# --- Include stores router ---
app.include_router(stores_router, prefix="/api")


# --- Health check ---
@app.get("/health")
@app.get("/api/health")
async def health():
    """Health check with Redis connectivity status."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "redis": await events.redis_status(),
        "version": VERSION,
    }


# --- Prometheus metrics endpoint ---
@app.get("/metrics", response_class=PlainTextResponse)
async def prometheus_metrics(request: Request):
    """Expose Prometheus metrics."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is not None:
        metrics.update_gauges(orchestrator.count_by_status())
    return PlainTextResponse(
        content=generate_latest().decode("utf-8"),
        media_type=CONTENT_TYPE_LATEST,
    )


# --- Domain errors ---
@app.exception_handler(StorePlatformError)
async def store_error_handler(request: Request, exc: StorePlatformError):
    status, code = ERROR_STATUS.get(type(exc), (500, "STORE_PLATFORM_ERROR"))
    if status >= 500:
        logger.error(f"Request failed path={request.url.path}: {exc}")
    else:
        logger.warning(f"Request failed path={request.url.path} status={status}: {exc}")
    return JSONResponse(status_code=status, content={"detail": str(exc), "code": code})


# --- Request validation (missing / invalid fields) ---
@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'] if p != 'body')}: {err['msg']}"
        for err in exc.errors()
    )
    return JSONResponse(
        status_code=400,
        content={"detail": problems or "Invalid request", "code": "VALIDATION_ERROR"},
    )


# --- Global exception handler ---
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


# --- Entry point ---
if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level="info",
        reload=False,
    )
