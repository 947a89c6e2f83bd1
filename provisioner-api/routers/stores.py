"""
Store API routes: create / list / get / delete for provisioned stores.

Features:
  - Async provisioning: POST returns 202 with a Provisioning record
  - GET /{id} re-checks readiness of a Provisioning store before answering
  - Rate limiting per-IP via slowapi
  - Activity log per store (record + Redis Stream if connected)
  - Audit logging (in-memory ring buffer)
"""

import logging
from collections import deque
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from config import settings
from models import (
    AuditLogEntry,
    ErrorResponse,
    StoreCreateRequest,
    StoreListResponse,
    StoreResponse,
)
from services import events
from services.errors import StoreLimitExceededError, StorePlatformError
from services.orchestrator import StoreOrchestrationService

logger = logging.getLogger("stores")

router = APIRouter(prefix="/stores", tags=["stores"])
limiter = Limiter(key_func=get_remote_address)

# --- Audit log (in-memory ring buffer) ---
_audit_log: deque[dict] = deque(maxlen=50)


def _audit(action: str, store_id: str, engine: str, result: str, detail: str = ""):
    entry = AuditLogEntry(
        timestamp=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        action=action,
        store_id=store_id,
        engine=engine,
        result=result,
        detail=detail,
    )
    _audit_log.append(entry.model_dump())
    logger.info(f"AUDIT: {action} {store_id} -> {result}")


def get_orchestrator(request: Request) -> StoreOrchestrationService:
    return request.app.state.orchestrator


# =========================================================================
# REST Endpoints
# =========================================================================

@router.post("", response_model=StoreResponse, status_code=202,
             responses={400: {"model": ErrorResponse}, 429: {"model": ErrorResponse}})
@limiter.limit(settings.RATE_LIMIT)
async def create_store_endpoint(
    req: StoreCreateRequest,
    request: Request,
    orchestrator: StoreOrchestrationService = Depends(get_orchestrator),
):
    """Start provisioning a new store. Poll GET /stores/{id} for progress."""
    try:
        record = orchestrator.create_store(req.name, req.engine)
    except StoreLimitExceededError as e:
        _audit("CREATE", req.name, req.engine.value, "QUOTA_EXCEEDED", str(e))
        raise
    _audit("CREATE", record.id, req.engine.value, "SUCCESS", "Store creation initiated")
    return record.to_response()


@router.get("", response_model=StoreListResponse)
@limiter.limit(settings.RATE_LIMIT)
async def list_stores_endpoint(
    request: Request,
    orchestrator: StoreOrchestrationService = Depends(get_orchestrator),
):
    """List all stores."""
    stores = [r.to_response() for r in orchestrator.list_stores()]
    return StoreListResponse(stores=stores, total=len(stores))


@router.get("/audit/log")
@limiter.limit(settings.RATE_LIMIT)
async def get_audit_log(request: Request):
    """Get the platform audit log (last 50 entries)."""
    return {"entries": list(_audit_log), "count": len(_audit_log)}


@router.get("/{store_id}", response_model=StoreResponse,
            responses={404: {"model": ErrorResponse}})
@limiter.limit(settings.RATE_LIMIT)
async def get_store_endpoint(
    store_id: str,
    request: Request,
    orchestrator: StoreOrchestrationService = Depends(get_orchestrator),
):
    """Get a store, re-checking readiness if it is still provisioning."""
    record = await orchestrator.refresh_store(store_id)
    return record.to_response()


@router.delete("/{store_id}", responses={404: {"model": ErrorResponse}, 500: {"model": ErrorResponse}})
@limiter.limit(settings.RATE_LIMIT)
async def delete_store_endpoint(
    store_id: str,
    request: Request,
    orchestrator: StoreOrchestrationService = Depends(get_orchestrator),
):
    """Delete a store and its namespace."""
    record = orchestrator.get_store(store_id)
    engine = record.engine.value if record.engine else ""
    try:
        await orchestrator.delete_store(store_id)
    except StorePlatformError as e:
        _audit("DELETE", store_id, engine, "FAILED", str(e))
        raise
    _audit("DELETE", store_id, engine, "SUCCESS")
    return {"message": f"Store {store_id} deleted successfully"}


@router.get("/{store_id}/logs")
@limiter.limit(settings.RATE_LIMIT)
async def get_store_logs(
    store_id: str,
    request: Request,
    orchestrator: StoreOrchestrationService = Depends(get_orchestrator),
):
    """
    Get activity log for a store.
    Sources: the store record (always available) + Redis Stream (if connected).
    """
    record = orchestrator.get_store(store_id)
    logs = [dict(a, source="record") for a in record.activity_log]
    logs.extend(await events.read_stream(store_id))
    return {"store": store_id, "logs": logs}
