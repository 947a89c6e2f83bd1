"""
Pydantic models for API request/response validation.
"""
from pydantic import BaseModel, Field
from typing import Optional, List
from enum import Enum


class EngineType(str, Enum):
    MEDUSA = "medusa"
    WOOCOMMERCE = "woocommerce"


class StoreStatus(str, Enum):
    PROVISIONING = "Provisioning"
    READY = "Ready"
    FAILED = "Failed"
    DELETING = "Deleting"
    DELETED = "Deleted"


class StoreCreateRequest(BaseModel):
    """Request to create a new store."""
    name: str = Field(
        ...,
        min_length=1,
        max_length=40,
        description="Store display name; sanitized into the store id",
        examples=["acme", "Demo Shop"],
    )
    engine: EngineType = Field(
        ...,
        description="E-commerce engine (medusa or woocommerce)",
    )


class StoreUrls(BaseModel):
    storefront: Optional[str] = None
    admin: Optional[str] = None


class ActivityLogEntry(BaseModel):
    timestamp: str
    event: str
    message: str = ""


class StoreResponse(BaseModel):
    """Store details returned to the dashboard."""
    id: str
    name: str
    engine: Optional[EngineType] = None
    status: StoreStatus
    namespace: str
    urls: StoreUrls = StoreUrls()
    createdAt: Optional[str] = None
    error: Optional[str] = None
    activityLog: List[ActivityLogEntry] = []


class StoreListResponse(BaseModel):
    stores: List[StoreResponse]
    total: int


class ErrorResponse(BaseModel):
    detail: str
    code: str = "UNKNOWN_ERROR"


class AuditLogEntry(BaseModel):
    timestamp: str
    action: str  # CREATE, DELETE
    store_id: str
    engine: str
    result: str  # SUCCESS, FAILED, QUOTA_EXCEEDED
    detail: str = ""
