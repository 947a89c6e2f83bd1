"""
In-memory store registry.

The registry is a cache over the cluster: the set of store namespaces is the
durable truth, and the registry is re-seeded from it at startup. Each record
has its own asyncio.Lock; every status transition is made while holding it,
so lifecycle state has a single writer per store id at any time.
"""

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from models import (
    ActivityLogEntry,
    EngineType,
    StoreResponse,
    StoreStatus,
    StoreUrls,
)
from services.errors import InvalidTransitionError

logger = logging.getLogger("registry")

ALLOWED_TRANSITIONS: dict[StoreStatus, frozenset[StoreStatus]] = {
    StoreStatus.PROVISIONING: frozenset(
        {StoreStatus.READY, StoreStatus.FAILED, StoreStatus.DELETING}
    ),
    StoreStatus.READY: frozenset({StoreStatus.DELETING}),
    StoreStatus.FAILED: frozenset({StoreStatus.DELETING}),
    StoreStatus.DELETING: frozenset({StoreStatus.DELETED, StoreStatus.FAILED}),
    StoreStatus.DELETED: frozenset(),
}


NAMESPACE_PREFIX = "store-"

# Keeps "store-{id}-{suffix}" within the 63 char DNS label limit
MAX_SLUG_LENGTH = 40


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def sanitize_name(name: str) -> str:
    """Lowercase DNS-label slug of a display name; always starts with a letter."""
    slug = re.sub(r"[^a-z0-9]", "-", name.lower())
    slug = re.sub(r"-+", "-", slug).strip("-")[:MAX_SLUG_LENGTH].strip("-")
    if not slug:
        return "store"
    if not slug[0].isalpha():
        slug = f"s-{slug}"[:MAX_SLUG_LENGTH].strip("-")
    return slug


def new_store_id(name: str) -> str:
    return f"{sanitize_name(name)}-{uuid.uuid4().hex[:8]}"


def namespace_for(store_id: str) -> str:
    return f"{NAMESPACE_PREFIX}{store_id}"


def store_id_from_namespace(namespace: str) -> Optional[str]:
    if not namespace.startswith(NAMESPACE_PREFIX):
        return None
    return namespace[len(NAMESPACE_PREFIX):] or None


@dataclass
class StoreRecord:
    id: str
    name: str
    engine: Optional[EngineType]
    namespace: str
    status: StoreStatus = StoreStatus.PROVISIONING
    urls: dict = field(default_factory=dict)
    created_at: str = field(default_factory=_now)
    error: Optional[str] = None
    activity_log: list = field(default_factory=list)

    def transition(
        self,
        status: StoreStatus,
        *,
        error: Optional[str] = None,
        urls: Optional[dict] = None,
    ):
        """
        Move to a new status, keeping urls/error consistent with it:
        urls only while Ready, error only while Failed.
        """
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Store '{self.id}' cannot go from {self.status.value} to {status.value}"
            )
        if status is StoreStatus.READY and not urls:
            raise InvalidTransitionError(f"Store '{self.id}' cannot be Ready without urls")
        if status is StoreStatus.FAILED and not error:
            raise InvalidTransitionError(f"Store '{self.id}' cannot fail without an error")

        logger.info(f"Store {self.id}: {self.status.value} -> {status.value}")
        self.status = status
        self.urls = dict(urls) if status is StoreStatus.READY else {}
        self.error = error if status is StoreStatus.FAILED else None

    def to_response(self) -> StoreResponse:
        return StoreResponse(
            id=self.id,
            name=self.name,
            engine=self.engine,
            status=self.status,
            namespace=self.namespace,
            urls=StoreUrls(**self.urls),
            createdAt=self.created_at,
            error=self.error,
            activityLog=[ActivityLogEntry(**a) for a in self.activity_log],
        )


class StoreRegistry:
    """Store id -> StoreRecord, with one exclusive lock per store id."""

    def __init__(self):
        self._records: dict[str, StoreRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def put(self, record: StoreRecord):
        self._records[record.id] = record

    def get(self, store_id: str) -> Optional[StoreRecord]:
        return self._records.get(store_id)

    def list(self) -> list[StoreRecord]:
        return list(self._records.values())

    def remove(self, store_id: str) -> Optional[StoreRecord]:
        self._locks.pop(store_id, None)
        return self._records.pop(store_id, None)

    def lock(self, store_id: str) -> asyncio.Lock:
        lock = self._locks.get(store_id)
        if lock is None:
            lock = self._locks[store_id] = asyncio.Lock()
        return lock

    def __contains__(self, store_id: str) -> bool:
        return store_id in self._records

    def __len__(self) -> int:
        return len(self._records)
