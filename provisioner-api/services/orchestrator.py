"""
Store orchestration service: the façade the API layer talks to.

  - create: registers a Provisioning record and starts provisioning as a
    background task; returns immediately
  - get / list: read the in-memory registry
  - refresh: cheap readiness re-check for a Provisioning record
  - delete: cascading namespace delete, then the record is dropped
  - startup: re-seeds the registry from the cluster's store namespaces
  - shutdown: cancels outstanding provisioning tasks

Background tasks are kept keyed by store id so they can be cancelled on
delete or shutdown; their failures surface in logs and on the record.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from config import settings
from models import EngineType, StoreStatus
from services import events, metrics
from services.errors import (
    EngineNotImplementedError,
    StoreDeletionError,
    StoreLimitExceededError,
    StoreNotFoundError,
)
from services.kubernetes_service import KubernetesResourceClient, NamespaceInfo
from services.provisioner import (
    ANNOTATION_CREATED_AT,
    ANNOTATION_DISPLAY_NAME,
    LABEL_ENGINE,
    LABEL_NAME,
    ProvisioningStateMachine,
)
from services.registry import (
    StoreRecord,
    StoreRegistry,
    namespace_for,
    new_store_id,
    store_id_from_namespace,
)

logger = logging.getLogger("orchestrator")


class StoreOrchestrationService:
    def __init__(
        self,
        k8s: KubernetesResourceClient,
        registry: Optional[StoreRegistry] = None,
        machine: Optional[ProvisioningStateMachine] = None,
        max_stores: int = settings.MAX_STORES,
    ):
        self.k8s = k8s
        self.registry = registry if registry is not None else StoreRegistry()
        self.machine = machine or ProvisioningStateMachine(k8s, self.registry)
        self.max_stores = max_stores
        self._tasks: dict[str, asyncio.Task] = {}

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    async def startup(self):
        """Re-seed the registry from store namespaces already in the cluster."""
        try:
            namespaces = await self.k8s.list_store_namespaces()
        except Exception as e:
            logger.error(f"Error loading existing stores: {e}")
            return
        logger.info(f"Found {len(namespaces)} existing store namespaces")
        for ns in namespaces:
            record = self._reconstruct(ns)
            if record is not None and record.id not in self.registry:
                self.registry.put(record)

    async def shutdown(self):
        """Cancel provisioning tasks that are still running."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} provisioning task(s)")
        self._tasks.clear()

    def _reconstruct(self, ns: NamespaceInfo) -> Optional[StoreRecord]:
        store_id = store_id_from_namespace(ns.name)
        if store_id is None:
            logger.debug(f"Skipping namespace {ns.name}: not a store namespace")
            return None

        engine_label = ns.labels.get(LABEL_ENGINE)
        try:
            engine = EngineType(engine_label) if engine_label else None
        except ValueError:
            engine = None
        if engine is None:
            logger.warning(
                f"Store {store_id}: namespace {ns.name} has no usable engine label "
                f"({engine_label!r}); engine left unknown"
            )

        created_at = ns.annotations.get(ANNOTATION_CREATED_AT)
        if not created_at and ns.created_at is not None:
            created_at = ns.created_at.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

        record = StoreRecord(
            id=store_id,
            name=ns.annotations.get(ANNOTATION_DISPLAY_NAME) or ns.labels.get(LABEL_NAME) or store_id,
            engine=engine,
            namespace=ns.name,
            created_at=created_at or datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        )
        if engine is EngineType.WOOCOMMERCE:
            record.transition(
                StoreStatus.FAILED,
                error=str(EngineNotImplementedError("WooCommerce provisioning not yet implemented")),
            )
        else:
            record.transition(StoreStatus.READY, urls=self.machine.urls_for(store_id))
        events.add_activity(record.activity_log, "RECONCILED", f"Recovered from namespace {ns.name}")
        logger.info(f"Store {store_id} recovered as {record.status.value}")
        return record

    # -----------------------------------------------------------------
    # Operations
    # -----------------------------------------------------------------

    def create_store(self, name: str, engine: EngineType) -> StoreRecord:
        """
        Register a new store and start provisioning it in the background.
        Must be called from inside a running event loop.
        """
        if len(self.registry) >= self.max_stores:
            raise StoreLimitExceededError(self.max_stores)

        store_id = new_store_id(name)
        while store_id in self.registry:
            store_id = new_store_id(name)

        record = StoreRecord(
            id=store_id,
            name=name,
            engine=engine,
            namespace=namespace_for(store_id),
        )
        self.registry.put(record)
        metrics.record_create(engine.value)
        logger.info(f"Store {store_id} registered (engine={engine.value}, name={name!r})")

        task = asyncio.create_task(self.machine.provision(store_id), name=f"provision-{store_id}")
        self._tasks[store_id] = task
        task.add_done_callback(lambda t, sid=store_id: self._on_provision_done(sid, t))
        return record

    def _on_provision_done(self, store_id: str, task: asyncio.Task):
        if self._tasks.get(store_id) is task:
            del self._tasks[store_id]
        if task.cancelled():
            logger.info(f"Provisioning of store {store_id} was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Error provisioning store {store_id}: {exc}")

    def get_store(self, store_id: str) -> StoreRecord:
        record = self.registry.get(store_id)
        if record is None:
            raise StoreNotFoundError(store_id)
        return record

    def list_stores(self) -> list[StoreRecord]:
        return self.registry.list()

    def provisioning_task(self, store_id: str) -> Optional[asyncio.Task]:
        return self._tasks.get(store_id)

    async def refresh_store(self, store_id: str) -> StoreRecord:
        record = self.get_store(store_id)
        return await self.machine.refresh(record)

    async def delete_store(self, store_id: str):
        record = self.get_store(store_id)

        task = self._tasks.pop(store_id, None)
        if task is not None and not task.done():
            logger.info(f"Cancelling in-flight provisioning of store {store_id}")
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        lock = self.registry.lock(store_id)
        async with lock:
            if self.registry.get(store_id) is not record:
                raise StoreNotFoundError(store_id)
            record.transition(StoreStatus.DELETING)
            await events.emit(record, "DELETE_START", f"Deleting namespace {record.namespace}")
            logger.info(f"Deleting store {store_id} (namespace: {record.namespace})")

            try:
                await self.k8s.delete_namespace(record.namespace)
            except Exception as e:
                message = f"Deletion failed: {e}"
                logger.error(f"Error deleting store {store_id}: {e}")
                record.transition(StoreStatus.FAILED, error=message)
                await events.emit(record, "DELETE_FAILED", message)
                raise StoreDeletionError(message) from e

            record.transition(StoreStatus.DELETED)
            self.registry.remove(store_id)

        await events.drop_stream(store_id)
        metrics.record_delete()
        logger.info(f"Store {store_id} deleted successfully")

    def count_by_status(self) -> dict[str, int]:
        counts = {"total": len(self.registry)}
        for record in self.registry.list():
            counts[record.status.value] = counts.get(record.status.value, 0) + 1
        return counts
