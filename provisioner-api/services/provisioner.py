"""
Provisioning state machine: turns one "create store" intent into the
ordered sequence of Kubernetes operations for the store's engine.

Medusa recipe:
  1. Namespace (labelled with id, engine, name; annotated with created-at)
  2. ResourceQuota
  3. Credentials (username, random password, database name)
  4. Secret holding the credentials
  5. PostgreSQL: PVC + headless Service + StatefulSet
  6. Medusa backend Deployment
  7. Backend Service, Redis Deployment + Service
  8. Ingress {id}.{DOMAIN_SUFFIX} -> backend:9000
  9. Poll readiness until all four conditions hold in one read, or time out
 10. Ready, with storefront/admin URLs

WooCommerce runs steps 1-4 and then fails as not implemented; the
half-provisioned namespace is left for an explicit delete.

Any failure marks the record Failed with the error message and re-raises.
There is no automatic retry and no rollback.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

from kubernetes.client import ApiException

from config import settings
from models import EngineType, StoreStatus
from services import events, metrics
from services.credentials import generate_password, generate_secret_key
from services.errors import (
    EngineNotImplementedError,
    ProvisioningError,
    ProvisioningTimeoutError,
    StoreNotFoundError,
)
from services.kubernetes_service import (
    KubernetesResourceClient,
    ResourceQuota,
    ServicePort,
    StoreResourceStatus,
)
from services.registry import StoreRecord, StoreRegistry, sanitize_name

logger = logging.getLogger("provisioner")

DB_USERNAME = "storeuser"
DB_PORT = 5432
DB_MOUNT_PATH = "/var/lib/postgresql/data"
DB_PGDATA = f"{DB_MOUNT_PATH}/pgdata"
BACKEND_PORT = 9000
REDIS_PORT = 6379
REDIS_RESOURCES = {
    "requests": {"cpu": "50m", "memory": "128Mi"},
    "limits": {"cpu": "200m", "memory": "256Mi"},
}

LABEL_STORE_ID = "store-id"
LABEL_ENGINE = "store-engine"
LABEL_NAME = "store-name"
ANNOTATION_DISPLAY_NAME = "store-platform/display-name"
ANNOTATION_CREATED_AT = "store-platform/created-at"


@dataclass(frozen=True)
class DatabaseCredentials:
    username: str
    password: str
    database: str

    @classmethod
    def generate(cls, store_id: str) -> "DatabaseCredentials":
        return cls(
            username=DB_USERNAME,
            password=generate_password(),
            database=store_id.replace("-", "_"),
        )

    def as_secret_data(self) -> dict[str, str]:
        return {
            "DB_USERNAME": self.username,
            "DB_PASSWORD": self.password,
            "DB_NAME": self.database,
        }

    def connection_url(self, host: str, port: int = DB_PORT) -> str:
        user = quote(self.username, safe="")
        password = quote(self.password, safe="")
        return f"postgres://{user}:{password}@{host}:{port}/{self.database}"


class ProvisioningStateMachine:
    """Runs provisioning recipes and readiness checks against one registry."""

    def __init__(
        self,
        k8s: KubernetesResourceClient,
        registry: StoreRegistry,
        *,
        quota: Optional[ResourceQuota] = None,
        domain_suffix: str = settings.DOMAIN_SUFFIX,
        ingress_class: str = settings.INGRESS_CLASS,
        poll_interval: float = settings.POLL_INTERVAL,
        timeout: float = settings.PROVISION_TIMEOUT,
    ):
        self.k8s = k8s
        self.registry = registry
        self.quota = quota or ResourceQuota.from_settings()
        self.domain_suffix = domain_suffix
        self.ingress_class = ingress_class
        self.poll_interval = poll_interval
        self.timeout = timeout

    # -----------------------------------------------------------------
    # Naming
    # -----------------------------------------------------------------

    def host_for(self, store_id: str) -> str:
        return f"{store_id}.{self.domain_suffix}"

    def urls_for(self, store_id: str) -> dict[str, str]:
        host = self.host_for(store_id)
        return {
            "storefront": f"http://{host}",
            "admin": f"http://{host}/app",
        }

    # -----------------------------------------------------------------
    # Entry point
    # -----------------------------------------------------------------

    async def provision(self, store_id: str):
        record = self.registry.get(store_id)
        if record is None:
            raise StoreNotFoundError(store_id)

        engine = record.engine
        logger.info(f"[{store_id}] Starting provisioning ({engine.value if engine else 'unknown'})")
        await events.emit(record, "PROVISIONING_START", "Store provisioning started")

        try:
            if engine not in (EngineType.MEDUSA, EngineType.WOOCOMMERCE):
                raise ProvisioningError(f"Unknown engine: {engine}")

            credentials = await self._prepare_namespace(record)
            if engine is EngineType.MEDUSA:
                await self._provision_medusa(record, credentials)
            elif engine is EngineType.WOOCOMMERCE:
                await self._provision_woocommerce(record, credentials)

            await self.wait_for_ready(record)
            await self._mark_ready(record)
        except Exception as e:
            logger.error(f"[{store_id}] Provisioning failed: {e}")
            await self._mark_failed(record, str(e) or type(e).__name__)
            raise

    # -----------------------------------------------------------------
    # Shared steps (1-4)
    # -----------------------------------------------------------------

    async def _prepare_namespace(self, record: StoreRecord) -> DatabaseCredentials:
        ns = record.namespace

        logger.info(f"[{record.id}] Step 1: Ensuring namespace {ns}")
        await self.k8s.create_namespace(
            ns,
            labels={
                LABEL_STORE_ID: record.id,
                LABEL_ENGINE: record.engine.value,
                LABEL_NAME: sanitize_name(record.name),
            },
            annotations={
                ANNOTATION_DISPLAY_NAME: record.name,
                ANNOTATION_CREATED_AT: record.created_at,
            },
        )
        await events.emit(record, "NAMESPACE_READY", f"Namespace {ns} ready")

        logger.info(f"[{record.id}] Step 2: Applying resource quota")
        await self.k8s.create_resource_quota(ns, self.quota)

        logger.info(f"[{record.id}] Step 3: Generating credentials")
        credentials = DatabaseCredentials.generate(record.id)

        logger.info(f"[{record.id}] Step 4: Creating secrets")
        await self.k8s.create_secret(ns, f"{record.id}-secrets", credentials.as_secret_data())
        await events.emit(record, "SECRETS_READY", "Quota and credentials in place")
        return credentials

    # -----------------------------------------------------------------
    # Engine recipes
    # -----------------------------------------------------------------

    async def _provision_medusa(self, record: StoreRecord, credentials: DatabaseCredentials):
        ns = record.namespace
        sid = record.id

        logger.info(f"[{sid}] Step 5: Creating PostgreSQL")
        await self._create_postgres(record, credentials)
        await events.emit(record, "DATABASE_CREATED", "PostgreSQL resources created")

        logger.info(f"[{sid}] Step 6: Creating Medusa backend")
        backend_labels = {"app": sid, "component": "backend"}
        await self.k8s.create_deployment(
            ns,
            f"{sid}-backend",
            settings.MEDUSA_IMAGE,
            backend_labels,
            env={
                "DATABASE_URL": credentials.connection_url(f"{sid}-db"),
                "REDIS_URL": f"redis://{sid}-redis:{REDIS_PORT}",
                "JWT_SECRET": generate_secret_key(),
                "COOKIE_SECRET": generate_secret_key(),
                "PORT": str(BACKEND_PORT),
            },
            port=BACKEND_PORT,
        )

        logger.info(f"[{sid}] Step 7: Creating services and Redis")
        await self.k8s.create_service(
            ns, f"{sid}-backend", backend_labels,
            [ServicePort("http", BACKEND_PORT, BACKEND_PORT)],
        )
        await self._create_redis(record)
        await events.emit(record, "BACKEND_CREATED", "Medusa backend and Redis created")

        logger.info(f"[{sid}] Step 8: Creating ingress")
        await self.k8s.create_ingress(
            ns,
            f"{sid}-ingress",
            self.host_for(sid),
            f"{sid}-backend",
            BACKEND_PORT,
            self.ingress_class,
        )
        await events.emit(record, "INGRESS_CREATED", f"Ingress for {self.host_for(sid)} created")

    async def _provision_woocommerce(self, record: StoreRecord, credentials: DatabaseCredentials):
        logger.info(f"[{record.id}] Provisioning WooCommerce store in {record.namespace} (stub)")
        raise EngineNotImplementedError("WooCommerce provisioning not yet implemented")

    async def _create_postgres(self, record: StoreRecord, credentials: DatabaseCredentials):
        ns = record.namespace
        sid = record.id
        labels = {"app": sid, "component": "database"}

        await self.k8s.create_pvc(
            ns, f"{sid}-db-pvc", settings.DB_STORAGE_SIZE, settings.STORAGE_CLASS or None
        )
        await self.k8s.create_service(
            ns, f"{sid}-db", labels,
            [ServicePort("postgres", DB_PORT, DB_PORT)],
            headless=True,
        )
        await self.k8s.create_stateful_set(
            ns,
            f"{sid}-db",
            settings.POSTGRES_IMAGE,
            labels,
            env={
                "POSTGRES_USER": credentials.username,
                "POSTGRES_PASSWORD": credentials.password,
                "POSTGRES_DB": credentials.database,
                "PGDATA": DB_PGDATA,
            },
            volume_claim_name=f"{sid}-db-pvc",
            mount_path=DB_MOUNT_PATH,
            port=DB_PORT,
        )

    async def _create_redis(self, record: StoreRecord):
        ns = record.namespace
        sid = record.id
        labels = {"app": sid, "component": "redis"}

        await self.k8s.create_deployment(
            ns,
            f"{sid}-redis",
            settings.REDIS_IMAGE,
            labels,
            port=REDIS_PORT,
            health_path=None,
            resources=REDIS_RESOURCES,
        )
        await self.k8s.create_service(
            ns, f"{sid}-redis", labels,
            [ServicePort("redis", REDIS_PORT, REDIS_PORT)],
        )

    # -----------------------------------------------------------------
    # Readiness
    # -----------------------------------------------------------------

    async def check_ready(self, record: StoreRecord) -> StoreResourceStatus:
        """One readiness read for a store (all four conditions, single pass)."""
        status = await self.k8s.check_resource_status(record.namespace, record.id)
        logger.debug(f"[{record.id}] Resource status: {status}")
        return status

    async def wait_for_ready(self, record: StoreRecord):
        """
        Poll until all four readiness conditions hold in the same read.

        Returns early if something else (a client refresh) already moved the
        record out of Provisioning. Raises ProvisioningTimeoutError once the
        deadline passes. API errors during a poll are logged and retried.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout

        while True:
            if record.status is not StoreStatus.PROVISIONING:
                return
            try:
                status = await self.check_ready(record)
                if status.ready:
                    logger.info(f"[{record.id}] All resources ready")
                    return
            except ApiException as e:
                logger.warning(f"[{record.id}] Readiness check failed (will retry): {e.status} {e.reason}")

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ProvisioningTimeoutError(
                    f"Timeout waiting for store {record.id} to be ready after {self.timeout:g}s"
                )
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def refresh(self, record: StoreRecord) -> StoreRecord:
        """Cheap re-check for a Provisioning record; a no-op for any other status."""
        if record.status is not StoreStatus.PROVISIONING:
            return record
        try:
            status = await self.check_ready(record)
        except ApiException as e:
            logger.warning(f"[{record.id}] Readiness refresh failed: {e.status} {e.reason}")
            return record
        if status.ready:
            await self._mark_ready(record)
        return record

    # -----------------------------------------------------------------
    # Transitions
    # -----------------------------------------------------------------

    async def _mark_ready(self, record: StoreRecord):
        async with self.registry.lock(record.id):
            if record.status is not StoreStatus.PROVISIONING:
                return
            urls = self.urls_for(record.id)
            record.transition(StoreStatus.READY, urls=urls)
            await events.emit(record, "STORE_READY", f"Store ready at {urls['storefront']}")
        logger.info(f"[{record.id}] Store ready at {urls['storefront']}")

    async def _mark_failed(self, record: StoreRecord, message: str):
        async with self.registry.lock(record.id):
            if record.status is not StoreStatus.PROVISIONING:
                logger.warning(
                    f"[{record.id}] Not marking failed, status is already {record.status.value}"
                )
                return
            record.transition(StoreStatus.FAILED, error=message)
            await events.emit(record, "PROVISION_FAILED", message)
        metrics.record_failure(record.engine.value if record.engine else "unknown")
