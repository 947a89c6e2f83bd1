"""
Kubernetes service layer: abstracts all K8s API interactions for store stacks.

Design principles:
  - Idempotent: every create treats 409 Conflict (already exists) as success
  - Deleting a namespace that is already gone is a success
  - Every other ApiException propagates to the caller unchanged
  - Async surface: the official client is blocking, so each call runs in a
    worker thread and is a suspension point for the event loop
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from kubernetes import client, config
from kubernetes.client import ApiException

from config import settings

logger = logging.getLogger("kubernetes_service")

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "store-platform"

_k8s_loaded = False


def _ensure_k8s():
    """Load Kubernetes config exactly once."""
    global _k8s_loaded
    if _k8s_loaded:
        return
    if settings.IN_CLUSTER:
        config.load_incluster_config()
    else:
        config.load_kube_config(config_file=settings.KUBECONFIG or None)
    _k8s_loaded = True


@dataclass(frozen=True)
class ResourceQuota:
    """Hard ceilings applied to a store namespace."""
    cpu_request: str
    cpu_limit: str
    memory_request: str
    memory_limit: str
    storage: str
    pvc_count: str = "5"

    @classmethod
    def from_settings(cls) -> "ResourceQuota":
        return cls(
            cpu_request=settings.QUOTA_CPU_REQUEST,
            cpu_limit=settings.QUOTA_CPU_LIMIT,
            memory_request=settings.QUOTA_MEMORY_REQUEST,
            memory_limit=settings.QUOTA_MEMORY_LIMIT,
            storage=settings.QUOTA_STORAGE,
            pvc_count=settings.QUOTA_PVC_COUNT,
        )

    def hard(self) -> dict[str, str]:
        return {
            "requests.cpu": self.cpu_request,
            "limits.cpu": self.cpu_limit,
            "requests.memory": self.memory_request,
            "limits.memory": self.memory_limit,
            "requests.storage": self.storage,
            "persistentvolumeclaims": self.pvc_count,
        }


@dataclass(frozen=True)
class ServicePort:
    name: str
    port: int
    target_port: int


@dataclass
class StoreResourceStatus:
    deployment: bool = False
    database: bool = False
    service: bool = False
    ingress: bool = False
    secrets: bool = False

    @property
    def ready(self) -> bool:
        return self.deployment and self.database and self.service and self.ingress


@dataclass(frozen=True)
class NamespaceInfo:
    name: str
    labels: dict = field(default_factory=dict)
    annotations: dict = field(default_factory=dict)
    created_at: Optional[datetime] = None


DEFAULT_CONTAINER_RESOURCES = {
    "requests": {"cpu": "100m", "memory": "256Mi"},
    "limits": {"cpu": "500m", "memory": "1Gi"},
}


def _container_resources(requests: dict, limits: dict) -> client.V1ResourceRequirements:
    return client.V1ResourceRequirements(requests=requests, limits=limits)


class KubernetesResourceClient:
    """
    Resource-manager client for store namespaces and the workloads in them.

    The API objects can be injected (tests); otherwise they are built lazily
    from kubeconfig / in-cluster config on first use.
    """

    def __init__(
        self,
        core: Optional[client.CoreV1Api] = None,
        apps: Optional[client.AppsV1Api] = None,
        networking: Optional[client.NetworkingV1Api] = None,
    ):
        self._core = core
        self._apps = apps
        self._networking = networking

    # -----------------------------------------------------------------
    # API accessors
    # -----------------------------------------------------------------

    @property
    def core(self) -> client.CoreV1Api:
        if self._core is None:
            _ensure_k8s()
            self._core = client.CoreV1Api()
        return self._core

    @property
    def apps(self) -> client.AppsV1Api:
        if self._apps is None:
            _ensure_k8s()
            self._apps = client.AppsV1Api()
        return self._apps

    @property
    def networking(self) -> client.NetworkingV1Api:
        if self._networking is None:
            _ensure_k8s()
            self._networking = client.NetworkingV1Api()
        return self._networking

    async def _create(self, kind: str, name: str, namespace: Optional[str], fn: Callable) -> bool:
        """Run a create call. Returns True if created, False if it already existed."""
        where = f" in {namespace}" if namespace else ""
        try:
            await asyncio.to_thread(fn)
        except ApiException as e:
            if e.status == 409:
                logger.info(f"{kind} {name}{where} already exists")
                return False
            raise
        logger.info(f"{kind} {name} created{where}")
        return True

    async def _exists(self, fn: Callable) -> bool:
        try:
            await asyncio.to_thread(fn)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise

    # -----------------------------------------------------------------
    # Namespaces
    # -----------------------------------------------------------------

    async def create_namespace(
        self, name: str, labels: Optional[dict] = None, annotations: Optional[dict] = None
    ) -> bool:
        body = client.V1Namespace(
            metadata=client.V1ObjectMeta(
                name=name,
                labels={MANAGED_BY_LABEL: MANAGED_BY_VALUE, **(labels or {})},
                annotations=annotations or None,
            )
        )
        return await self._create("Namespace", name, None, lambda: self.core.create_namespace(body))

    async def delete_namespace(self, name: str) -> bool:
        """Delete namespace, ignore 404. Returns False if it was already gone."""
        try:
            await asyncio.to_thread(self.core.delete_namespace, name=name)
        except ApiException as e:
            if e.status == 404:
                logger.info(f"Namespace {name} already gone")
                return False
            raise
        logger.info(f"Namespace {name} deletion initiated")
        return True

    async def namespace_exists(self, name: str) -> bool:
        return await self._exists(lambda: self.core.read_namespace(name=name))

    async def list_store_namespaces(self) -> list[NamespaceInfo]:
        """List every namespace managed by the platform."""
        result = await asyncio.to_thread(
            self.core.list_namespace,
            label_selector=f"{MANAGED_BY_LABEL}={MANAGED_BY_VALUE}",
        )
        namespaces = []
        for ns in result.items:
            meta = ns.metadata
            if not meta or not meta.name:
                continue
            namespaces.append(
                NamespaceInfo(
                    name=meta.name,
                    labels=dict(meta.labels or {}),
                    annotations=dict(meta.annotations or {}),
                    created_at=meta.creation_timestamp,
                )
            )
        return namespaces

    # -----------------------------------------------------------------
    # Config objects
    # -----------------------------------------------------------------

    async def create_secret(self, namespace: str, name: str, data: dict[str, str]) -> bool:
        body = client.V1Secret(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace),
            type="Opaque",
            string_data=data,
        )
        return await self._create(
            "Secret", name, namespace,
            lambda: self.core.create_namespaced_secret(namespace, body),
        )

    async def create_config_map(self, namespace: str, name: str, data: dict[str, str]) -> bool:
        body = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace),
            data=data,
        )
        return await self._create(
            "ConfigMap", name, namespace,
            lambda: self.core.create_namespaced_config_map(namespace, body),
        )

    async def create_resource_quota(self, namespace: str, quota: ResourceQuota) -> bool:
        body = client.V1ResourceQuota(
            metadata=client.V1ObjectMeta(name="store-quota", namespace=namespace),
            spec=client.V1ResourceQuotaSpec(hard=quota.hard()),
        )
        return await self._create(
            "ResourceQuota", "store-quota", namespace,
            lambda: self.core.create_namespaced_resource_quota(namespace, body),
        )

    # -----------------------------------------------------------------
    # Storage + networking
    # -----------------------------------------------------------------

    async def create_pvc(
        self, namespace: str, name: str, size: str = "5Gi", storage_class: Optional[str] = None
    ) -> bool:
        body = client.V1PersistentVolumeClaim(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace),
            spec=client.V1PersistentVolumeClaimSpec(
                access_modes=["ReadWriteOnce"],
                resources=client.V1VolumeResourceRequirements(requests={"storage": size}),
                storage_class_name=storage_class or None,
            ),
        )
        return await self._create(
            "PersistentVolumeClaim", name, namespace,
            lambda: self.core.create_namespaced_persistent_volume_claim(namespace, body),
        )

    async def create_service(
        self,
        namespace: str,
        name: str,
        selector: dict[str, str],
        ports: list[ServicePort],
        headless: bool = False,
    ) -> bool:
        body = client.V1Service(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace),
            spec=client.V1ServiceSpec(
                selector=selector,
                ports=[
                    client.V1ServicePort(
                        name=p.name, port=p.port, target_port=p.target_port, protocol="TCP"
                    )
                    for p in ports
                ],
                type="ClusterIP",
                cluster_ip="None" if headless else None,
            ),
        )
        return await self._create(
            "Service", name, namespace,
            lambda: self.core.create_namespaced_service(namespace, body),
        )

    async def create_ingress(
        self,
        namespace: str,
        name: str,
        host: str,
        service_name: str,
        service_port: int,
        ingress_class: str = "nginx",
    ) -> bool:
        backend = client.V1IngressBackend(
            service=client.V1IngressServiceBackend(
                name=service_name,
                port=client.V1ServiceBackendPort(number=service_port),
            )
        )
        body = client.V1Ingress(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace),
            spec=client.V1IngressSpec(
                ingress_class_name=ingress_class,
                rules=[
                    client.V1IngressRule(
                        host=host,
                        http=client.V1HTTPIngressRuleValue(
                            paths=[
                                client.V1HTTPIngressPath(
                                    path="/", path_type="Prefix", backend=backend
                                )
                            ]
                        ),
                    )
                ],
            ),
        )
        return await self._create(
            "Ingress", name, namespace,
            lambda: self.networking.create_namespaced_ingress(namespace, body),
        )

    # -----------------------------------------------------------------
    # Workloads
    # -----------------------------------------------------------------

    async def create_deployment(
        self,
        namespace: str,
        name: str,
        image: str,
        labels: dict[str, str],
        env: Optional[dict[str, str]] = None,
        replicas: int = 1,
        port: int = 9000,
        health_path: Optional[str] = "/health",
        resources: Optional[dict] = None,
    ) -> bool:
        probes = {}
        if health_path:
            probes = {
                "liveness_probe": client.V1Probe(
                    http_get=client.V1HTTPGetAction(path=health_path, port=port),
                    initial_delay_seconds=30,
                    period_seconds=10,
                ),
                "readiness_probe": client.V1Probe(
                    http_get=client.V1HTTPGetAction(path=health_path, port=port),
                    initial_delay_seconds=10,
                    period_seconds=5,
                ),
            }
        container = client.V1Container(
            name=name,
            image=image,
            env=[client.V1EnvVar(name=k, value=v) for k, v in (env or {}).items()],
            ports=[client.V1ContainerPort(container_port=port)],
            resources=_container_resources(**(resources or DEFAULT_CONTAINER_RESOURCES)),
            security_context=client.V1SecurityContext(allow_privilege_escalation=False),
            **probes,
        )
        body = client.V1Deployment(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=labels),
            spec=client.V1DeploymentSpec(
                replicas=replicas,
                selector=client.V1LabelSelector(match_labels=labels),
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(labels=labels),
                    spec=client.V1PodSpec(containers=[container]),
                ),
            ),
        )
        return await self._create(
            "Deployment", name, namespace,
            lambda: self.apps.create_namespaced_deployment(namespace, body),
        )

    async def create_stateful_set(
        self,
        namespace: str,
        name: str,
        image: str,
        labels: dict[str, str],
        env: dict[str, str],
        volume_claim_name: str,
        mount_path: str,
        port: int = 5432,
    ) -> bool:
        container = client.V1Container(
            name=name,
            image=image,
            env=[client.V1EnvVar(name=k, value=v) for k, v in env.items()],
            ports=[client.V1ContainerPort(container_port=port)],
            volume_mounts=[client.V1VolumeMount(name="data", mount_path=mount_path)],
            resources=_container_resources(
                {"cpu": "100m", "memory": "256Mi"}, {"cpu": "500m", "memory": "512Mi"}
            ),
            security_context=client.V1SecurityContext(allow_privilege_escalation=False),
        )
        body = client.V1StatefulSet(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=labels),
            spec=client.V1StatefulSetSpec(
                service_name=name,
                replicas=1,
                selector=client.V1LabelSelector(match_labels=labels),
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(labels=labels),
                    spec=client.V1PodSpec(
                        containers=[container],
                        security_context=client.V1PodSecurityContext(fs_group=999),
                        volumes=[
                            client.V1Volume(
                                name="data",
                                persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
                                    claim_name=volume_claim_name
                                ),
                            )
                        ],
                    ),
                ),
            ),
        )
        return await self._create(
            "StatefulSet", name, namespace,
            lambda: self.apps.create_namespaced_stateful_set(namespace, body),
        )

    # -----------------------------------------------------------------
    # Readiness
    # -----------------------------------------------------------------

    async def check_resource_status(self, namespace: str, store_id: str) -> StoreResourceStatus:
        """
        Read the readiness of one store stack in a single pass.

        Missing objects (404) count as not ready; any other API error
        propagates so the caller can decide whether to retry.
        """
        status = StoreResourceStatus()

        deployment = await self._read_or_none(
            lambda: self.apps.read_namespaced_deployment(f"{store_id}-backend", namespace)
        )
        if deployment is not None and deployment.status is not None:
            status.deployment = (deployment.status.available_replicas or 0) > 0

        database = await self._read_or_none(
            lambda: self.apps.read_namespaced_stateful_set(f"{store_id}-db", namespace)
        )
        if database is not None and database.status is not None:
            status.database = (database.status.ready_replicas or 0) > 0

        status.service = await self._exists(
            lambda: self.core.read_namespaced_service(f"{store_id}-backend", namespace)
        )
        status.ingress = await self._exists(
            lambda: self.networking.read_namespaced_ingress(f"{store_id}-ingress", namespace)
        )
        status.secrets = await self._exists(
            lambda: self.core.read_namespaced_secret(f"{store_id}-secrets", namespace)
        )
        return status

    async def _read_or_none(self, fn: Callable):
        try:
            return await asyncio.to_thread(fn)
        except ApiException as e:
            if e.status == 404:
                return None
            raise
