from __future__ import annotations

import asyncio
from typing import Optional

from services.kubernetes_service import MANAGED_BY_LABEL, MANAGED_BY_VALUE, NamespaceInfo, StoreResourceStatus


def ready_status() -> StoreResourceStatus:
    return StoreResourceStatus(deployment=True, database=True, service=True, ingress=True, secrets=True)


class FakeResourceClient:
    """In-memory stand-in for KubernetesResourceClient that records every call."""

    def __init__(self, status: Optional[StoreResourceStatus] = None) -> None:
        self.calls: list[tuple[str, tuple]] = []
        self.namespaces: dict[str, dict] = {}
        self.objects: dict[tuple[str, str, str], dict] = {}
        self.status = status or StoreResourceStatus()
        self.status_sequence: list = []
        self.errors: dict[str, Exception] = {}
        self.listed: list[NamespaceInfo] = []

    async def _call(self, method: str, *args) -> None:
        self.calls.append((method, args))
        await asyncio.sleep(0)
        if method in self.errors:
            raise self.errors[method]

    def called(self, method: str) -> list[tuple]:
        return [args for name, args in self.calls if name == method]

    def _put(self, namespace: str, kind: str, name: str, body: dict) -> bool:
        key = (namespace, kind, name)
        if key in self.objects:
            return False
        self.objects[key] = body
        return True

    def kinds_in(self, namespace: str) -> list[tuple[str, str]]:
        return [(kind, name) for (ns, kind, name) in self.objects if ns == namespace]

    # --- namespaces ---

    async def create_namespace(self, name, labels=None, annotations=None) -> bool:
        await self._call("create_namespace", name, labels, annotations)
        if name in self.namespaces:
            return False
        self.namespaces[name] = {
            "labels": {MANAGED_BY_LABEL: MANAGED_BY_VALUE, **(labels or {})},
            "annotations": dict(annotations or {}),
        }
        return True

    async def delete_namespace(self, name) -> bool:
        await self._call("delete_namespace", name)
        existed = self.namespaces.pop(name, None) is not None
        for key in [k for k in self.objects if k[0] == name]:
            del self.objects[key]
        return existed

    async def namespace_exists(self, name) -> bool:
        await self._call("namespace_exists", name)
        return name in self.namespaces

    async def list_store_namespaces(self) -> list[NamespaceInfo]:
        await self._call("list_store_namespaces")
        return list(self.listed)

    # --- objects ---

    async def create_secret(self, namespace, name, data) -> bool:
        await self._call("create_secret", namespace, name, data)
        return self._put(namespace, "Secret", name, {"data": dict(data)})

    async def create_config_map(self, namespace, name, data) -> bool:
        await self._call("create_config_map", namespace, name, data)
        return self._put(namespace, "ConfigMap", name, {"data": dict(data)})

    async def create_resource_quota(self, namespace, quota) -> bool:
        await self._call("create_resource_quota", namespace, quota)
        return self._put(namespace, "ResourceQuota", "store-quota", {"hard": quota.hard()})

    async def create_pvc(self, namespace, name, size="5Gi", storage_class=None) -> bool:
        await self._call("create_pvc", namespace, name, size, storage_class)
        return self._put(namespace, "PersistentVolumeClaim", name, {"size": size})

    async def create_service(self, namespace, name, selector, ports, headless=False) -> bool:
        await self._call("create_service", namespace, name, selector, ports, headless)
        return self._put(namespace, "Service", name, {"selector": selector, "ports": ports, "headless": headless})

    async def create_ingress(self, namespace, name, host, service_name, service_port, ingress_class="nginx") -> bool:
        await self._call("create_ingress", namespace, name, host, service_name, service_port, ingress_class)
        return self._put(
            namespace,
            "Ingress",
            name,
            {"host": host, "service": service_name, "port": service_port, "class": ingress_class},
        )

    async def create_deployment(self, namespace, name, image, labels, env=None, replicas=1, port=9000,
                                health_path="/health", resources=None) -> bool:
        await self._call("create_deployment", namespace, name, image)
        return self._put(
            namespace,
            "Deployment",
            name,
            {"image": image, "labels": labels, "env": dict(env or {}), "replicas": replicas, "port": port},
        )

    async def create_stateful_set(self, namespace, name, image, labels, env, volume_claim_name, mount_path,
                                  port=5432) -> bool:
        await self._call("create_stateful_set", namespace, name, image)
        return self._put(
            namespace,
            "StatefulSet",
            name,
            {"image": image, "env": dict(env), "claim": volume_claim_name, "mount": mount_path},
        )

    # --- readiness ---

    async def check_resource_status(self, namespace, store_id) -> StoreResourceStatus:
        await self._call("check_resource_status", namespace, store_id)
        if self.status_sequence:
            nxt = self.status_sequence.pop(0)
            if isinstance(nxt, Exception):
                raise nxt
            return nxt
        return self.status
