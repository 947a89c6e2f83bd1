from urllib.parse import unquote, urlparse

import pytest
from kubernetes.client import ApiException

from fakes import ready_status
from models import EngineType, StoreStatus
from services.errors import EngineNotImplementedError, ProvisioningTimeoutError, StoreNotFoundError
from services.kubernetes_service import ResourceQuota, StoreResourceStatus
from services.provisioner import DatabaseCredentials
from services.registry import StoreRecord, namespace_for


def _register(registry, engine=EngineType.MEDUSA, store_id="acme-1234abcd", name="Acme Shop"):
    record = StoreRecord(id=store_id, name=name, engine=engine, namespace=namespace_for(store_id))
    registry.put(record)
    return record


@pytest.mark.asyncio
async def test_medusa_provisioning_creates_full_stack_and_becomes_ready(machine, registry, fake_k8s):
    fake_k8s.status = ready_status()
    record = _register(registry)

    await machine.provision(record.id)

    assert record.status is StoreStatus.READY
    assert record.error is None
    assert record.urls == {
        "storefront": "http://acme-1234abcd.local.test",
        "admin": "http://acme-1234abcd.local.test/app",
    }
    assert sorted(fake_k8s.kinds_in("store-acme-1234abcd")) == [
        ("Deployment", "acme-1234abcd-backend"),
        ("Deployment", "acme-1234abcd-redis"),
        ("Ingress", "acme-1234abcd-ingress"),
        ("PersistentVolumeClaim", "acme-1234abcd-db-pvc"),
        ("ResourceQuota", "store-quota"),
        ("Secret", "acme-1234abcd-secrets"),
        ("Service", "acme-1234abcd-backend"),
        ("Service", "acme-1234abcd-db"),
        ("Service", "acme-1234abcd-redis"),
        ("StatefulSet", "acme-1234abcd-db"),
    ]


@pytest.mark.asyncio
async def test_steps_run_in_order(machine, registry, fake_k8s):
    fake_k8s.status = ready_status()
    record = _register(registry)

    await machine.provision(record.id)

    order = [name for name, _ in fake_k8s.calls]
    assert order[:3] == ["create_namespace", "create_resource_quota", "create_secret"]
    assert order.index("create_stateful_set") < order.index("create_deployment")
    assert order.index("create_ingress") < order.index("check_resource_status")


@pytest.mark.asyncio
async def test_namespace_labels_and_annotations(machine, registry, fake_k8s):
    fake_k8s.status = ready_status()
    record = _register(registry)

    await machine.provision(record.id)

    ns = fake_k8s.namespaces["store-acme-1234abcd"]
    assert ns["labels"]["store-id"] == "acme-1234abcd"
    assert ns["labels"]["store-engine"] == "medusa"
    assert ns["labels"]["store-name"] == "acme-shop"
    assert ns["annotations"]["store-platform/display-name"] == "Acme Shop"
    assert ns["annotations"]["store-platform/created-at"] == record.created_at


@pytest.mark.asyncio
async def test_quota_from_machine_configuration_is_applied(fake_k8s, registry):
    from services.provisioner import ProvisioningStateMachine

    quota = ResourceQuota(
        cpu_request="1", cpu_limit="2", memory_request="1Gi", memory_limit="2Gi", storage="3Gi", pvc_count="2"
    )
    machine = ProvisioningStateMachine(fake_k8s, registry, quota=quota, poll_interval=0.01, timeout=0.1)
    fake_k8s.status = ready_status()
    record = _register(registry)

    await machine.provision(record.id)

    assert fake_k8s.objects[("store-acme-1234abcd", "ResourceQuota", "store-quota")]["hard"] == quota.hard()


@pytest.mark.asyncio
async def test_credentials_are_wired_into_database_and_backend(machine, registry, fake_k8s):
    fake_k8s.status = ready_status()
    record = _register(registry)

    await machine.provision(record.id)

    ns = "store-acme-1234abcd"
    secret = fake_k8s.objects[(ns, "Secret", "acme-1234abcd-secrets")]["data"]
    assert secret["DB_USERNAME"] == "storeuser"
    assert secret["DB_NAME"] == "acme_1234abcd"
    assert len(secret["DB_PASSWORD"]) == 16

    db = fake_k8s.objects[(ns, "StatefulSet", "acme-1234abcd-db")]
    assert db["env"]["POSTGRES_PASSWORD"] == secret["DB_PASSWORD"]
    assert db["env"]["PGDATA"] == "/var/lib/postgresql/data/pgdata"
    assert db["claim"] == "acme-1234abcd-db-pvc"

    backend = fake_k8s.objects[(ns, "Deployment", "acme-1234abcd-backend")]["env"]
    url = urlparse(backend["DATABASE_URL"])
    assert url.hostname == "acme-1234abcd-db"
    assert url.port == 5432
    assert unquote(url.password) == secret["DB_PASSWORD"]
    assert url.path == "/acme_1234abcd"
    assert backend["REDIS_URL"] == "redis://acme-1234abcd-redis:6379"
    assert backend["PORT"] == "9000"
    assert len(backend["JWT_SECRET"]) == 32
    assert backend["JWT_SECRET"] != backend["COOKIE_SECRET"]

    ingress = fake_k8s.objects[(ns, "Ingress", "acme-1234abcd-ingress")]
    assert ingress == {"host": "acme-1234abcd.local.test", "service": "acme-1234abcd-backend", "port": 9000,
                       "class": "nginx"}


def test_connection_url_escapes_password():
    creds = DatabaseCredentials(username="storeuser", password="a@b#c/d", database="db")
    url = urlparse(creds.connection_url("host"))
    assert url.hostname == "host"
    assert unquote(url.password) == "a@b#c/d"


@pytest.mark.asyncio
async def test_woocommerce_fails_after_namespace_and_secret(machine, registry, fake_k8s):
    record = _register(registry, engine=EngineType.WOOCOMMERCE, store_id="woo-1234abcd")

    with pytest.raises(EngineNotImplementedError):
        await machine.provision(record.id)

    assert record.status is StoreStatus.FAILED
    assert "not yet implemented" in record.error
    assert record.urls == {}
    assert "store-woo-1234abcd" in fake_k8s.namespaces
    assert sorted(fake_k8s.kinds_in("store-woo-1234abcd")) == [
        ("ResourceQuota", "store-quota"),
        ("Secret", "woo-1234abcd-secrets"),
    ]
    assert fake_k8s.called("check_resource_status") == []


@pytest.mark.asyncio
async def test_three_of_four_conditions_times_out(machine, registry, fake_k8s):
    fake_k8s.status = StoreResourceStatus(deployment=True, database=True, service=True, ingress=False)
    record = _register(registry)

    with pytest.raises(ProvisioningTimeoutError):
        await machine.provision(record.id)

    assert record.status is StoreStatus.FAILED
    assert "Timeout" in record.error
    assert record.urls == {}
    assert len(fake_k8s.called("check_resource_status")) > 1
    # No rollback: the resources stay for an explicit delete
    assert "store-acme-1234abcd" in fake_k8s.namespaces


@pytest.mark.asyncio
async def test_conditions_must_hold_in_the_same_read(machine, registry, fake_k8s):
    fake_k8s.status_sequence = [
        StoreResourceStatus(deployment=True, database=False, service=True, ingress=True),
        StoreResourceStatus(deployment=False, database=True, service=True, ingress=True),
        ready_status(),
    ]
    record = _register(registry)

    await machine.provision(record.id)

    assert record.status is StoreStatus.READY
    assert len(fake_k8s.called("check_resource_status")) == 3


@pytest.mark.asyncio
async def test_transient_api_errors_during_polling_are_retried(machine, registry, fake_k8s):
    fake_k8s.status_sequence = [ApiException(status=503, reason="Unavailable"), ready_status()]
    record = _register(registry)

    await machine.provision(record.id)

    assert record.status is StoreStatus.READY


@pytest.mark.asyncio
async def test_resource_errors_abort_and_fail(machine, registry, fake_k8s):
    fake_k8s.errors["create_stateful_set"] = ApiException(status=403, reason="Forbidden")
    record = _register(registry)

    with pytest.raises(ApiException):
        await machine.provision(record.id)

    assert record.status is StoreStatus.FAILED
    assert "Forbidden" in record.error
    assert fake_k8s.called("create_ingress") == []
    assert [a["event"] for a in record.activity_log][-1] == "PROVISION_FAILED"


@pytest.mark.asyncio
async def test_provision_unknown_store(machine):
    with pytest.raises(StoreNotFoundError):
        await machine.provision("missing-00000000")


@pytest.mark.asyncio
async def test_refresh_flips_provisioning_store_when_ready(machine, registry, fake_k8s):
    record = _register(registry)
    fake_k8s.status = StoreResourceStatus(deployment=True, database=True, service=True, ingress=False)

    assert (await machine.refresh(record)).status is StoreStatus.PROVISIONING
    assert len(fake_k8s.called("check_resource_status")) == 1

    fake_k8s.status = ready_status()
    refreshed = await machine.refresh(record)

    assert refreshed is record
    assert record.status is StoreStatus.READY
    assert record.urls["storefront"] == "http://acme-1234abcd.local.test"


@pytest.mark.asyncio
async def test_refresh_is_noop_for_non_provisioning_records(machine, registry, fake_k8s):
    record = _register(registry)
    record.transition(StoreStatus.READY, urls=machine.urls_for(record.id))

    assert await machine.refresh(record) is record
    assert record.status is StoreStatus.READY
    assert fake_k8s.called("check_resource_status") == []


@pytest.mark.asyncio
async def test_polling_stops_once_refresh_made_record_ready(machine, registry, fake_k8s):
    record = _register(registry)
    record.transition(StoreStatus.READY, urls=machine.urls_for(record.id))

    await machine.wait_for_ready(record)

    assert fake_k8s.called("check_resource_status") == []


@pytest.mark.asyncio
async def test_refresh_keeps_record_when_readiness_read_fails(machine, registry, fake_k8s):
    record = _register(registry)
    fake_k8s.errors["check_resource_status"] = ApiException(status=503, reason="Unavailable")

    assert await machine.refresh(record) is record
    assert record.status is StoreStatus.PROVISIONING
    assert record.error is None
