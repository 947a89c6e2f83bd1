import pytest
from starlette.testclient import TestClient

from fakes import FakeResourceClient
from main import app
from routers.stores import limiter
from services.orchestrator import StoreOrchestrationService
from services.provisioner import ProvisioningStateMachine
from services.registry import StoreRegistry


@pytest.fixture
def fake_k8s():
    return FakeResourceClient()


@pytest.fixture
def registry():
    return StoreRegistry()


@pytest.fixture
def machine(fake_k8s, registry):
    return ProvisioningStateMachine(
        fake_k8s,
        registry,
        domain_suffix="local.test",
        ingress_class="nginx",
        poll_interval=0.01,
        timeout=0.2,
    )


@pytest.fixture
def orchestrator(fake_k8s, registry, machine):
    return StoreOrchestrationService(fake_k8s, registry=registry, machine=machine, max_stores=10)


@pytest.fixture
def client(orchestrator):
    app.state.orchestrator = orchestrator
    limiter.enabled = False
    with TestClient(app) as client:
        yield client
    limiter.enabled = True
    del app.state.orchestrator
