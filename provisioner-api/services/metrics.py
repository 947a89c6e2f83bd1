"""Prometheus metrics for the store platform."""

from prometheus_client import Counter, Gauge

from models import StoreStatus

STORES_CREATED = Counter(
    "store_platform_stores_created_total",
    "Total stores created",
    ["engine"],
)
STORES_DELETED = Counter(
    "store_platform_stores_deleted_total",
    "Total stores deleted",
)
PROVISION_FAILURES = Counter(
    "store_platform_provisioning_failures_total",
    "Total provisioning failures",
    ["engine"],
)
STORES_TOTAL = Gauge(
    "store_platform_stores_total",
    "Current total stores",
    ["status"],
)


def record_create(engine: str):
    STORES_CREATED.labels(engine=engine).inc()


def record_delete():
    STORES_DELETED.inc()


def record_failure(engine: str):
    PROVISION_FAILURES.labels(engine=engine).inc()


def update_gauges(counts: dict[str, int]):
    for status in StoreStatus:
        STORES_TOTAL.labels(status=status.value).set(counts.get(status.value, 0))
