"""Pytest fixtures for payment reconciliation tests."""

import pytest

from payments.reconciliation import ReconciliationEngine
from services.identity import AdminPolicy
from services.notifications import InMemoryNotificationSink
from storage.audit_log import InMemoryAuditLog
from storage.dead_letters import InMemoryDeadLetterLedger
from storage.inventory import InMemoryInventoryRepository, InventoryAdjuster, ProductStock
from tests.fakes import ADMIN, FakePaymentGateway, FlakyOrderStore, make_order, run


@pytest.fixture
def products():
    return [
        ProductStock(product_id="p1", name="Helmet", inventory=5),
        ProductStock(product_id="p2", name="Gloves", inventory=None),
    ]


@pytest.fixture
def inventory_repo(products):
    return InMemoryInventoryRepository(products)


@pytest.fixture
def orders():
    return FlakyOrderStore()


@pytest.fixture
def gateway():
    return FakePaymentGateway()


@pytest.fixture
def sink():
    return InMemoryNotificationSink()


@pytest.fixture
def ledger():
    return InMemoryDeadLetterLedger()


@pytest.fixture
def audit_log():
    return InMemoryAuditLog()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def engine(orders, inventory_repo, gateway, sink, ledger, audit_log, sleeps):
    async def record_sleep(delay):
        sleeps.append(delay)

    return ReconciliationEngine(
        orders=orders,
        inventory=InventoryAdjuster(inventory_repo),
        gateway=gateway,
        dead_letters=ledger,
        notifications=sink,
        audit_log=audit_log,
        admin_policy=AdminPolicy([ADMIN.uid]),
        max_attempts=3,
        base_delay=1.0,
        processor_attempts=2,
        sleep=record_sleep,
    )


@pytest.fixture
def order(orders):
    order = make_order()
    run(orders.create(order))
    return order
