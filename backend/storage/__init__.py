# storage/__init__.py
# ============================================================================
# MOTOWORLD PAYMENTS — STORAGE MODULE
# ============================================================================
# Orders, inventory, dead letters and the audit trail, each with an
# in-memory and a PostgreSQL implementation
# ============================================================================

from storage.audit_log import IAuditLog, InMemoryAuditLog, PostgresAuditLog
from storage.dead_letters import IDeadLetterLedger, InMemoryDeadLetterLedger, PostgresDeadLetterLedger
from storage.inventory import (
    IInventoryRepository,
    InMemoryInventoryRepository,
    InventoryAdjuster,
    PostgresInventoryRepository,
    ProductStock,
    StockRequest,
)
from storage.order_store import InMemoryOrderStore, IOrderStore, PostgresOrderStore

__all__ = [
    # Orders
    "IOrderStore",
    "InMemoryOrderStore",
    "PostgresOrderStore",
    # Inventory
    "IInventoryRepository",
    "InMemoryInventoryRepository",
    "InventoryAdjuster",
    "PostgresInventoryRepository",
    "ProductStock",
    "StockRequest",
    # Dead letters
    "IDeadLetterLedger",
    "InMemoryDeadLetterLedger",
    "PostgresDeadLetterLedger",
    # Audit
    "IAuditLog",
    "InMemoryAuditLog",
    "PostgresAuditLog",
]
