# schemas/__init__.py
# ============================================================================
# MOTOWORLD PAYMENTS — SCHEMAS
# ============================================================================
# Typed records shared by storage, payments and the HTTP layer
# ============================================================================

from schemas.orders import (
    Customer,
    FulfillmentEdit,
    Order,
    OrderItem,
    OrderStatus,
    PaymentCompleted,
    PaymentDetails,
    PaymentFailed,
    PaymentProcessing,
    PaymentStatus,
    PaymentTransition,
    ShippingDetails,
)
from schemas.payments import (
    AuditEventType,
    AuditLogEntry,
    CheckoutSessionSnapshot,
    CreatedIntent,
    DeadLetterRecord,
    DeadLetterStats,
    IntentSnapshot,
    PaymentSignal,
    ProcessorOutcome,
    ReconcileOutcome,
    ReconcileResult,
    SignalSource,
)

__all__ = [
    # Orders
    "Customer",
    "FulfillmentEdit",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentCompleted",
    "PaymentDetails",
    "PaymentFailed",
    "PaymentProcessing",
    "PaymentStatus",
    "PaymentTransition",
    "ShippingDetails",
    # Payments
    "AuditEventType",
    "AuditLogEntry",
    "CheckoutSessionSnapshot",
    "CreatedIntent",
    "DeadLetterRecord",
    "DeadLetterStats",
    "IntentSnapshot",
    "PaymentSignal",
    "ProcessorOutcome",
    "ReconcileOutcome",
    "ReconcileResult",
    "SignalSource",
]
