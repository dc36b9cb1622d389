"""
Payment Schemas
===============
Processor snapshots, reconciliation signals and results, dead-letter
records and the audit trail.

pip install pydantic
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, computed_field

from schemas.orders import PaymentStatus, utcnow


# =============================================================================
# ENUMS
# =============================================================================

class ProcessorOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    REQUIRES_ACTION = "requires_action"
    FAILED = "failed"


class SignalSource(str, Enum):
    WEBHOOK = "webhook"
    CLIENT = "client"
    ADMIN = "admin"


class ReconcileOutcome(str, Enum):
    COMPLETED = "completed"
    ALREADY_COMPLETED = "already_completed"
    PENDING_ACTION = "pending_action"
    NOT_COMPLETED = "not_completed"
    DEAD_LETTERED = "dead_lettered"


class AuditEventType(str, Enum):
    ORDER_CREATED = "order.created"
    ORDER_UPDATED = "order.updated"
    PAYMENT_INITIATED = "payment.initiated"
    PAYMENT_CONFIRMED = "payment.confirmed"
    PAYMENT_PROCESSING = "payment.processing"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_DEAD_LETTERED = "payment.dead_lettered"
    DEAD_LETTERS_RESOLVED = "payment.dead_letters_resolved"
    WEBHOOK_RECEIVED = "webhook.received"
    SESSION_CREATED = "session.created"
    REMINDER_SENT = "reminder.sent"


# Stripe PaymentIntent statuses that mean the customer still has work to do
INTENT_PENDING_STATUSES = frozenset({"requires_action", "requires_confirmation", "processing"})


# =============================================================================
# PROCESSOR SNAPSHOTS
# =============================================================================

class CreatedIntent(BaseModel):
    intent_id: str
    client_secret: str


class IntentSnapshot(BaseModel):
    """Ground truth for a payment intent as reported by the processor"""
    intent_id: str
    status: str
    amount: Decimal = Decimal("0")
    amount_received: Decimal = Decimal("0")
    currency: Optional[str] = None
    payment_method: str = "card"
    last_error: Optional[str] = None
    order_id: Optional[str] = None

    @property
    def outcome(self) -> ProcessorOutcome:
        if self.status == "succeeded":
            return ProcessorOutcome.SUCCEEDED
        if self.status in INTENT_PENDING_STATUSES:
            return ProcessorOutcome.REQUIRES_ACTION
        return ProcessorOutcome.FAILED

    @property
    def paid_amount(self) -> Decimal:
        return self.amount_received or self.amount


class CheckoutSessionSnapshot(BaseModel):
    """Ground truth for a hosted checkout session"""
    session_id: str
    payment_status: str
    status: Optional[str] = None
    amount_total: Decimal = Decimal("0")
    currency: Optional[str] = None
    created: Optional[datetime] = None
    payment_intent: Optional[str] = None
    payment_method_types: list[str] = Field(default_factory=list)
    customer_email: Optional[str] = None
    url: Optional[str] = None
    order_id: Optional[str] = None

    @property
    def outcome(self) -> ProcessorOutcome:
        if self.payment_status == "paid":
            return ProcessorOutcome.SUCCEEDED
        return ProcessorOutcome.FAILED

    @property
    def payment_method(self) -> str:
        return self.payment_method_types[0] if self.payment_method_types else "card"


# =============================================================================
# SIGNALS
# =============================================================================

class PaymentSignal(BaseModel):
    """A processor observation about one order, already verified.

    Webhook payloads, client confirmations and admin retries are all reduced
    to this shape before reconciliation.
    """
    source: SignalSource
    outcome: ProcessorOutcome
    intent_id: Optional[str] = None
    session_id: Optional[str] = None
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    processor_status: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    payment_method: str = "card"
    detail: Optional[str] = None
    actor: str = "system"
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    received_at: datetime = Field(default_factory=utcnow)


class ReconcileResult(BaseModel):
    order_id: str
    outcome: ReconcileOutcome
    payment_status: PaymentStatus
    message: str = ""
    correlation_id: Optional[str] = None
    dead_letter_id: Optional[str] = None
    resolved_dead_letters: int = 0

    @computed_field
    @property
    def success(self) -> bool:
        return self.outcome in (ReconcileOutcome.COMPLETED, ReconcileOutcome.ALREADY_COMPLETED)


# =============================================================================
# DEAD LETTERS
# =============================================================================

class DeadLetterRecord(BaseModel):
    """Payment update that could not be persisted after all retries"""
    record_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    order_id: str
    intent_id: Optional[str] = None
    session_id: Optional[str] = None
    event_id: Optional[str] = None
    source: SignalSource
    payment_status: Optional[str] = None
    amount: Optional[Decimal] = None
    error: dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0
    correlation_id: Optional[str] = None
    processed: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None


class DeadLetterStats(BaseModel):
    total: int = 0
    pending: int = 0
    processed: int = 0


# =============================================================================
# AUDIT
# =============================================================================

class AuditLogEntry(BaseModel):
    """Immutable audit log entry"""
    log_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str
    event_type: AuditEventType
    entity_type: str = "order"
    entity_id: str
    previous_state: Optional[dict] = None
    new_state: Optional[dict] = None
    metadata: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    actor: str = "system"
