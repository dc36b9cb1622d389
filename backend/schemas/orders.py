"""
Order Schemas
=============
Orders, their frozen price quote, and the typed updates that may be applied
to them after creation.

Two state machines live on an order:
- payment status (pending -> processing -> completed | failed), driven by
  processor ground truth only
- fulfillment status (pending -> processing -> shipped -> delivered, with
  completed and cancelled as alternate terminals), driven by admins

The only coupling is that a completed payment moves fulfillment from
pending to processing.

pip install pydantic
"""

import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


FULFILLMENT_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.COMPLETED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.COMPLETED, OrderStatus.CANCELLED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELLED: set(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """Whether an admin may move fulfillment from current to target"""
    return current == target or target in FULFILLMENT_TRANSITIONS[current]


# =============================================================================
# DOMAIN MODELS
# =============================================================================

class OrderItem(BaseModel):
    """Line item with the unit price captured at order creation"""
    model_config = ConfigDict(frozen=True)

    product_id: str
    name: str
    manufacturer: str = ""
    unit_price: Decimal = Field(ge=0)
    quantity: int = Field(gt=0)

    @computed_field
    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class Customer(BaseModel):
    uid: str
    email: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    phone: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class ShippingDetails(BaseModel):
    address: str = ""
    city: str = ""
    postal_code: str = ""
    country: str = ""
    phone: Optional[str] = None
    method: str = ""
    price: Decimal = Decimal("0")
    estimated_days: Optional[str] = None


class PaymentDetails(BaseModel):
    method: str = "stripe"
    status: PaymentStatus = PaymentStatus.PENDING
    transaction_id: Optional[str] = None
    amount: Decimal = Decimal("0")
    currency: str = "bgn"
    payment_date: Optional[datetime] = None
    last_error: Optional[str] = None
    last_action: Optional[str] = None
    confirmation_id: Optional[str] = None


class Order(BaseModel):
    """Persisted customer order"""
    order_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    order_number: str
    user_id: str
    customer: Customer
    status: OrderStatus = OrderStatus.PENDING
    payment_details: PaymentDetails = Field(default_factory=PaymentDetails)
    items: tuple[OrderItem, ...]
    shipping_details: Optional[ShippingDetails] = None

    # Frozen quote
    subtotal: Decimal
    shipping_cost: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    total_amount: Decimal
    promo_code: Optional[str] = None

    checkout_session_id: Optional[str] = None
    tracking_number: Optional[str] = None
    notes: Optional[str] = None
    estimated_delivery_date: Optional[str] = None

    amount_paid: Optional[Decimal] = None
    payment_method: Optional[str] = None
    payment_completed_at: Optional[datetime] = None
    reminder_sent_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_paid(self) -> bool:
        return self.payment_details.status == PaymentStatus.COMPLETED

    @property
    def display_number(self) -> str:
        return self.order_number or self.order_id[:8]

    @staticmethod
    def generate_order_number() -> str:
        """ORD-<last 6 digits of the ms clock>-<4 hex chars>, upper-cased"""
        millis = str(int(time.time() * 1000))[-6:]
        return f"ORD-{millis}-{uuid.uuid4().hex[:4]}".upper()

    @classmethod
    def create(
        cls,
        *,
        user_id: str,
        customer: Customer,
        items: list[OrderItem],
        shipping_details: Optional[ShippingDetails] = None,
        shipping_cost: Decimal = Decimal("0"),
        discount_amount: Decimal = Decimal("0"),
        tax_amount: Decimal = Decimal("0"),
        subtotal: Optional[Decimal] = None,
        payment_method: str = "stripe",
        currency: str = "bgn",
        promo_code: Optional[str] = None,
    ) -> "Order":
        """Build a new order and freeze its total"""
        if subtotal is None:
            subtotal = sum((item.line_total for item in items), Decimal("0"))
        total = subtotal - discount_amount + shipping_cost + tax_amount
        return cls(
            order_number=cls.generate_order_number(),
            user_id=user_id,
            customer=customer,
            items=tuple(items),
            shipping_details=shipping_details,
            subtotal=subtotal,
            shipping_cost=shipping_cost,
            discount_amount=discount_amount,
            tax_amount=tax_amount,
            total_amount=total,
            promo_code=promo_code,
            payment_details=PaymentDetails(
                method=payment_method,
                amount=total,
                currency=currency,
            ),
        )


# =============================================================================
# PAYMENT TRANSITIONS
# =============================================================================

class _Transition(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # Moves fulfillment from pending to processing; any other status is left alone
    starts_fulfillment: ClassVar[bool] = False

    def order_fields(self, now: datetime) -> dict[str, Any]:
        """Top-level order fields written by this transition"""
        return {}

    def payment_fields(self, now: datetime) -> dict[str, Any]:
        """payment_details fields written by this transition"""
        raise NotImplementedError


class PaymentCompleted(_Transition):
    kind: Literal["completed"] = "completed"
    amount_paid: Decimal
    payment_method: str = "card"
    transaction_id: Optional[str] = None
    paid_at: datetime = Field(default_factory=utcnow)
    confirmation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)

    starts_fulfillment: ClassVar[bool] = True

    def order_fields(self, now: datetime) -> dict[str, Any]:
        return {
            "payment_completed_at": self.paid_at,
            "amount_paid": self.amount_paid,
            "payment_method": self.payment_method,
        }

    def payment_fields(self, now: datetime) -> dict[str, Any]:
        fields = {
            "status": PaymentStatus.COMPLETED,
            "payment_date": self.paid_at,
            "confirmation_id": self.confirmation_id,
            "last_error": None,
            "last_action": None,
        }
        if self.transaction_id:
            fields["transaction_id"] = self.transaction_id
        return fields


class PaymentProcessing(_Transition):
    kind: Literal["processing"] = "processing"
    last_action: Optional[str] = None

    def payment_fields(self, now: datetime) -> dict[str, Any]:
        return {"status": PaymentStatus.PROCESSING, "last_action": self.last_action}


class PaymentFailed(_Transition):
    kind: Literal["failed"] = "failed"
    last_error: str = "Payment failed"

    def payment_fields(self, now: datetime) -> dict[str, Any]:
        return {"status": PaymentStatus.FAILED, "last_error": self.last_error}


PaymentTransition = Annotated[
    Union[PaymentCompleted, PaymentProcessing, PaymentFailed],
    Field(discriminator="kind"),
]


def apply_transition(order: Order, transition: PaymentTransition, now: datetime) -> Order:
    """Return a copy of the order with the transition applied.

    A completed payment is terminal here; transitions against it are no-ops.
    """
    if order.is_paid:
        return order
    fields = transition.order_fields(now)
    if transition.starts_fulfillment and order.status == OrderStatus.PENDING:
        fields["status"] = OrderStatus.PROCESSING
    payment = order.payment_details.model_copy(update=transition.payment_fields(now))
    return order.model_copy(update={
        **fields,
        "payment_details": payment,
        "updated_at": now,
    })


# =============================================================================
# FULFILLMENT EDITS
# =============================================================================

class FulfillmentEdit(BaseModel):
    """Admin-editable fulfillment fields"""
    model_config = ConfigDict(extra="forbid")

    status: Optional[OrderStatus] = None
    tracking_number: Optional[str] = None
    notes: Optional[str] = None
    estimated_delivery_date: Optional[str] = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)
