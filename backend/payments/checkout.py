"""
Checkout Flow
=============
Order creation with a frozen price quote, payment-intent and hosted
checkout-session creation, payment-status lookup and payment reminders.

Stock is only checked here, never decremented: inventory moves when the
reconciliation engine confirms payment.

pip install pydantic stripe structlog
"""

import uuid
from decimal import Decimal
from typing import Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field

from config import settings
from payments.errors import Forbidden, ValidationError
from payments.gateway import IPaymentGateway, StripePaymentGateway
from schemas.orders import Customer, Order, OrderItem, ShippingDetails
from schemas.payments import AuditEventType, AuditLogEntry, CheckoutSessionSnapshot
from services.identity import AdminPolicy, Identity
from services.notifications import INotificationSink, InMemoryNotificationSink, PaymentReminder
from storage.audit_log import IAuditLog, InMemoryAuditLog
from storage.inventory import InventoryAdjuster, StockRequest
from storage.order_store import InMemoryOrderStore, IOrderStore


# =============================================================================
# REQUEST MODELS
# =============================================================================

class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CheckoutCustomer(_CamelModel):
    uid: str
    email: Optional[str] = None
    first_name: str = Field(default="", alias="firstName")
    last_name: str = Field(default="", alias="lastName")
    phone: Optional[str] = None
    address: str = ""
    city: str = ""
    postal_code: str = Field(default="", alias="postalCode")
    country: str = ""


class CheckoutItem(_CamelModel):
    product_id: str = Field(alias="id")
    name: str
    manufacturer: str = ""
    price: Decimal = Field(ge=0)
    quantity: int = Field(gt=0)


class ShippingOption(_CamelModel):
    id: str = "standard"
    name: str = ""
    price: Decimal = Field(default=Decimal("0"), ge=0)
    estimated_days: Optional[str] = Field(default=None, alias="estimatedDays")


class CreateOrderRequest(_CamelModel):
    user: CheckoutCustomer
    items: list[CheckoutItem] = Field(min_length=1)
    shipping_option: ShippingOption = Field(default_factory=ShippingOption, alias="shippingOption")
    payment_method: str = Field(default="stripe", alias="paymentMethod")
    subtotal: Optional[Decimal] = None
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0, alias="discountAmount")
    tax_amount: Decimal = Field(default=Decimal("0"), ge=0, alias="taxAmount")
    promo_code: Optional[str] = Field(default=None, alias="promoCode")


class PaymentIntentResult(BaseModel):
    client_secret: str
    intent_id: str
    order_id: str
    order_number: str
    amount: Decimal
    currency: str


# =============================================================================
# CHECKOUT SERVICE
# =============================================================================

class CheckoutService:
    """Customer-facing order and payment setup"""

    def __init__(
        self,
        orders: Optional[IOrderStore] = None,
        inventory: Optional[InventoryAdjuster] = None,
        gateway: Optional[IPaymentGateway] = None,
        notifications: Optional[INotificationSink] = None,
        audit_log: Optional[IAuditLog] = None,
        admin_policy: Optional[AdminPolicy] = None,
        currency: str = None,
        frontend_url: str = None,
    ):
        self.orders = orders or InMemoryOrderStore()
        self.inventory = inventory or InventoryAdjuster()
        self.gateway = gateway or StripePaymentGateway()
        self.notifications = notifications or InMemoryNotificationSink()
        self.audit = audit_log or InMemoryAuditLog()
        self.admin_policy = admin_policy or AdminPolicy()
        self.currency = currency or settings.PAYMENT_CURRENCY
        self.frontend_url = (frontend_url or settings.FRONTEND_URL).rstrip("/")
        self._logger = structlog.get_logger().bind(component="checkout")

    async def _owned_order(self, identity: Identity, order_id: str) -> Order:
        order = await self.orders.get(order_id)
        if identity.uid not in (order.user_id, order.customer.uid):
            raise Forbidden("Unauthorized access to order")
        return order

    async def _audit(self, event_type: AuditEventType, order: Order, actor: str, **metadata):
        await self.audit.append(AuditLogEntry(
            correlation_id=str(uuid.uuid4()),
            event_type=event_type,
            entity_id=order.order_id,
            new_state={
                "status": order.status.value,
                "payment_status": order.payment_details.status.value,
            },
            metadata=metadata,
            actor=actor,
        ))

    # =========================================================================
    # ORDERS
    # =========================================================================

    async def create_order(self, identity: Identity, request: CreateOrderRequest) -> Order:
        """Validate stock, snapshot prices and persist a pending order"""
        if identity.uid != request.user.uid:
            raise Forbidden("Cannot create an order for another user")

        line_total = sum((item.price * item.quantity for item in request.items), Decimal("0"))
        if request.subtotal is not None and request.subtotal != line_total:
            raise ValidationError(f"Subtotal {request.subtotal} does not match item total {line_total}")

        availability = await self.inventory.check_availability(
            StockRequest(product_id=item.product_id, quantity=item.quantity)
            for item in request.items
        )
        unavailable = [a for a in availability if not a.available]
        if unavailable:
            raise ValidationError(
                "Insufficient stock: " + ", ".join(f"{a.product_id} ({a.message})" for a in unavailable)
            )

        user = request.user
        shipping = request.shipping_option
        order = Order.create(
            user_id=user.uid,
            customer=Customer(
                uid=user.uid,
                email=user.email,
                first_name=user.first_name,
                last_name=user.last_name,
                phone=user.phone,
            ),
            items=[
                OrderItem(
                    product_id=item.product_id,
                    name=item.name,
                    manufacturer=item.manufacturer,
                    unit_price=item.price,
                    quantity=item.quantity,
                )
                for item in request.items
            ],
            shipping_details=ShippingDetails(
                address=user.address,
                city=user.city,
                postal_code=user.postal_code,
                country=user.country,
                phone=user.phone,
                method=shipping.name or shipping.id,
                price=shipping.price,
                estimated_days=shipping.estimated_days,
            ),
            shipping_cost=shipping.price,
            discount_amount=request.discount_amount,
            tax_amount=request.tax_amount,
            subtotal=request.subtotal,
            payment_method=request.payment_method,
            currency=self.currency,
            promo_code=request.promo_code,
        )
        if order.total_amount < 0:
            raise ValidationError("Order total cannot be negative")

        await self.orders.create(order)
        await self._audit(AuditEventType.ORDER_CREATED, order, identity.uid, total=str(order.total_amount))
        self._logger.info("order_created",
                          order_id=order.order_id,
                          order_number=order.order_number,
                          total=str(order.total_amount),
                          items=len(order.items))
        return order

    # =========================================================================
    # PAYMENT SETUP
    # =========================================================================

    async def create_payment_intent(self, identity: Identity, order_id: str) -> PaymentIntentResult:
        order = await self._owned_order(identity, order_id)
        if order.is_paid:
            raise ValidationError("Order is already paid")

        intent = await self.gateway.create_intent(
            order.order_id,
            order.total_amount,
            self.currency,
            metadata={"orderNumber": order.order_number, "userId": order.user_id},
            receipt_email=order.customer.email,
        )
        order = await self.orders.set_intent(order.order_id, intent.intent_id)
        await self._audit(AuditEventType.PAYMENT_INITIATED, order, identity.uid, intent_id=intent.intent_id)
        self._logger.info("payment_intent_created", order_id=order.order_id, intent_id=intent.intent_id)

        return PaymentIntentResult(
            client_secret=intent.client_secret,
            intent_id=intent.intent_id,
            order_id=order.order_id,
            order_number=order.order_number,
            amount=order.total_amount,
            currency=self.currency,
        )

    async def _open_session(self, order: Order, return_url: str = None) -> CheckoutSessionSnapshot:
        base = (return_url or self.frontend_url).rstrip("/")
        session = await self.gateway.create_checkout_session(
            order,
            success_url=f"{base}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}&order_id={order.order_id}",
            cancel_url=f"{base}/checkout/cancel?order_id={order.order_id}",
        )
        await self.orders.set_checkout_session(order.order_id, session.session_id)
        return session

    async def create_checkout_session(self, identity: Identity, order_id: str, return_url: str = None) -> CheckoutSessionSnapshot:
        order = await self._owned_order(identity, order_id)
        if order.is_paid:
            raise ValidationError("Order is already paid")

        session = await self._open_session(order, return_url)
        await self._audit(AuditEventType.SESSION_CREATED, order, identity.uid, session_id=session.session_id)
        self._logger.info("checkout_session_created", order_id=order.order_id, session_id=session.session_id)
        return session

    async def get_payment_status(self, session_id: str) -> CheckoutSessionSnapshot:
        """Read-only; never changes order state"""
        return await self.gateway.retrieve_checkout_session(session_id)

    async def send_payment_reminder(self, identity: Identity, order_id: str) -> Order:
        """Admin: e-mail the customer a fresh payment link"""
        self.admin_policy.require_admin(identity)
        order = await self.orders.get(order_id)
        if order.is_paid:
            raise ValidationError("Order is already paid")
        if not order.customer.email:
            raise ValidationError("Order has no customer e-mail")

        session = await self._open_session(order)
        await self.notifications.send_payment_reminder(
            order.customer.email,
            PaymentReminder(
                order_number=order.display_number,
                customer_name=order.customer.full_name,
                order_total=order.total_amount,
                payment_url=session.url or "",
                currency=order.payment_details.currency,
            ),
        )
        order = await self.orders.mark_reminder_sent(order.order_id)
        await self._audit(AuditEventType.REMINDER_SENT, order, identity.uid, session_id=session.session_id)
        self._logger.info("payment_reminder_sent", order_id=order.order_id, session_id=session.session_id)
        return order
