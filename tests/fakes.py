"""In-memory fakes and builders for testing.

The fakes implement the same abstract interfaces as the Stripe and Postgres
adapters. Webhook signatures are real: they are HMAC-SHA256 signed here and
verified by the Stripe SDK.
"""

import asyncio
import hashlib
import hmac
import json
import time
from decimal import Decimal
from typing import Optional

from payments.errors import ProcessorUnavailable, StorageUnavailable
from payments.gateway import IPaymentGateway, StripePaymentGateway
from schemas.orders import Customer, Order, OrderItem, ShippingDetails
from schemas.payments import CheckoutSessionSnapshot, CreatedIntent, IntentSnapshot
from services.identity import Identity
from storage.inventory import InMemoryInventoryRepository
from storage.order_store import InMemoryOrderStore

WEBHOOK_SECRET = "whsec_test_secret"


def run(coro):
    return asyncio.run(coro)


class FakePaymentGateway(IPaymentGateway):

    def __init__(self, webhook_secret: str = WEBHOOK_SECRET) -> None:
        self.intents: dict[str, IntentSnapshot] = {}
        self.sessions: dict[str, CheckoutSessionSnapshot] = {}
        self.created_intents: list[tuple[str, Decimal, str]] = []
        self.created_sessions: list[str] = []
        self.fetch_calls = 0
        self.unavailable_calls = 0
        self._verifier = StripePaymentGateway(api_key="sk_test", webhook_secret=webhook_secret)

    def _maybe_fail(self) -> None:
        self.fetch_calls += 1
        if self.unavailable_calls > 0:
            self.unavailable_calls -= 1
            raise ProcessorUnavailable("processor timeout")

    async def create_intent(self, order_id, amount, currency, metadata=None, receipt_email=None):
        intent_id = f"pi_{len(self.created_intents) + 1}"
        self.created_intents.append((order_id, amount, currency))
        self.intents[intent_id] = IntentSnapshot(
            intent_id=intent_id, status="requires_payment_method", amount=amount,
            currency=currency, order_id=order_id,
        )
        return CreatedIntent(intent_id=intent_id, client_secret=f"{intent_id}_secret")

    async def retrieve_intent(self, intent_id):
        self._maybe_fail()
        await asyncio.sleep(0)
        return self.intents[intent_id]

    async def retrieve_checkout_session(self, session_id):
        self._maybe_fail()
        await asyncio.sleep(0)
        return self.sessions[session_id]

    async def create_checkout_session(self, order, success_url, cancel_url):
        session_id = f"cs_{len(self.created_sessions) + 1}"
        self.created_sessions.append(session_id)
        snapshot = CheckoutSessionSnapshot(
            session_id=session_id,
            payment_status="unpaid",
            status="open",
            amount_total=order.total_amount,
            currency=order.payment_details.currency,
            customer_email=order.customer.email,
            url=f"https://checkout.stripe.test/{session_id}",
            order_id=order.order_id,
        )
        self.sessions[session_id] = snapshot
        return snapshot

    def construct_event(self, payload, signature):
        return self._verifier.construct_event(payload, signature)


class FlakyOrderStore(InMemoryOrderStore):
    """Fails the next N payment-transition writes with StorageUnavailable"""

    def __init__(self, failures: int = 0) -> None:
        super().__init__()
        self.failures = failures
        self.transition_calls = 0

    async def apply_payment_transition(self, order_id, transition):
        self.transition_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise StorageUnavailable("connection reset")
        return await super().apply_payment_transition(order_id, transition)


class YieldingOrderStore(InMemoryOrderStore):
    """Yields to the event loop after every read so concurrent flows interleave"""

    async def get(self, order_id):
        order = await super().get(order_id)
        await asyncio.sleep(0)
        return order


class FailingInventoryRepository(InMemoryInventoryRepository):
    """Raises on writes for the given product ids"""

    def __init__(self, products=(), failing: tuple[str, ...] = ()) -> None:
        super().__init__(products)
        self.failing = set(failing)

    async def set_inventory(self, product_id, count):
        if product_id in self.failing:
            raise StorageUnavailable(f"write failed for {product_id}")
        await super().set_inventory(product_id, count)


# =============================================================================
# BUILDERS
# =============================================================================

CUSTOMER = Identity(uid="user-1", email="ivan@example.com")
OTHER_CUSTOMER = Identity(uid="user-2", email="maria@example.com")
ADMIN = Identity(uid="admin-1", email="admin@motoworld.bg")


def make_order(
    order_id: str = "ORD-1",
    user_id: str = "user-1",
    items: Optional[list[OrderItem]] = None,
    shipping_cost: Decimal = Decimal("0"),
    checkout_session_id: Optional[str] = None,
    email: Optional[str] = "ivan@example.com",
) -> Order:
    """Order with total 1000.00: p1 x1 at 400.00 and p2 x2 at 300.00"""
    items = items or [
        OrderItem(product_id="p1", name="Helmet", manufacturer="Shoei", unit_price=Decimal("400.00"), quantity=1),
        OrderItem(product_id="p2", name="Gloves", manufacturer="Alpinestars", unit_price=Decimal("300.00"), quantity=2),
    ]
    order = Order.create(
        user_id=user_id,
        customer=Customer(uid=user_id, email=email, first_name="Ivan", last_name="Petrov"),
        items=items,
        shipping_details=ShippingDetails(address="1 Vitosha Blvd", city="Sofia", country="BG"),
        shipping_cost=shipping_cost,
    )
    return order.model_copy(update={"order_id": order_id, "checkout_session_id": checkout_session_id})


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def intent_event(
    order_id: Optional[str],
    event_type: str = "payment_intent.succeeded",
    intent_id: str = "pi_1",
    amount: int = 100000,
    status: str = "succeeded",
    error_message: Optional[str] = None,
    event_id: str = "evt_1",
) -> str:
    intent = {
        "id": intent_id,
        "object": "payment_intent",
        "status": status,
        "amount": amount,
        "amount_received": amount if status == "succeeded" else 0,
        "currency": "bgn",
        "payment_method_types": ["card"],
        "metadata": {"orderId": order_id} if order_id else {},
        "last_payment_error": {"message": error_message} if error_message else None,
    }
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": intent}})


def session_event(
    order_id: str,
    event_type: str = "checkout.session.completed",
    session_id: str = "cs_1",
    payment_status: str = "paid",
    amount_total: int = 100000,
    event_id: str = "evt_cs_1",
) -> str:
    session = {
        "id": session_id,
        "object": "checkout.session",
        "payment_status": payment_status,
        "status": "complete",
        "amount_total": amount_total,
        "currency": "bgn",
        "created": 1700000000,
        "payment_intent": "pi_from_session",
        "payment_method_types": ["card"],
        "metadata": {"orderId": order_id},
    }
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": session}})


# =============================================================================
# DATABASE
# =============================================================================

class RecordingDatabase:
    """Stands in for the Database pool; replays canned rows in call order"""

    def __init__(self, rows=(), status: str = "UPDATE 1"):
        self.rows = list(rows)
        self.status = status
        self.calls: list[tuple[str, tuple]] = []

    async def fetch_one(self, query, *args):
        self.calls.append((query, args))
        return self.rows.pop(0) if self.rows else None

    async def fetch_all(self, query, *args):
        self.calls.append((query, args))
        rows, self.rows = self.rows, []
        return rows

    async def execute(self, query, *args):
        self.calls.append((query, args))
        return self.status
