"""
Payment Intent Gateway
======================
The only path to the payment processor. Everything the reconciliation
engine believes about a payment comes from a snapshot returned here or a
webhook payload whose signature was verified here.

Stripe SDK calls are blocking and run in a worker thread.

pip install stripe structlog
"""

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

import stripe
import structlog

from config import settings
from payments.errors import ProcessorUnavailable, SignatureInvalid
from schemas.orders import Order
from schemas.payments import CheckoutSessionSnapshot, CreatedIntent, IntentSnapshot


# =============================================================================
# HELPERS
# =============================================================================

def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


def from_minor_units(amount: Optional[int]) -> Decimal:
    return Decimal(amount or 0) / 100


def field(obj: Any, key: str, default: Any = None) -> Any:
    """Read a key from a Stripe object or a plain dict"""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def order_id_from_metadata(obj: Any) -> Optional[str]:
    return field(field(obj, "metadata"), "orderId")


def _line_item(name: str, unit_price: Decimal, quantity: int, currency: str, description: str = "") -> dict:
    product_data = {"name": name}
    if description:
        product_data["description"] = description
    return {
        "price_data": {
            "currency": currency,
            "product_data": product_data,
            "unit_amount": to_minor_units(unit_price),
        },
        "quantity": quantity,
    }


# =============================================================================
# INTERFACE
# =============================================================================

class IPaymentGateway(ABC):
    """Payment processor interface"""

    @abstractmethod
    async def create_intent(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        metadata: dict[str, str] = None,
        receipt_email: str = None,
    ) -> CreatedIntent:
        pass

    @abstractmethod
    async def retrieve_intent(self, intent_id: str) -> IntentSnapshot:
        pass

    @abstractmethod
    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionSnapshot:
        pass

    @abstractmethod
    async def create_checkout_session(
        self,
        order: Order,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSessionSnapshot:
        pass

    @abstractmethod
    def construct_event(self, payload: bytes, signature: str) -> dict:
        """Verify a webhook signature and return the parsed event; raises SignatureInvalid"""
        pass


# =============================================================================
# STRIPE IMPLEMENTATION
# =============================================================================

def intent_snapshot(intent: Any) -> IntentSnapshot:
    last_error = field(field(intent, "last_payment_error"), "message")
    method_types = field(intent, "payment_method_types") or ["card"]
    return IntentSnapshot(
        intent_id=field(intent, "id"),
        status=field(intent, "status"),
        amount=from_minor_units(field(intent, "amount")),
        amount_received=from_minor_units(field(intent, "amount_received")),
        currency=field(intent, "currency"),
        payment_method=method_types[0],
        last_error=last_error,
        order_id=order_id_from_metadata(intent),
    )


def session_snapshot(session: Any) -> CheckoutSessionSnapshot:
    created = field(session, "created")
    return CheckoutSessionSnapshot(
        session_id=field(session, "id"),
        payment_status=field(session, "payment_status") or "unpaid",
        status=field(session, "status"),
        amount_total=from_minor_units(field(session, "amount_total")),
        currency=field(session, "currency"),
        created=datetime.fromtimestamp(created, tz=timezone.utc) if created else None,
        payment_intent=field(session, "payment_intent"),
        payment_method_types=list(field(session, "payment_method_types") or []),
        customer_email=field(session, "customer_email"),
        url=field(session, "url"),
        order_id=order_id_from_metadata(session),
    )


class StripePaymentGateway(IPaymentGateway):
    """
    Stripe-backed gateway.

    Any StripeError on create/retrieve surfaces as ProcessorUnavailable;
    callers never see SDK exception types.
    """

    def __init__(
        self,
        api_key: str = None,
        webhook_secret: str = None,
        client=stripe,
    ):
        self.api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.STRIPE_WEBHOOK_SECRET
        self.stripe = client
        self._logger = structlog.get_logger().bind(component="payment_gateway")

    async def _call(self, operation: str, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, api_key=self.api_key, **kwargs)
        except stripe.StripeError as e:
            self._logger.error("processor_call_failed",
                               operation=operation,
                               error=str(e),
                               error_type=type(e).__name__)
            raise ProcessorUnavailable(f"{operation} failed: {e}") from e

    async def create_intent(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        metadata: dict[str, str] = None,
        receipt_email: str = None,
    ) -> CreatedIntent:
        params = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "automatic_payment_methods": {"enabled": True},
            "metadata": {"orderId": order_id, **(metadata or {})},
        }
        if receipt_email:
            params["receipt_email"] = receipt_email

        intent = await self._call("create_intent", self.stripe.PaymentIntent.create, **params)
        self._logger.info("intent_created", order_id=order_id, intent_id=intent.id)
        return CreatedIntent(intent_id=intent.id, client_secret=intent.client_secret)

    async def retrieve_intent(self, intent_id: str) -> IntentSnapshot:
        intent = await self._call("retrieve_intent", self.stripe.PaymentIntent.retrieve, intent_id)
        return intent_snapshot(intent)

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionSnapshot:
        session = await self._call(
            "retrieve_checkout_session", self.stripe.checkout.Session.retrieve, session_id
        )
        return session_snapshot(session)

    async def create_checkout_session(
        self,
        order: Order,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSessionSnapshot:
        currency = order.payment_details.currency
        line_items = [
            _line_item(item.name, item.unit_price, item.quantity, currency, item.manufacturer)
            for item in order.items
        ]
        if order.tax_amount > 0:
            line_items.append(_line_item("Tax", order.tax_amount, 1, currency))
        params = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": line_items,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "customer_email": order.customer.email,
            "metadata": {
                "orderId": order.order_id,
                "orderNumber": order.order_number,
                "userId": order.user_id,
            },
            "payment_intent_data": {
                "metadata": {"orderId": order.order_id, "orderNumber": order.order_number},
            },
        }
        if order.shipping_cost > 0:
            params["shipping_options"] = [{
                "shipping_rate_data": {
                    "type": "fixed_amount",
                    "fixed_amount": {"amount": to_minor_units(order.shipping_cost), "currency": currency},
                    "display_name": (order.shipping_details.method if order.shipping_details else "") or "Shipping",
                },
            }]
        if order.discount_amount > 0:
            coupon = await self._call(
                "create_coupon",
                self.stripe.Coupon.create,
                amount_off=to_minor_units(order.discount_amount),
                currency=currency,
                duration="once",
                name=order.promo_code or "Discount",
            )
            params["discounts"] = [{"coupon": coupon.id}]

        session = await self._call("create_checkout_session", self.stripe.checkout.Session.create, **params)
        snapshot = session_snapshot(session)
        self._logger.info("checkout_session_created", order_id=order.order_id, session_id=snapshot.session_id)
        return snapshot

    def construct_event(self, payload: bytes, signature: str) -> dict:
        # Verify signature BEFORE parsing
        if not signature:
            raise SignatureInvalid("Missing Stripe-Signature header")
        try:
            text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError as e:
            self._logger.warning("webhook_payload_undecodable", error=str(e))
            raise SignatureInvalid("Invalid webhook payload") from e

        try:
            self.stripe.WebhookSignature.verify_header(text, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            self._logger.warning("webhook_signature_invalid", error=str(e))
            raise SignatureInvalid("Invalid webhook signature") from e

        try:
            return json.loads(text)
        except ValueError as e:
            self._logger.warning("webhook_payload_invalid", error=str(e))
            raise SignatureInvalid("Invalid webhook payload") from e
