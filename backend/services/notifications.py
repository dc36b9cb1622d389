"""
Notification Sink
=================
Transactional e-mail for order confirmations and payment reminders.

Delivery is best-effort from the caller's point of view: the reconciliation
engine logs sink failures and never lets them touch order state.

pip install sendgrid pydantic structlog
"""

import asyncio
import html
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

import structlog
from pydantic import BaseModel, Field
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from config import settings
from schemas.orders import utcnow


# =============================================================================
# MODELS
# =============================================================================

class NotificationType(str, Enum):
    ORDER_CONFIRMATION = "order_confirmation"
    PAYMENT_REMINDER = "payment_reminder"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"


PAYMENT_METHOD_LABELS = {
    "card": "Credit/Debit card",
    "stripe": "Credit/Debit card",
    "cash_on_delivery": "Cash on delivery",
    "bank_transfer": "Bank transfer",
}


class OrderConfirmation(BaseModel):
    order_number: str
    customer_name: str
    order_total: Decimal
    payment_method: str
    order_date: datetime
    currency: str = "bgn"

    @property
    def payment_method_label(self) -> str:
        return PAYMENT_METHOD_LABELS.get(self.payment_method, self.payment_method)


class PaymentReminder(BaseModel):
    order_number: str
    customer_name: str = ""
    order_total: Decimal
    payment_url: str
    currency: str = "bgn"


class NotificationRecord(BaseModel):
    """E-mail notification tracking"""
    notification_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    notification_type: NotificationType
    recipient_email: str
    subject: str
    message_id: Optional[str] = None
    status: DeliveryStatus = DeliveryStatus.SENT
    sent_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# TEMPLATES
# =============================================================================

def _money(amount: Decimal, currency: str) -> str:
    return f"{amount:,.2f} {currency.upper()}"


def render_confirmation(data: OrderConfirmation) -> tuple[str, str]:
    subject = f"Order confirmation #{data.order_number}"
    body = f"""
    <h2>Thank you for your order, {html.escape(data.customer_name or 'customer')}!</h2>
    <p>Your payment has been received and your order is now being processed.</p>
    <table>
      <tr><td>Order number</td><td>{html.escape(data.order_number)}</td></tr>
      <tr><td>Order date</td><td>{data.order_date.strftime('%d.%m.%Y')}</td></tr>
      <tr><td>Payment method</td><td>{html.escape(data.payment_method_label)}</td></tr>
      <tr><td>Total</td><td>{_money(data.order_total, data.currency)}</td></tr>
    </table>
    """
    return subject, body


def render_reminder(data: PaymentReminder) -> tuple[str, str]:
    subject = f"Payment reminder for order #{data.order_number}"
    body = f"""
    <h2>Your order #{html.escape(data.order_number)} is awaiting payment</h2>
    <p>Amount due: {_money(data.order_total, data.currency)}</p>
    <p><a href="{html.escape(data.payment_url, quote=True)}">Complete your payment</a></p>
    """
    return subject, body


# =============================================================================
# SINKS
# =============================================================================

class INotificationSink(ABC):

    @abstractmethod
    async def send_order_confirmation(self, email: str, data: OrderConfirmation) -> NotificationRecord:
        pass

    @abstractmethod
    async def send_payment_reminder(self, email: str, data: PaymentReminder) -> NotificationRecord:
        pass


class SendGridNotificationSink(INotificationSink):
    """SendGrid delivery; the blocking client call runs in a worker thread"""

    def __init__(self, api_key: str = None, from_email: str = None):
        self.client = SendGridAPIClient(api_key or settings.SENDGRID_API_KEY)
        self.from_email = from_email or settings.SENDGRID_FROM_EMAIL
        self._logger = structlog.get_logger().bind(component="notifications")

    async def _send(self, notification_type: NotificationType, email: str, subject: str, body: str) -> NotificationRecord:
        message = Mail(
            from_email=self.from_email,
            to_emails=email,
            subject=subject,
            html_content=body,
        )
        try:
            response = await asyncio.to_thread(self.client.send, message)
        except Exception as e:
            self._logger.error("notification_failed",
                               notification_type=notification_type.value,
                               error=str(e))
            raise

        record = NotificationRecord(
            notification_type=notification_type,
            recipient_email=email,
            subject=subject,
            message_id=response.headers.get("X-Message-Id") if response.headers else None,
        )
        self._logger.info("notification_sent",
                          notification_type=notification_type.value,
                          message_id=record.message_id,
                          status_code=response.status_code)
        return record

    async def send_order_confirmation(self, email: str, data: OrderConfirmation) -> NotificationRecord:
        subject, body = render_confirmation(data)
        return await self._send(NotificationType.ORDER_CONFIRMATION, email, subject, body)

    async def send_payment_reminder(self, email: str, data: PaymentReminder) -> NotificationRecord:
        subject, body = render_reminder(data)
        return await self._send(NotificationType.PAYMENT_REMINDER, email, subject, body)


class InMemoryNotificationSink(INotificationSink):
    """Records messages instead of sending them (local runs and tests)"""

    def __init__(self, fail_with: Optional[Exception] = None):
        self.sent: list[tuple[NotificationRecord, BaseModel]] = []
        self.fail_with = fail_with
        self._logger = structlog.get_logger().bind(component="notifications")

    async def _record(self, notification_type: NotificationType, email: str, subject: str, data: BaseModel) -> NotificationRecord:
        if self.fail_with is not None:
            raise self.fail_with
        record = NotificationRecord(
            notification_type=notification_type,
            recipient_email=email,
            subject=subject,
            message_id=f"local-{uuid.uuid4().hex[:16]}",
        )
        self.sent.append((record, data))
        self._logger.info("notification_recorded", notification_type=notification_type.value)
        return record

    async def send_order_confirmation(self, email: str, data: OrderConfirmation) -> NotificationRecord:
        subject, _ = render_confirmation(data)
        return await self._record(NotificationType.ORDER_CONFIRMATION, email, subject, data)

    async def send_payment_reminder(self, email: str, data: PaymentReminder) -> NotificationRecord:
        subject, _ = render_reminder(data)
        return await self._record(NotificationType.PAYMENT_REMINDER, email, subject, data)
