"""
Reconciliation Engine
=====================
Brings a local order's payment state into agreement with what the payment
processor reports. Three entry points feed one core operation:
- processor webhooks (signature-verified)
- client-initiated confirmation after the browser-side payment step
- admin-initiated retry / dead-letter resolution

Guarantees:
- Idempotent: an order whose payment is already completed is never written
  again, so duplicate or racing signals cannot double-decrement inventory
  or re-send confirmation e-mail
- Ground truth only: success is never inferred from local flags
- Bounded retry: the success-path write is retried with exponential backoff;
  once the attempts are spent a dead-letter record is written and the order is
  left exactly as it was
- Inventory and notification failures never roll back a payment

pip install pydantic stripe structlog
"""

import asyncio
import uuid
from typing import Optional

import structlog

from config import settings
from payments.errors import (
    Exhausted,
    Forbidden,
    NotFound,
    ProcessorUnavailable,
    TransientStorageError,
    ValidationError,
)
from payments.gateway import (
    IPaymentGateway,
    StripePaymentGateway,
    intent_snapshot,
    order_id_from_metadata,
    session_snapshot,
)
from payments.retry import retry_async
from payments.webhooks import WebhookRouter
from schemas.orders import (
    Order,
    OrderStatus,
    PaymentCompleted,
    PaymentFailed,
    PaymentProcessing,
    utcnow,
)
from schemas.payments import (
    AuditEventType,
    AuditLogEntry,
    CheckoutSessionSnapshot,
    DeadLetterRecord,
    IntentSnapshot,
    PaymentSignal,
    ProcessorOutcome,
    ReconcileOutcome,
    ReconcileResult,
    SignalSource,
)
from services.identity import AdminPolicy, Identity
from services.notifications import INotificationSink, InMemoryNotificationSink, OrderConfirmation
from storage.audit_log import IAuditLog, InMemoryAuditLog
from storage.dead_letters import IDeadLetterLedger, InMemoryDeadLetterLedger
from storage.inventory import InventoryAdjuster
from storage.order_store import InMemoryOrderStore, IOrderStore


# =============================================================================
# SIGNAL BUILDERS
# =============================================================================

def signal_from_intent(snapshot: IntentSnapshot, source: SignalSource, **kwargs) -> PaymentSignal:
    return PaymentSignal(
        source=source,
        outcome=snapshot.outcome,
        intent_id=snapshot.intent_id,
        processor_status=snapshot.status,
        amount=snapshot.paid_amount,
        currency=snapshot.currency,
        payment_method=snapshot.payment_method,
        detail=snapshot.last_error,
        **kwargs,
    )


def signal_from_session(snapshot: CheckoutSessionSnapshot, source: SignalSource, **kwargs) -> PaymentSignal:
    return PaymentSignal(
        source=source,
        outcome=snapshot.outcome,
        session_id=snapshot.session_id,
        intent_id=snapshot.payment_intent,
        processor_status=snapshot.payment_status,
        amount=snapshot.amount_total,
        currency=snapshot.currency,
        payment_method=snapshot.payment_method,
        detail=None if snapshot.payment_status == "paid" else f"Checkout session is {snapshot.payment_status}",
        **kwargs,
    )


# =============================================================================
# RECONCILIATION ENGINE
# =============================================================================

class ReconciliationEngine:
    """
    Example:
        engine = ReconciliationEngine(orders=store, gateway=StripePaymentGateway())
        await engine.handle_webhook(payload, signature)
        result = await engine.confirm_from_client(identity, order_id, intent_id)
    """

    def __init__(
        self,
        orders: Optional[IOrderStore] = None,
        inventory: Optional[InventoryAdjuster] = None,
        gateway: Optional[IPaymentGateway] = None,
        dead_letters: Optional[IDeadLetterLedger] = None,
        notifications: Optional[INotificationSink] = None,
        audit_log: Optional[IAuditLog] = None,
        admin_policy: Optional[AdminPolicy] = None,
        max_attempts: int = None,
        base_delay: float = None,
        processor_attempts: int = None,
        sleep=asyncio.sleep,
    ):
        # Dependency injection with defaults
        self.orders = orders or InMemoryOrderStore()
        self.inventory = inventory or InventoryAdjuster()
        self.gateway = gateway or StripePaymentGateway()
        self.dead_letters = dead_letters or InMemoryDeadLetterLedger()
        self.notifications = notifications or InMemoryNotificationSink()
        self.audit = audit_log or InMemoryAuditLog()
        self.admin_policy = admin_policy or AdminPolicy()

        self.max_attempts = max_attempts or settings.RECONCILE_MAX_ATTEMPTS
        self.base_delay = settings.RECONCILE_BASE_DELAY_SECONDS if base_delay is None else base_delay
        self.processor_attempts = processor_attempts or settings.PROCESSOR_FETCH_ATTEMPTS
        self._sleep = sleep

        self.router = WebhookRouter()
        self._register_handlers()

        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str = None):
        """Get logger bound with correlation context"""
        return self._base_logger.bind(
            component="reconciliation",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    async def _emit_audit(
        self,
        event_type: AuditEventType,
        order_id: str,
        correlation_id: str,
        actor: str,
        previous_state: dict = None,
        new_state: dict = None,
        metadata: dict = None,
    ):
        """Append an audit entry; a storage outage here never fails the caller"""
        entry = AuditLogEntry(
            correlation_id=correlation_id,
            event_type=event_type,
            entity_id=order_id,
            previous_state=previous_state,
            new_state=new_state,
            metadata=metadata or {},
            actor=actor,
        )
        try:
            await self.audit.append(entry)
        except TransientStorageError as e:
            self._get_logger(correlation_id).warning(
                "audit_write_failed", event_type=event_type.value, error=str(e)
            )

    @staticmethod
    def _result(order: Order, outcome: ReconcileOutcome, signal: PaymentSignal, message: str, **extra) -> ReconcileResult:
        return ReconcileResult(
            order_id=order.order_id,
            outcome=outcome,
            payment_status=order.payment_details.status,
            message=message,
            correlation_id=signal.correlation_id,
            **extra,
        )

    # =========================================================================
    # CORE OPERATION
    # =========================================================================

    async def reconcile(self, order_id: str, signal: PaymentSignal) -> ReconcileResult:
        """
        Apply one verified processor observation to an order.

        Raises NotFound for an unknown order. Non-success outcomes and
        dead-lettering are reported through the result, not raised.
        """
        log = self._get_logger(signal.correlation_id).bind(
            order_id=order_id,
            source=signal.source.value,
        )
        order = await self.orders.get(order_id)

        if order.is_paid:
            log.info("reconcile_already_completed", outcome=signal.outcome.value)
            return self._result(order, ReconcileOutcome.ALREADY_COMPLETED, signal, "Payment already completed")

        if signal.outcome == ProcessorOutcome.SUCCEEDED:
            return await self._complete(order, signal, log)

        if signal.outcome == ProcessorOutcome.REQUIRES_ACTION:
            transition = PaymentProcessing(last_action=signal.processor_status)
            outcome = ReconcileOutcome.PENDING_ACTION
            event_type = AuditEventType.PAYMENT_PROCESSING
            message = "Payment requires additional action"
        else:
            transition = PaymentFailed(last_error=signal.detail or "Payment failed")
            outcome = ReconcileOutcome.NOT_COMPLETED
            event_type = AuditEventType.PAYMENT_FAILED
            message = "Payment was not completed"

        updated = await self.orders.apply_payment_transition(order_id, transition)
        if updated.is_paid:
            log.info("reconcile_already_completed", reason="completed_concurrently")
            return self._result(updated, ReconcileOutcome.ALREADY_COMPLETED, signal, "Payment already completed")

        await self._emit_audit(
            event_type,
            order_id,
            signal.correlation_id,
            actor=signal.actor,
            previous_state={"payment_status": order.payment_details.status.value},
            new_state={"payment_status": updated.payment_details.status.value},
            metadata={"processor_status": signal.processor_status, "source": signal.source.value},
        )
        log.info("payment_not_completed",
                 transition=transition.kind,
                 processor_status=signal.processor_status,
                 detail=signal.detail)
        return self._result(updated, outcome, signal, message)

    async def _complete(self, order: Order, signal: PaymentSignal, log) -> ReconcileResult:
        transition = PaymentCompleted(
            amount_paid=order.total_amount if signal.amount is None else signal.amount,
            payment_method=signal.payment_method,
            transaction_id=signal.intent_id,
        )

        try:
            updated = await retry_async(
                lambda: self.orders.apply_payment_transition(order.order_id, transition),
                attempts=self.max_attempts,
                base_delay=self.base_delay,
                logger=log,
                sleep=self._sleep,
            )
        except Exhausted as e:
            record = await self._dead_letter(order, signal, e, log)
            return self._result(
                order,
                ReconcileOutcome.DEAD_LETTERED,
                signal,
                "Payment confirmed by processor but could not be recorded",
                dead_letter_id=record.record_id,
            )

        if updated.payment_details.confirmation_id != transition.confirmation_id:
            log.info("reconcile_already_completed", reason="completed_concurrently")
            return self._result(updated, ReconcileOutcome.ALREADY_COMPLETED, signal, "Payment already completed")

        await self._emit_audit(
            AuditEventType.PAYMENT_CONFIRMED,
            order.order_id,
            signal.correlation_id,
            actor=signal.actor,
            previous_state={
                "status": order.status.value,
                "payment_status": order.payment_details.status.value,
            },
            new_state={
                "status": updated.status.value,
                "payment_status": updated.payment_details.status.value,
                "amount_paid": str(updated.amount_paid),
            },
            metadata={"intent_id": signal.intent_id, "session_id": signal.session_id},
        )
        log.info("payment_confirmed",
                 amount_paid=str(transition.amount_paid),
                 transaction_id=transition.transaction_id)

        if updated.status == OrderStatus.CANCELLED:
            # Nothing ships; the charge needs a manual refund
            log.warning("payment_for_cancelled_order",
                        amount_paid=str(transition.amount_paid),
                        transaction_id=transition.transaction_id)
            return self._result(updated, ReconcileOutcome.COMPLETED, signal, "Payment completed for a cancelled order")

        await self.inventory.decrement_for_order(updated.items, correlation_id=signal.correlation_id)
        await self._notify(updated, log)

        return self._result(updated, ReconcileOutcome.COMPLETED, signal, "Payment completed successfully")

    async def _dead_letter(self, order: Order, signal: PaymentSignal, exc: Exhausted, log) -> DeadLetterRecord:
        entry = DeadLetterRecord(
            order_id=order.order_id,
            intent_id=signal.intent_id,
            session_id=signal.session_id,
            event_id=signal.event_id,
            source=signal.source,
            payment_status=signal.processor_status or signal.outcome.value,
            amount=signal.amount,
            error={
                "type": type(exc.last_error).__name__,
                "message": str(exc.last_error),
            },
            attempts=exc.attempts,
            correlation_id=signal.correlation_id,
        )
        try:
            record = await self.dead_letters.record(entry)
        except Exception as e:
            log.critical("dead_letter_write_failed", error=str(e), payment_error=str(exc.last_error))
            raise exc from e

        await self._emit_audit(
            AuditEventType.PAYMENT_DEAD_LETTERED,
            order.order_id,
            signal.correlation_id,
            actor=signal.actor,
            metadata={"dead_letter_id": record.record_id, "attempts": exc.attempts},
        )
        log.error("reconcile_dead_lettered",
                  dead_letter_id=record.record_id,
                  attempts=exc.attempts,
                  error=str(exc.last_error))
        return record

    async def _notify(self, order: Order, log) -> None:
        email = order.customer.email
        if not email:
            log.warning("notification_skipped", reason="no_email")
            return

        data = OrderConfirmation(
            order_number=order.display_number,
            customer_name=order.customer.full_name,
            order_total=order.total_amount,
            payment_method=order.payment_method or order.payment_details.method,
            order_date=order.payment_completed_at or utcnow(),
            currency=order.payment_details.currency,
        )
        try:
            await self.notifications.send_order_confirmation(email, data)
            log.info("confirmation_sent", order_number=data.order_number)
        except Exception as e:
            log.error("notification_failed", error=str(e), error_type=type(e).__name__)

    async def _fetch(self, operation: str, fn, *args):
        """Processor read with one retry on ProcessorUnavailable"""
        try:
            return await retry_async(
                lambda: fn(*args),
                attempts=self.processor_attempts,
                base_delay=self.base_delay,
                retry_on=(ProcessorUnavailable,),
                logger=self._get_logger().bind(operation=operation),
                sleep=self._sleep,
            )
        except Exhausted as e:
            raise e.last_error

    # =========================================================================
    # WEBHOOK ADAPTER
    # =========================================================================

    async def handle_webhook(self, payload: bytes, signature: str) -> dict:
        """
        Verify and route a processor webhook.

        Raises SignatureInvalid before anything is read or written.
        """
        event = self.gateway.construct_event(payload, signature)

        event_type = event.get("type", "unknown")
        event_id = event.get("id", "unknown")
        correlation_id = event_id if event_id != "unknown" else str(uuid.uuid4())
        log = self._get_logger(correlation_id)
        log.info("webhook_received", event_type=event_type, event_id=event_id)

        try:
            result = await self.router.route(event, correlation_id)
        except NotFound as e:
            log.error("webhook_order_not_found", event_type=event_type, error=str(e))
            return {"received": True, "event_id": event_id, "status": "order_not_found"}

        status = result.outcome.value if isinstance(result, ReconcileResult) else "ignored"
        log.info("webhook_processed", event_type=event_type, status=status)
        return {"received": True, "event_id": event_id, "status": status}

    def _register_handlers(self):
        """Register all webhook handlers"""

        @self.router.register("payment_intent.succeeded")
        async def handle_intent_succeeded(event: dict, correlation_id: str):
            return await self._on_intent_event(event, correlation_id)

        @self.router.register("payment_intent.payment_failed")
        async def handle_intent_failed(event: dict, correlation_id: str):
            return await self._on_intent_event(event, correlation_id)

        @self.router.register("checkout.session.completed")
        async def handle_session_completed(event: dict, correlation_id: str):
            return await self._on_session_event(event, correlation_id)

        @self.router.register("checkout.session.async_payment_succeeded")
        async def handle_async_succeeded(event: dict, correlation_id: str):
            return await self._on_session_event(event, correlation_id)

        @self.router.register("checkout.session.async_payment_failed")
        async def handle_async_failed(event: dict, correlation_id: str):
            return await self._on_session_event(event, correlation_id)

    async def _on_intent_event(self, event: dict, correlation_id: str) -> Optional[ReconcileResult]:
        intent = event["data"]["object"]
        order_id = order_id_from_metadata(intent)
        if not order_id:
            self._get_logger(correlation_id).warning("webhook_missing_order_id", intent_id=intent.get("id"))
            return None

        signal = signal_from_intent(
            intent_snapshot(intent),
            SignalSource.WEBHOOK,
            event_id=event.get("id"),
            event_type=event.get("type"),
            actor="stripe_webhook",
            correlation_id=correlation_id,
        )
        return await self.reconcile(order_id, signal)

    async def _on_session_event(self, event: dict, correlation_id: str) -> Optional[ReconcileResult]:
        session = event["data"]["object"]
        order_id = order_id_from_metadata(session)
        if not order_id:
            self._get_logger(correlation_id).warning("webhook_missing_order_id", session_id=session.get("id"))
            return None

        snapshot = session_snapshot(session)
        if event.get("type") == "checkout.session.completed" and snapshot.payment_status != "paid":
            # Delayed payment methods report the outcome in a later async_payment_* event
            self._get_logger(correlation_id).info(
                "checkout_awaiting_async_payment",
                order_id=order_id,
                payment_status=snapshot.payment_status,
            )
            return None

        signal = signal_from_session(
            snapshot,
            SignalSource.WEBHOOK,
            event_id=event.get("id"),
            event_type=event.get("type"),
            actor="stripe_webhook",
            correlation_id=correlation_id,
        )
        return await self.reconcile(order_id, signal)

    # =========================================================================
    # CLIENT ADAPTER
    # =========================================================================

    async def confirm_from_client(self, identity: Identity, order_id: str, intent_id: str) -> ReconcileResult:
        """Re-check an intent after the browser payment step; owner only"""
        correlation_id = str(uuid.uuid4())
        log = self._get_logger(correlation_id).bind(order_id=order_id, intent_id=intent_id)

        order = await self.orders.get(order_id)
        if identity.uid not in (order.user_id, order.customer.uid):
            log.warning("client_confirmation_forbidden", uid=identity.uid)
            raise Forbidden("Unauthorized access to order")

        snapshot = await self._fetch("retrieve_intent", self.gateway.retrieve_intent, intent_id)
        if snapshot.order_id and snapshot.order_id != order_id:
            log.warning("client_confirmation_mismatch", intent_order_id=snapshot.order_id)
            raise ValidationError("Payment intent does not belong to this order")

        signal = signal_from_intent(
            snapshot,
            SignalSource.CLIENT,
            actor=identity.uid,
            correlation_id=correlation_id,
        )
        return await self.reconcile(order_id, signal)

    # =========================================================================
    # ADMIN ADAPTERS
    # =========================================================================

    async def admin_retry(self, identity: Identity, order_id: str) -> ReconcileResult:
        """Re-check an order's checkout session and resolve its dead letters on success"""
        self.admin_policy.require_admin(identity)
        correlation_id = str(uuid.uuid4())

        order = await self.orders.get(order_id)
        if not order.checkout_session_id:
            raise ValidationError("No checkout session ID found for this order")

        snapshot = await self._fetch(
            "retrieve_checkout_session",
            self.gateway.retrieve_checkout_session,
            order.checkout_session_id,
        )
        signal = signal_from_session(
            snapshot, SignalSource.ADMIN, actor=identity.uid, correlation_id=correlation_id
        )
        return await self._admin_reconcile(identity, order_id, signal)

    async def resolve_dead_letters(self, identity: Identity, order_id: str) -> ReconcileResult:
        """Re-drive an order that has unprocessed dead-letter records"""
        self.admin_policy.require_admin(identity)
        correlation_id = str(uuid.uuid4())

        pending = await self.dead_letters.list_records(order_id=order_id, processed=False)
        if not pending:
            raise NotFound("Dead letters for order", order_id)

        order = await self.orders.get(order_id)
        if order.checkout_session_id:
            snapshot = await self._fetch(
                "retrieve_checkout_session",
                self.gateway.retrieve_checkout_session,
                order.checkout_session_id,
            )
            signal = signal_from_session(
                snapshot, SignalSource.ADMIN, actor=identity.uid, correlation_id=correlation_id
            )
        else:
            intent_id = next((r.intent_id for r in pending if r.intent_id), None) \
                or order.payment_details.transaction_id
            if not intent_id:
                raise ValidationError("No processor reference recorded for this order")
            snapshot = await self._fetch("retrieve_intent", self.gateway.retrieve_intent, intent_id)
            signal = signal_from_intent(
                snapshot, SignalSource.ADMIN, actor=identity.uid, correlation_id=correlation_id
            )

        return await self._admin_reconcile(identity, order_id, signal)

    async def _admin_reconcile(self, identity: Identity, order_id: str, signal: PaymentSignal) -> ReconcileResult:
        result = await self.reconcile(order_id, signal)
        if not result.success:
            return result

        resolved = await self.dead_letters.mark_processed(order_id, identity.uid)
        if resolved:
            await self._emit_audit(
                AuditEventType.DEAD_LETTERS_RESOLVED,
                order_id,
                signal.correlation_id,
                actor=identity.uid,
                metadata={"resolved": resolved},
            )
            self._get_logger(signal.correlation_id).info(
                "dead_letters_resolved", order_id=order_id, resolved=resolved, admin_uid=identity.uid
            )
        return result.model_copy(update={"resolved_dead_letters": resolved})
