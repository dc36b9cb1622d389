import asyncio
from decimal import Decimal

import pytest

from payments.errors import (
    Forbidden,
    NotFound,
    ProcessorUnavailable,
    SignatureInvalid,
    ValidationError,
)
from payments.reconciliation import ReconciliationEngine
from schemas.orders import FulfillmentEdit, OrderItem, OrderStatus, PaymentStatus
from schemas.payments import (
    AuditEventType,
    CheckoutSessionSnapshot,
    IntentSnapshot,
    PaymentSignal,
    ProcessorOutcome,
    ReconcileOutcome,
    SignalSource,
)
from services.identity import AdminPolicy
from services.notifications import InMemoryNotificationSink
from storage.inventory import InventoryAdjuster
from tests.fakes import (
    ADMIN,
    CUSTOMER,
    OTHER_CUSTOMER,
    FailingInventoryRepository,
    YieldingOrderStore,
    intent_event,
    make_order,
    run,
    session_event,
    sign_payload,
)


def webhook(engine, payload, secret=None):
    signature = sign_payload(payload) if secret is None else sign_payload(payload, secret=secret)
    return run(engine.handle_webhook(payload.encode("utf-8"), signature))


def succeeded_intent(order_id="ORD-1", intent_id="pi_1", status="succeeded"):
    amount = Decimal("1000.00")
    return IntentSnapshot(
        intent_id=intent_id,
        status=status,
        amount=amount,
        amount_received=amount if status == "succeeded" else Decimal("0"),
        currency="bgn",
        order_id=order_id,
    )


def paid_session(session_id="cs_1", payment_status="paid"):
    return CheckoutSessionSnapshot(
        session_id=session_id,
        payment_status=payment_status,
        status="complete",
        amount_total=Decimal("1000.00"),
        currency="bgn",
        payment_intent="pi_1",
        payment_method_types=["card"],
        order_id="ORD-1",
    )


def stock(repo, product_id):
    return run(repo.get(product_id)).inventory


class TestWebhookSuccess:

    def test_completes_order_decrements_stock_and_notifies(self, engine, orders, order, inventory_repo, sink):
        response = webhook(engine, intent_event("ORD-1"))

        assert response == {"received": True, "event_id": "evt_1", "status": "completed"}
        stored = run(orders.get("ORD-1"))
        assert stored.status == OrderStatus.PROCESSING
        assert stored.payment_details.status == PaymentStatus.COMPLETED
        assert stored.payment_details.transaction_id == "pi_1"
        assert stored.amount_paid == Decimal("1000.00")
        assert stored.payment_completed_at is not None
        assert stock(inventory_repo, "p1") == 4
        assert stock(inventory_repo, "p2") == 8
        assert len(sink.sent) == 1
        record, data = sink.sent[0]
        assert record.recipient_email == "ivan@example.com"
        assert data.order_total == Decimal("1000.00")

    def test_duplicate_webhook_is_idempotent(self, engine, order, inventory_repo, sink):
        webhook(engine, intent_event("ORD-1"))
        response = webhook(engine, intent_event("ORD-1"))

        assert response["status"] == "already_completed"
        assert stock(inventory_repo, "p1") == 4
        assert stock(inventory_repo, "p2") == 8
        assert len(sink.sent) == 1

    def test_failure_after_completion_does_not_regress(self, engine, orders, order):
        webhook(engine, intent_event("ORD-1"))
        response = webhook(engine, intent_event(
            "ORD-1",
            event_type="payment_intent.payment_failed",
            status="requires_payment_method",
            error_message="Card declined",
            event_id="evt_2",
        ))

        assert response["status"] == "already_completed"
        assert run(orders.get("ORD-1")).payment_details.status == PaymentStatus.COMPLETED

    def test_session_completed_event_completes_order(self, engine, orders, order):
        response = webhook(engine, session_event("ORD-1"))

        assert response["status"] == "completed"
        stored = run(orders.get("ORD-1"))
        assert stored.is_paid
        assert stored.payment_details.transaction_id == "pi_from_session"

    def test_async_payment_succeeded_completes_order(self, engine, orders, order):
        response = webhook(engine, session_event("ORD-1", event_type="checkout.session.async_payment_succeeded"))

        assert response["status"] == "completed"
        assert run(orders.get("ORD-1")).is_paid

    def test_audit_trail_uses_event_id_as_correlation(self, engine, order, audit_log):
        webhook(engine, intent_event("ORD-1", event_id="evt_audit"))

        entries = run(audit_log.get_by_correlation_id("evt_audit"))
        assert [e.event_type for e in entries] == [AuditEventType.PAYMENT_CONFIRMED]
        assert entries[0].actor == "stripe_webhook"
        assert entries[0].new_state["payment_status"] == "completed"


class TestWebhookNonSuccess:

    def test_failed_intent_marks_payment_failed(self, engine, orders, order, inventory_repo, sink):
        response = webhook(engine, intent_event(
            "ORD-1",
            event_type="payment_intent.payment_failed",
            status="requires_payment_method",
            error_message="Card declined",
        ))

        assert response["status"] == "not_completed"
        stored = run(orders.get("ORD-1"))
        assert stored.status == OrderStatus.PENDING
        assert stored.payment_details.status == PaymentStatus.FAILED
        assert stored.payment_details.last_error == "Card declined"
        assert stock(inventory_repo, "p1") == 5
        assert stock(inventory_repo, "p2") is None
        assert sink.sent == []

    def test_unpaid_async_session_marks_payment_failed(self, engine, orders, order):
        response = webhook(engine, session_event(
            "ORD-1",
            event_type="checkout.session.async_payment_failed",
            payment_status="unpaid",
        ))

        assert response["status"] == "not_completed"
        stored = run(orders.get("ORD-1"))
        assert stored.payment_details.status == PaymentStatus.FAILED
        assert stored.payment_details.last_error == "Checkout session is unpaid"

    def test_completed_but_unpaid_session_waits_for_async_event(self, engine, orders, order):
        response = webhook(engine, session_event("ORD-1", payment_status="unpaid"))

        assert response["status"] == "ignored"
        assert run(orders.get("ORD-1")).payment_details.status == PaymentStatus.PENDING
        assert orders.transition_calls == 0

    def test_unknown_event_type_is_acknowledged(self, engine, order):
        response = webhook(engine, intent_event("ORD-1", event_type="charge.refunded"))

        assert response == {"received": True, "event_id": "evt_1", "status": "ignored"}

    def test_missing_order_id_is_ignored(self, engine, orders, order):
        response = webhook(engine, intent_event(None))

        assert response["status"] == "ignored"
        assert orders.transition_calls == 0

    def test_unknown_order_is_acknowledged(self, engine):
        response = webhook(engine, intent_event("ORD-MISSING"))

        assert response["status"] == "order_not_found"


class TestWebhookSignature:

    def test_wrong_secret_is_rejected_before_any_write(self, engine, orders, order, audit_log):
        with pytest.raises(SignatureInvalid):
            webhook(engine, intent_event("ORD-1"), secret="whsec_wrong")

        assert orders.transition_calls == 0
        assert run(orders.get("ORD-1")).payment_details.status == PaymentStatus.PENDING
        assert run(audit_log.get_by_entity("ORD-1")) == []

    def test_missing_signature_is_rejected(self, engine, order):
        with pytest.raises(SignatureInvalid):
            run(engine.handle_webhook(intent_event("ORD-1").encode("utf-8"), ""))

    def test_tampered_payload_is_rejected(self, engine, orders, order):
        signature = sign_payload(intent_event("ORD-1", amount=100))
        with pytest.raises(SignatureInvalid):
            run(engine.handle_webhook(intent_event("ORD-1").encode("utf-8"), signature))

        assert orders.transition_calls == 0

    def test_non_utf8_payload_is_rejected(self, engine, orders, order):
        with pytest.raises(SignatureInvalid):
            run(engine.handle_webhook(b"\xff\xfe{}", "t=1,v1=abc"))

        assert orders.transition_calls == 0


class TestRetryAndDeadLetter:

    def test_transient_failures_are_retried_with_backoff(self, engine, orders, order, ledger, sleeps):
        orders.failures = 2

        response = webhook(engine, intent_event("ORD-1"))

        assert response["status"] == "completed"
        assert orders.transition_calls == 3
        assert sleeps == [1.0, 2.0]
        assert run(ledger.list_records()) == []

    def test_exhausted_retries_write_one_dead_letter(self, engine, orders, order, ledger, sleeps, inventory_repo, sink):
        orders.failures = 3

        response = webhook(engine, intent_event("ORD-1"))

        assert response["status"] == "dead_lettered"
        assert orders.transition_calls == 3
        assert sleeps == [1.0, 2.0]

        records = run(ledger.list_records())
        assert len(records) == 1
        record = records[0]
        assert record.order_id == "ORD-1"
        assert record.intent_id == "pi_1"
        assert record.event_id == "evt_1"
        assert record.source == SignalSource.WEBHOOK
        assert record.attempts == 3
        assert record.error["type"] == "StorageUnavailable"
        assert not record.processed

        stored = run(orders.get("ORD-1"))
        assert stored == order
        assert stock(inventory_repo, "p1") == 5
        assert sink.sent == []

    def test_dead_lettered_client_confirmation_reports_result(self, engine, orders, order, gateway):
        gateway.intents["pi_1"] = succeeded_intent()
        orders.failures = 3

        result = run(engine.confirm_from_client(CUSTOMER, "ORD-1", "pi_1"))

        assert result.outcome == ReconcileOutcome.DEAD_LETTERED
        assert result.dead_letter_id is not None
        assert not result.success
        assert result.payment_status == PaymentStatus.PENDING


class TestConcurrentSignals:

    def test_webhook_and_client_race_applies_effects_once(self, inventory_repo, gateway, sink, ledger, audit_log):
        orders = YieldingOrderStore()
        run(orders.create(make_order()))
        gateway.intents["pi_1"] = succeeded_intent()
        engine = ReconciliationEngine(
            orders=orders,
            inventory=InventoryAdjuster(inventory_repo),
            gateway=gateway,
            dead_letters=ledger,
            notifications=sink,
            audit_log=audit_log,
            admin_policy=AdminPolicy([ADMIN.uid]),
        )
        payload = intent_event("ORD-1")

        async def both():
            return await asyncio.gather(
                engine.handle_webhook(payload.encode("utf-8"), sign_payload(payload)),
                engine.confirm_from_client(CUSTOMER, "ORD-1", "pi_1"),
            )

        webhook_response, client_result = run(both())

        outcomes = sorted([webhook_response["status"], client_result.outcome.value])
        assert outcomes == ["already_completed", "completed"]
        assert stock(inventory_repo, "p1") == 4
        assert stock(inventory_repo, "p2") == 8
        assert len(sink.sent) == 1


class TestClientConfirmation:

    def test_succeeded_intent_completes_order(self, engine, orders, order, gateway):
        gateway.intents["pi_1"] = succeeded_intent()

        result = run(engine.confirm_from_client(CUSTOMER, "ORD-1", "pi_1"))

        assert result.outcome == ReconcileOutcome.COMPLETED
        assert result.success
        assert run(orders.get("ORD-1")).is_paid

    def test_requires_action_moves_payment_to_processing(self, engine, orders, order, gateway, inventory_repo):
        gateway.intents["pi_1"] = succeeded_intent(status="requires_action")

        result = run(engine.confirm_from_client(CUSTOMER, "ORD-1", "pi_1"))

        assert result.outcome == ReconcileOutcome.PENDING_ACTION
        stored = run(orders.get("ORD-1"))
        assert stored.payment_details.status == PaymentStatus.PROCESSING
        assert stored.payment_details.last_action == "requires_action"
        assert stock(inventory_repo, "p1") == 5

    def test_other_customer_is_forbidden(self, engine, order, gateway):
        gateway.intents["pi_1"] = succeeded_intent()

        with pytest.raises(Forbidden):
            run(engine.confirm_from_client(OTHER_CUSTOMER, "ORD-1", "pi_1"))
        assert gateway.fetch_calls == 0

    def test_intent_for_another_order_is_rejected(self, engine, orders, order, gateway):
        gateway.intents["pi_9"] = succeeded_intent(order_id="ORD-9", intent_id="pi_9")

        with pytest.raises(ValidationError):
            run(engine.confirm_from_client(CUSTOMER, "ORD-1", "pi_9"))
        assert not run(orders.get("ORD-1")).is_paid

    def test_processor_outage_is_retried_once(self, engine, order, gateway, sleeps):
        gateway.intents["pi_1"] = succeeded_intent()
        gateway.unavailable_calls = 1

        result = run(engine.confirm_from_client(CUSTOMER, "ORD-1", "pi_1"))

        assert result.outcome == ReconcileOutcome.COMPLETED
        assert gateway.fetch_calls == 2
        assert sleeps == [1.0]

    def test_persistent_processor_outage_propagates(self, engine, orders, order, gateway):
        gateway.intents["pi_1"] = succeeded_intent()
        gateway.unavailable_calls = 2

        with pytest.raises(ProcessorUnavailable):
            run(engine.confirm_from_client(CUSTOMER, "ORD-1", "pi_1"))
        assert orders.transition_calls == 0

    def test_unknown_order_raises_not_found(self, engine, gateway):
        with pytest.raises(NotFound):
            run(engine.confirm_from_client(CUSTOMER, "ORD-MISSING", "pi_1"))


class TestAdminRetry:

    @pytest.fixture
    def session_order(self, orders):
        order = make_order(checkout_session_id="cs_1")
        run(orders.create(order))
        return order

    def test_retry_after_dead_letter_resolves_records(self, engine, orders, session_order, gateway, ledger, inventory_repo):
        orders.failures = 3
        assert webhook(engine, session_event("ORD-1"))["status"] == "dead_lettered"
        gateway.sessions["cs_1"] = paid_session()

        result = run(engine.admin_retry(ADMIN, "ORD-1"))

        assert result.outcome == ReconcileOutcome.COMPLETED
        assert result.resolved_dead_letters == 1
        assert run(orders.get("ORD-1")).is_paid
        assert stock(inventory_repo, "p1") == 4

        records = run(ledger.list_records(order_id="ORD-1"))
        assert [r.processed for r in records] == [True]
        assert records[0].processed_by == ADMIN.uid
        assert run(ledger.stats()).pending == 0

    def test_unpaid_session_marks_payment_failed(self, engine, orders, session_order, gateway):
        gateway.sessions["cs_1"] = paid_session(payment_status="unpaid")

        result = run(engine.admin_retry(ADMIN, "ORD-1"))

        assert result.outcome == ReconcileOutcome.NOT_COMPLETED
        assert result.resolved_dead_letters == 0
        assert run(orders.get("ORD-1")).payment_details.status == PaymentStatus.FAILED

    def test_already_paid_order_still_resolves_dead_letters(self, engine, orders, session_order, gateway, ledger, sink):
        orders.failures = 3
        webhook(engine, session_event("ORD-1"))
        webhook(engine, session_event("ORD-1", event_id="evt_cs_2"))
        gateway.sessions["cs_1"] = paid_session()

        result = run(engine.admin_retry(ADMIN, "ORD-1"))

        assert result.outcome == ReconcileOutcome.ALREADY_COMPLETED
        assert result.resolved_dead_letters == 1
        assert len(sink.sent) == 1

    def test_non_admin_is_forbidden(self, engine, session_order, gateway):
        with pytest.raises(Forbidden):
            run(engine.admin_retry(CUSTOMER, "ORD-1"))
        assert gateway.fetch_calls == 0

    def test_order_without_session_is_rejected(self, engine, order):
        with pytest.raises(ValidationError):
            run(engine.admin_retry(ADMIN, "ORD-1"))


class TestResolveDeadLetters:

    def test_no_pending_records_raises_not_found(self, engine, order):
        with pytest.raises(NotFound):
            run(engine.resolve_dead_letters(ADMIN, "ORD-1"))

    def test_uses_intent_recorded_in_dead_letter(self, engine, orders, order, gateway, ledger):
        orders.failures = 3
        webhook(engine, intent_event("ORD-1"))
        gateway.intents["pi_1"] = succeeded_intent()

        result = run(engine.resolve_dead_letters(ADMIN, "ORD-1"))

        assert result.outcome == ReconcileOutcome.COMPLETED
        assert result.resolved_dead_letters == 1
        assert run(ledger.list_records(processed=False)) == []

    def test_failed_recheck_leaves_records_pending(self, engine, orders, order, gateway, ledger):
        orders.failures = 3
        webhook(engine, intent_event("ORD-1"))
        gateway.intents["pi_1"] = succeeded_intent(status="canceled")

        result = run(engine.resolve_dead_letters(ADMIN, "ORD-1"))

        assert result.outcome == ReconcileOutcome.NOT_COMPLETED
        assert len(run(ledger.list_records(processed=False))) == 1


class TestSideEffects:

    def test_stock_is_floored_at_zero(self, engine, orders, inventory_repo):
        items = [OrderItem(product_id="p1", name="Helmet", unit_price=Decimal("100.00"), quantity=7)]
        run(orders.create(make_order(items=items)))

        webhook(engine, intent_event("ORD-1", amount=70000))

        assert stock(inventory_repo, "p1") == 0

    def test_missing_product_is_skipped(self, engine, orders, inventory_repo):
        items = [
            OrderItem(product_id="gone", name="Old jacket", unit_price=Decimal("500.00"), quantity=1),
            OrderItem(product_id="p1", name="Helmet", unit_price=Decimal("500.00"), quantity=1),
        ]
        run(orders.create(make_order(items=items)))

        assert webhook(engine, intent_event("ORD-1"))["status"] == "completed"
        assert stock(inventory_repo, "p1") == 4

    def test_inventory_failure_does_not_stop_other_items(self, orders, order, gateway, ledger, audit_log, products, sink):
        repo = FailingInventoryRepository(products, failing=("p1",))
        engine = ReconciliationEngine(
            orders=orders,
            inventory=InventoryAdjuster(repo),
            gateway=gateway,
            dead_letters=ledger,
            notifications=sink,
            audit_log=audit_log,
        )

        response = webhook(engine, intent_event("ORD-1"))

        assert response["status"] == "completed"
        assert stock(repo, "p1") == 5
        assert stock(repo, "p2") == 8
        assert run(orders.get("ORD-1")).is_paid
        assert len(sink.sent) == 1

    def test_notification_failure_does_not_roll_back(self, orders, order, gateway, ledger, audit_log, inventory_repo):
        engine = ReconciliationEngine(
            orders=orders,
            inventory=InventoryAdjuster(inventory_repo),
            gateway=gateway,
            dead_letters=ledger,
            notifications=InMemoryNotificationSink(fail_with=RuntimeError("smtp down")),
            audit_log=audit_log,
        )

        response = webhook(engine, intent_event("ORD-1"))

        assert response["status"] == "completed"
        assert run(orders.get("ORD-1")).is_paid
        assert stock(inventory_repo, "p1") == 4

    def test_order_without_email_skips_notification(self, engine, orders, sink):
        run(orders.create(make_order(email=None)))

        assert webhook(engine, intent_event("ORD-1"))["status"] == "completed"
        assert sink.sent == []


class TestReconcile:

    def test_signal_amount_defaults_to_order_total(self, engine, orders, order):
        signal = PaymentSignal(source=SignalSource.ADMIN, outcome=ProcessorOutcome.SUCCEEDED)

        result = run(engine.reconcile("ORD-1", signal))

        assert result.outcome == ReconcileOutcome.COMPLETED
        assert result.correlation_id == signal.correlation_id
        assert run(orders.get("ORD-1")).amount_paid == Decimal("1000.00")

    def test_failed_signal_without_detail_uses_generic_error(self, engine, orders, order):
        signal = PaymentSignal(source=SignalSource.ADMIN, outcome=ProcessorOutcome.FAILED)

        run(engine.reconcile("ORD-1", signal))

        assert run(orders.get("ORD-1")).payment_details.last_error == "Payment failed"

    def test_unknown_order_raises_not_found(self, engine):
        signal = PaymentSignal(source=SignalSource.ADMIN, outcome=ProcessorOutcome.SUCCEEDED)

        with pytest.raises(NotFound):
            run(engine.reconcile("ORD-MISSING", signal))

    def test_paid_amount_never_rewrites_the_quote(self, engine, orders, order):
        signal = PaymentSignal(
            source=SignalSource.WEBHOOK,
            outcome=ProcessorOutcome.SUCCEEDED,
            amount=Decimal("999.99"),
        )

        run(engine.reconcile("ORD-1", signal))

        stored = run(orders.get("ORD-1"))
        assert stored.amount_paid == Decimal("999.99")
        assert stored.total_amount == order.total_amount
        assert stored.subtotal == order.subtotal
        assert stored.items == order.items

    def test_late_payment_does_not_revive_cancelled_order(self, engine, orders, order, inventory_repo, sink):
        run(orders.apply_fulfillment_edit("ORD-1", FulfillmentEdit(status=OrderStatus.CANCELLED)))
        signal = PaymentSignal(source=SignalSource.WEBHOOK, outcome=ProcessorOutcome.SUCCEEDED)

        result = run(engine.reconcile("ORD-1", signal))

        stored = run(orders.get("ORD-1"))
        assert result.outcome == ReconcileOutcome.COMPLETED
        assert stored.status == OrderStatus.CANCELLED
        assert stored.payment_details.status == PaymentStatus.COMPLETED
        assert stock(inventory_repo, "p1") == 5
        assert sink.sent == []

    def test_payment_keeps_fulfillment_progress(self, engine, orders, order, inventory_repo):
        run(orders.apply_fulfillment_edit("ORD-1", FulfillmentEdit(status=OrderStatus.PROCESSING)))
        run(orders.apply_fulfillment_edit("ORD-1", FulfillmentEdit(status=OrderStatus.SHIPPED)))
        signal = PaymentSignal(source=SignalSource.WEBHOOK, outcome=ProcessorOutcome.SUCCEEDED)

        run(engine.reconcile("ORD-1", signal))

        assert run(orders.get("ORD-1")).status == OrderStatus.SHIPPED
        assert stock(inventory_repo, "p1") == 4
