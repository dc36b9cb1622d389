"""
Order Store
===========
Durable order records with targeted, field-scoped updates.

Payment transitions and fulfillment edits each touch only the fields they
name, so a payment write and an admin edit racing on the same order never
overwrite one another.

pip install asyncpg pydantic structlog
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Optional

import structlog
from pydantic_core import to_jsonable_python

from database import Database, storage_errors
from payments.errors import NotFound, ValidationError
from schemas.orders import (
    FulfillmentEdit,
    Order,
    OrderStatus,
    PaymentStatus,
    PaymentTransition,
    apply_transition,
    can_transition,
    utcnow,
)


# =============================================================================
# INTERFACE
# =============================================================================

class IOrderStore(ABC):
    """Order persistence interface"""

    @abstractmethod
    async def get(self, order_id: str) -> Order:
        """Load an order; raises NotFound"""
        pass

    @abstractmethod
    async def create(self, order: Order) -> Order:
        pass

    @abstractmethod
    async def apply_payment_transition(self, order_id: str, transition: PaymentTransition) -> Order:
        """Write exactly the fields the transition names.

        No-op when the order's payment is already completed.
        """
        pass

    @abstractmethod
    async def apply_fulfillment_edit(self, order_id: str, edit: FulfillmentEdit) -> Order:
        pass

    @abstractmethod
    async def set_checkout_session(self, order_id: str, session_id: str) -> Order:
        pass

    @abstractmethod
    async def set_intent(self, order_id: str, intent_id: str) -> Order:
        """Record a freshly created intent and mark the payment processing.

        No-op when the order's payment is already completed.
        """
        pass

    @abstractmethod
    async def mark_reminder_sent(self, order_id: str) -> Order:
        pass

    @abstractmethod
    async def list_orders(self, status: Optional[OrderStatus] = None, limit: int = 100) -> list[Order]:
        pass

    @abstractmethod
    async def delete(self, order_id: str) -> bool:
        pass


def _check_fulfillment(order: Order, edit: FulfillmentEdit) -> dict[str, Any]:
    changes = edit.changes()
    target = changes.get("status")
    if target is not None and not can_transition(order.status, target):
        raise ValidationError(
            f"Cannot move order {order.order_id} from {order.status.value} to {target.value}"
        )
    return changes


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class InMemoryOrderStore(IOrderStore):
    """In-memory order store (local runs and tests)"""

    def __init__(self):
        self._orders: dict[str, Order] = {}
        self._lock = asyncio.Lock()

    def _require(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise NotFound("Order", order_id)
        return order

    async def get(self, order_id: str) -> Order:
        async with self._lock:
            return self._require(order_id)

    async def create(self, order: Order) -> Order:
        async with self._lock:
            self._orders[order.order_id] = order
            return order

    async def apply_payment_transition(self, order_id: str, transition: PaymentTransition) -> Order:
        async with self._lock:
            order = apply_transition(self._require(order_id), transition, utcnow())
            self._orders[order_id] = order
            return order

    async def apply_fulfillment_edit(self, order_id: str, edit: FulfillmentEdit) -> Order:
        async with self._lock:
            order = self._require(order_id)
            changes = _check_fulfillment(order, edit)
            order = order.model_copy(update={**changes, "updated_at": utcnow()})
            self._orders[order_id] = order
            return order

    async def _update(self, order_id: str, **fields) -> Order:
        async with self._lock:
            order = self._require(order_id)
            order = order.model_copy(update={**fields, "updated_at": utcnow()})
            self._orders[order_id] = order
            return order

    async def set_checkout_session(self, order_id: str, session_id: str) -> Order:
        return await self._update(order_id, checkout_session_id=session_id)

    async def set_intent(self, order_id: str, intent_id: str) -> Order:
        async with self._lock:
            order = self._require(order_id)
            if order.is_paid:
                return order
            payment = order.payment_details.model_copy(update={
                "transaction_id": intent_id,
                "status": PaymentStatus.PROCESSING,
            })
            order = order.model_copy(update={"payment_details": payment, "updated_at": utcnow()})
            self._orders[order_id] = order
            return order

    async def mark_reminder_sent(self, order_id: str) -> Order:
        return await self._update(order_id, reminder_sent_at=utcnow())

    async def list_orders(self, status: Optional[OrderStatus] = None, limit: int = 100) -> list[Order]:
        async with self._lock:
            orders = [o for o in self._orders.values() if status is None or o.status == status]
            orders.sort(key=lambda o: o.created_at, reverse=True)
            return orders[:limit]

    async def delete(self, order_id: str) -> bool:
        async with self._lock:
            return self._orders.pop(order_id, None) is not None


# =============================================================================
# POSTGRES IMPLEMENTATION
# =============================================================================

_UNPAID = "AND document->'payment_details'->>'status' <> 'completed'"

_START_FULFILLMENT = """
                    || CASE WHEN document->>'status' = 'pending'
                            THEN '{"status": "processing"}'::jsonb
                            ELSE '{}'::jsonb
                       END"""


def _jsonb(fields: dict[str, Any]) -> str:
    return json.dumps(to_jsonable_python(fields))


class PostgresOrderStore(IOrderStore):
    """asyncpg-backed order store; one JSONB document per order"""

    def __init__(self, db=Database):
        self.db = db
        self._logger = structlog.get_logger().bind(component="order_store")

    async def get(self, order_id: str) -> Order:
        row = await self.db.fetch_one("SELECT document FROM orders WHERE id = $1", order_id)
        if row is None:
            raise NotFound("Order", order_id)
        return Order.model_validate_json(row["document"])

    async def create(self, order: Order) -> Order:
        await self.db.execute(
            """
            INSERT INTO orders (id, order_number, user_id, document, created_at, updated_at)
            VALUES ($1, $2, $3, $4::jsonb, $5, $6)
            """,
            order.order_id,
            order.order_number,
            order.user_id,
            order.model_dump_json(),
            order.created_at,
            order.updated_at,
        )
        self._logger.info("order_created", order_id=order.order_id, order_number=order.order_number)
        return order

    async def _merge(
        self,
        order_id: str,
        fields: dict,
        payment: dict,
        guard: str = "",
        start_fulfillment: bool = False,
    ) -> Optional[Order]:
        """Merge top-level and payment_details fields in a single statement"""
        now = utcnow()
        status_move = _START_FULFILLMENT if start_fulfillment else ""
        row = await self.db.fetch_one(
            f"""
            UPDATE orders
            SET document = (document || $2::jsonb)
                    || jsonb_build_object(
                        'payment_details',
                        COALESCE(document->'payment_details', '{{}}'::jsonb) || $3::jsonb
                    ){status_move},
                updated_at = $4
            WHERE id = $1 {guard}
            RETURNING document
            """,
            order_id,
            _jsonb({**fields, "updated_at": now}),
            _jsonb(payment),
            now,
        )
        if row is None:
            return None
        return Order.model_validate_json(row["document"])

    async def apply_payment_transition(self, order_id: str, transition: PaymentTransition) -> Order:
        now = utcnow()
        order = await self._merge(
            order_id,
            transition.order_fields(now),
            transition.payment_fields(now),
            guard=_UNPAID,
            start_fulfillment=transition.starts_fulfillment,
        )
        # Either missing or already completed
        return order or await self.get(order_id)

    async def apply_fulfillment_edit(self, order_id: str, edit: FulfillmentEdit) -> Order:
        async with storage_errors("apply_fulfillment_edit"):
            async with self.db.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        "SELECT document FROM orders WHERE id = $1 FOR UPDATE", order_id
                    )
                    if row is None:
                        raise NotFound("Order", order_id)
                    changes = _check_fulfillment(Order.model_validate_json(row["document"]), edit)
                    now = utcnow()
                    row = await conn.fetchrow(
                        """
                        UPDATE orders SET document = document || $2::jsonb, updated_at = $3
                        WHERE id = $1
                        RETURNING document
                        """,
                        order_id,
                        _jsonb({**changes, "updated_at": now}),
                        now,
                    )
        return Order.model_validate_json(row["document"])

    async def _require_merge(self, order_id: str, fields: dict, payment: dict = None) -> Order:
        order = await self._merge(order_id, fields, payment or {})
        if order is None:
            raise NotFound("Order", order_id)
        return order

    async def set_checkout_session(self, order_id: str, session_id: str) -> Order:
        return await self._require_merge(order_id, {"checkout_session_id": session_id})

    async def set_intent(self, order_id: str, intent_id: str) -> Order:
        order = await self._merge(
            order_id,
            {},
            {"transaction_id": intent_id, "status": PaymentStatus.PROCESSING},
            guard=_UNPAID,
        )
        return order or await self.get(order_id)

    async def mark_reminder_sent(self, order_id: str) -> Order:
        return await self._require_merge(order_id, {"reminder_sent_at": utcnow()})

    async def list_orders(self, status: Optional[OrderStatus] = None, limit: int = 100) -> list[Order]:
        if status is None:
            rows = await self.db.fetch_all(
                "SELECT document FROM orders ORDER BY created_at DESC LIMIT $1", limit
            )
        else:
            rows = await self.db.fetch_all(
                """
                SELECT document FROM orders WHERE document->>'status' = $1
                ORDER BY created_at DESC LIMIT $2
                """,
                status.value,
                limit,
            )
        return [Order.model_validate_json(row["document"]) for row in rows]

    async def delete(self, order_id: str) -> bool:
        result = await self.db.execute("DELETE FROM orders WHERE id = $1", order_id)
        return result == "DELETE 1"
