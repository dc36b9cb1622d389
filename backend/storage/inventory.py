"""
Inventory
=========
Product stock levels and the adjuster that decrements them once an order's
payment is confirmed.

Decrements read the current count, floor the result at zero and write it
back. Two orders paid concurrently for the same product can both read the
same count; the later write wins and stock may be over-sold. Stock never
goes negative.

pip install asyncpg pydantic structlog
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Iterable, Optional

import structlog
from pydantic import BaseModel, Field

from config import settings
from database import Database
from payments.errors import NotFound
from schemas.orders import OrderItem


# =============================================================================
# MODELS
# =============================================================================

class ProductStock(BaseModel):
    product_id: str
    name: str = ""
    inventory: Optional[int] = None  # None: no explicit count recorded


class StockRequest(BaseModel):
    product_id: str
    quantity: int = Field(default=1, gt=0)


class Availability(BaseModel):
    product_id: str
    requested_quantity: int
    available: bool
    available_quantity: int
    message: str


class InventoryAdjustment(BaseModel):
    product_id: str
    quantity: int
    before: int
    after: int


# =============================================================================
# REPOSITORIES
# =============================================================================

class IInventoryRepository(ABC):
    """Stock persistence interface"""

    @abstractmethod
    async def get(self, product_id: str) -> Optional[ProductStock]:
        """None when the product does not exist"""
        pass

    @abstractmethod
    async def set_inventory(self, product_id: str, count: int) -> None:
        pass

    @abstractmethod
    async def upsert(self, product: ProductStock) -> ProductStock:
        pass


class InMemoryInventoryRepository(IInventoryRepository):

    def __init__(self, products: Iterable[ProductStock] = ()):
        self._products: dict[str, ProductStock] = {p.product_id: p for p in products}
        self._lock = asyncio.Lock()

    async def get(self, product_id: str) -> Optional[ProductStock]:
        async with self._lock:
            return self._products.get(product_id)

    async def set_inventory(self, product_id: str, count: int) -> None:
        async with self._lock:
            product = self._products.get(product_id)
            if product is None:
                raise NotFound("Product", product_id)
            self._products[product_id] = product.model_copy(update={"inventory": count})

    async def upsert(self, product: ProductStock) -> ProductStock:
        async with self._lock:
            self._products[product.product_id] = product
            return product


class PostgresInventoryRepository(IInventoryRepository):

    def __init__(self, db=Database):
        self.db = db

    async def get(self, product_id: str) -> Optional[ProductStock]:
        row = await self.db.fetch_one(
            "SELECT id, name, inventory FROM products WHERE id = $1", product_id
        )
        if row is None:
            return None
        return ProductStock(product_id=row["id"], name=row["name"], inventory=row["inventory"])

    async def set_inventory(self, product_id: str, count: int) -> None:
        result = await self.db.execute(
            "UPDATE products SET inventory = $2, updated_at = NOW() WHERE id = $1",
            product_id,
            count,
        )
        if result != "UPDATE 1":
            raise NotFound("Product", product_id)

    async def upsert(self, product: ProductStock) -> ProductStock:
        await self.db.execute(
            """
            INSERT INTO products (id, name, inventory) VALUES ($1, $2, $3)
            ON CONFLICT (id) DO UPDATE
            SET name = EXCLUDED.name, inventory = EXCLUDED.inventory, updated_at = NOW()
            """,
            product.product_id,
            product.name,
            product.inventory,
        )
        return product


# =============================================================================
# ADJUSTER
# =============================================================================

class InventoryAdjuster:
    """Applies paid orders to stock and answers availability queries"""

    def __init__(self, repo: Optional[IInventoryRepository] = None, default_stock: int = None):
        self.repo = repo or InMemoryInventoryRepository()
        self.default_stock = settings.DEFAULT_STOCK if default_stock is None else default_stock
        self._logger = structlog.get_logger().bind(component="inventory")

    def _current(self, product: ProductStock) -> int:
        return self.default_stock if product.inventory is None else product.inventory

    async def decrement_for_order(
        self,
        items: Iterable[OrderItem],
        correlation_id: str = None,
    ) -> list[InventoryAdjustment]:
        """Decrement stock for each item; one item's failure does not stop the rest"""
        log = self._logger.bind(correlation_id=correlation_id)
        adjustments = []

        for item in items:
            try:
                product = await self.repo.get(item.product_id)
                if product is None:
                    log.warning("inventory_product_missing", product_id=item.product_id)
                    continue

                before = self._current(product)
                after = max(0, before - item.quantity)
                await self.repo.set_inventory(item.product_id, after)

                adjustments.append(InventoryAdjustment(
                    product_id=item.product_id,
                    quantity=item.quantity,
                    before=before,
                    after=after,
                ))
                log.info("inventory_adjusted",
                         product_id=item.product_id,
                         quantity=item.quantity,
                         before=before,
                         after=after)

            except Exception as e:
                log.error("inventory_adjust_failed",
                          product_id=item.product_id,
                          quantity=item.quantity,
                          error=str(e),
                          error_type=type(e).__name__)

        return adjustments

    async def check_availability(self, requests: Iterable[StockRequest]) -> list[Availability]:
        """Read-only stock check used before an order is created"""
        results = []
        for request in requests:
            product = await self.repo.get(request.product_id)
            if product is None:
                results.append(Availability(
                    product_id=request.product_id,
                    requested_quantity=request.quantity,
                    available=False,
                    available_quantity=0,
                    message="Product not found",
                ))
                continue

            current = self._current(product)
            available = current >= request.quantity
            results.append(Availability(
                product_id=request.product_id,
                requested_quantity=request.quantity,
                available=available,
                available_quantity=current,
                message="In stock" if available else f"Only {current} available",
            ))
        return results
