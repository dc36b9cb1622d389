"""
Dead-Letter Ledger
==================
Payment updates that were confirmed by the processor but could not be
persisted after every retry attempt failed. Records stay until an admin resolves
the order.

pip install asyncpg pydantic
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

from database import Database
from schemas.orders import utcnow
from schemas.payments import DeadLetterRecord, DeadLetterStats


class IDeadLetterLedger(ABC):
    """Dead-letter persistence interface"""

    @abstractmethod
    async def record(self, entry: DeadLetterRecord) -> DeadLetterRecord:
        pass

    @abstractmethod
    async def list_records(
        self,
        order_id: Optional[str] = None,
        processed: Optional[bool] = None,
        limit: int = 100,
    ) -> list[DeadLetterRecord]:
        pass

    @abstractmethod
    async def mark_processed(self, order_id: str, resolver: str) -> int:
        """Mark every unprocessed record of the order; returns how many changed"""
        pass

    @abstractmethod
    async def stats(self) -> DeadLetterStats:
        pass


class InMemoryDeadLetterLedger(IDeadLetterLedger):

    def __init__(self):
        self._records: dict[str, DeadLetterRecord] = {}
        self._lock = asyncio.Lock()

    async def record(self, entry: DeadLetterRecord) -> DeadLetterRecord:
        async with self._lock:
            self._records[entry.record_id] = entry
            return entry

    async def list_records(self, order_id=None, processed=None, limit=100) -> list[DeadLetterRecord]:
        async with self._lock:
            records = [
                r for r in self._records.values()
                if (order_id is None or r.order_id == order_id)
                and (processed is None or r.processed == processed)
            ]
            records.sort(key=lambda r: r.created_at, reverse=True)
            return records[:limit]

    async def mark_processed(self, order_id: str, resolver: str) -> int:
        async with self._lock:
            now = utcnow()
            count = 0
            for record_id, r in self._records.items():
                if r.order_id == order_id and not r.processed:
                    self._records[record_id] = r.model_copy(update={
                        "processed": True,
                        "processed_at": now,
                        "processed_by": resolver,
                    })
                    count += 1
            return count

    async def stats(self) -> DeadLetterStats:
        async with self._lock:
            processed = sum(1 for r in self._records.values() if r.processed)
            return DeadLetterStats(
                total=len(self._records),
                pending=len(self._records) - processed,
                processed=processed,
            )


class PostgresDeadLetterLedger(IDeadLetterLedger):
    """failed_payment_updates table"""

    def __init__(self, db=Database):
        self.db = db

    async def record(self, entry: DeadLetterRecord) -> DeadLetterRecord:
        await self.db.execute(
            """
            INSERT INTO failed_payment_updates (id, order_id, record, processed, created_at)
            VALUES ($1, $2, $3::jsonb, $4, $5)
            """,
            entry.record_id,
            entry.order_id,
            entry.model_dump_json(),
            entry.processed,
            entry.created_at,
        )
        return entry

    @staticmethod
    def _from_row(row) -> DeadLetterRecord:
        record = DeadLetterRecord.model_validate_json(row["record"])
        return record.model_copy(update={
            "processed": row["processed"],
            "processed_at": row["processed_at"],
            "processed_by": row["processed_by"],
        })

    async def list_records(self, order_id=None, processed=None, limit=100) -> list[DeadLetterRecord]:
        rows = await self.db.fetch_all(
            """
            SELECT record, processed, processed_at, processed_by
            FROM failed_payment_updates
            WHERE ($1::text IS NULL OR order_id = $1)
              AND ($2::boolean IS NULL OR processed = $2)
            ORDER BY created_at DESC
            LIMIT $3
            """,
            order_id,
            processed,
            limit,
        )
        return [self._from_row(row) for row in rows]

    async def mark_processed(self, order_id: str, resolver: str) -> int:
        result = await self.db.execute(
            """
            UPDATE failed_payment_updates
            SET processed = TRUE, processed_at = NOW(), processed_by = $2
            WHERE order_id = $1 AND processed = FALSE
            """,
            order_id,
            resolver,
        )
        # asyncpg status string: "UPDATE <n>"
        return int(result.split()[-1])

    async def stats(self) -> DeadLetterStats:
        row = await self.db.fetch_one(
            """
            SELECT COUNT(*) AS total,
                   COUNT(*) FILTER (WHERE NOT processed) AS pending,
                   COUNT(*) FILTER (WHERE processed) AS processed
            FROM failed_payment_updates
            """
        )
        return DeadLetterStats(total=row["total"], pending=row["pending"], processed=row["processed"])
