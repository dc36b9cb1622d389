"""Append-only audit trail of applied order and payment changes."""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict

from database import Database
from schemas.payments import AuditLogEntry


class IAuditLog(ABC):

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        pass

    @abstractmethod
    async def get_by_entity(self, entity_id: str) -> list[AuditLogEntry]:
        pass


class InMemoryAuditLog(IAuditLog):
    """Append-only audit log"""

    def __init__(self):
        self._logs: list[AuditLogEntry] = []
        self._by_correlation: dict[str, list[AuditLogEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._lock:
            self._logs.append(entry)
            self._by_correlation[entry.correlation_id].append(entry)

    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        async with self._lock:
            return list(self._by_correlation.get(correlation_id, []))

    async def get_by_entity(self, entity_id: str) -> list[AuditLogEntry]:
        async with self._lock:
            return [e for e in self._logs if e.entity_id == entity_id]


class PostgresAuditLog(IAuditLog):

    def __init__(self, db=Database):
        self.db = db

    async def append(self, entry: AuditLogEntry) -> None:
        await self.db.execute(
            """
            INSERT INTO audit_log (id, correlation_id, entity_id, entry, created_at)
            VALUES ($1, $2, $3, $4::jsonb, $5)
            """,
            entry.log_id,
            entry.correlation_id,
            entry.entity_id,
            entry.model_dump_json(),
            entry.timestamp,
        )

    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        rows = await self.db.fetch_all(
            "SELECT entry FROM audit_log WHERE correlation_id = $1 ORDER BY created_at",
            correlation_id,
        )
        return [AuditLogEntry.model_validate_json(row["entry"]) for row in rows]

    async def get_by_entity(self, entity_id: str) -> list[AuditLogEntry]:
        rows = await self.db.fetch_all(
            "SELECT entry FROM audit_log WHERE entity_id = $1 ORDER BY created_at",
            entity_id,
        )
        return [AuditLogEntry.model_validate_json(row["entry"]) for row in rows]
