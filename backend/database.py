"""
Database Module
===============
Async PostgreSQL pool shared by the Postgres-backed stores.

This module provides:
- AsyncPG connection pool for PostgreSQL
- Idempotent schema migrations (orders, products, failed payment updates,
  audit log)
- Translation of driver failures into StorageUnavailable

pip install asyncpg
"""

import asyncio
from contextlib import asynccontextmanager
from typing import List, Optional

import asyncpg
import structlog

from config import settings
from payments.errors import StorageUnavailable

# Configure logger
logger = structlog.get_logger().bind(component="database")


# =============================================================================
# CONNECTION POOL
# =============================================================================

class Database:
    """Async database connection pool manager"""

    _pool: Optional[asyncpg.Pool] = None
    _initialized: bool = False

    @classmethod
    async def initialize(cls, dsn: str = None):
        """Initialize the connection pool"""
        if cls._initialized:
            return

        try:
            cls._pool = await asyncpg.create_pool(
                dsn or settings.DATABASE_URL,
                min_size=settings.DB_MIN_POOL_SIZE,
                max_size=settings.DB_MAX_POOL_SIZE,
            )
            cls._initialized = True
            logger.info("database_pool_initialized")

            await cls._run_migrations()

        except (asyncpg.PostgresError, OSError) as e:
            logger.error("database_init_failed", error=str(e))
            raise

    @classmethod
    async def close(cls):
        """Close the connection pool"""
        if cls._pool:
            await cls._pool.close()
            cls._pool = None
            cls._initialized = False
            logger.info("database_pool_closed")

    @classmethod
    @asynccontextmanager
    async def acquire(cls):
        """Acquire a connection from the pool"""
        if not cls._pool:
            await cls.initialize()

        async with cls._pool.acquire() as conn:
            yield conn

    @classmethod
    async def execute(cls, query: str, *args) -> str:
        async with storage_errors("execute"):
            async with cls.acquire() as conn:
                return await conn.execute(query, *args)

    @classmethod
    async def fetch_one(cls, query: str, *args) -> Optional[asyncpg.Record]:
        async with storage_errors("fetch_one"):
            async with cls.acquire() as conn:
                return await conn.fetchrow(query, *args)

    @classmethod
    async def fetch_all(cls, query: str, *args) -> List[asyncpg.Record]:
        async with storage_errors("fetch_all"):
            async with cls.acquire() as conn:
                return await conn.fetch(query, *args)

    @classmethod
    async def _run_migrations(cls):
        """Run database migrations"""
        migrations = [
            # Orders: one JSONB document per order
            """
            CREATE TABLE IF NOT EXISTS orders (
                id TEXT PRIMARY KEY,
                order_number TEXT UNIQUE NOT NULL,
                user_id TEXT NOT NULL,
                document JSONB NOT NULL,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_orders_user ON orders(user_id)",
            "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders((document->>'status'))",

            # Products: inventory is NULL when no explicit count was ever set
            """
            CREATE TABLE IF NOT EXISTS products (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL DEFAULT '',
                inventory INTEGER,
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,

            # Dead-letter ledger
            """
            CREATE TABLE IF NOT EXISTS failed_payment_updates (
                id TEXT PRIMARY KEY,
                order_id TEXT NOT NULL,
                record JSONB NOT NULL,
                processed BOOLEAN NOT NULL DEFAULT FALSE,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                processed_at TIMESTAMPTZ,
                processed_by TEXT
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_failed_payment_updates_order
            ON failed_payment_updates(order_id, processed)
            """,

            # Audit log
            """
            CREATE TABLE IF NOT EXISTS audit_log (
                id TEXT PRIMARY KEY,
                correlation_id TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                entry JSONB NOT NULL,
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_audit_log_correlation ON audit_log(correlation_id)",
            "CREATE INDEX IF NOT EXISTS idx_audit_log_entity ON audit_log(entity_id)",
        ]

        async with cls.acquire() as conn:
            for migration in migrations:
                await conn.execute(migration)

        logger.info("database_migrations_completed", count=len(migrations))


@asynccontextmanager
async def storage_errors(operation: str):
    """Re-raise driver and connection failures as StorageUnavailable"""
    try:
        yield
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
        logger.warning("storage_operation_failed", operation=operation, error=str(e))
        raise StorageUnavailable(f"{operation} failed: {e}") from e
