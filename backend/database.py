"""
Database Module
===============
Shared asyncpg connection pool and schema migrations.

Tables:
- purchase_intents: pre-payment card content, deleted once fulfilled
- cards: provisioned cards, one per custom_url
- user_plans: latest plan bought by each buyer
- processed_events: delivered-webhook ledger for idempotent fulfillment

pip install asyncpg
"""

from contextlib import asynccontextmanager
from typing import List, Optional

import asyncpg
import structlog

logger = structlog.get_logger(component="database")


MIGRATIONS = [
    """
    CREATE TABLE IF NOT EXISTS purchase_intents (
        id TEXT PRIMARY KEY,
        user_id TEXT,
        plan VARCHAR(20) NOT NULL,
        content JSONB NOT NULL DEFAULT '{}',
        email TEXT NOT NULL,
        custom_url TEXT NOT NULL,
        password TEXT NOT NULL,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        expires_at TIMESTAMPTZ,
        CONSTRAINT purchase_intents_custom_url_key UNIQUE (custom_url)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cards (
        id TEXT PRIMARY KEY,
        custom_url TEXT NOT NULL,
        user_id TEXT,
        plan VARCHAR(20) NOT NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'pending',
        content JSONB NOT NULL DEFAULT '{}',
        email TEXT,
        password TEXT NOT NULL,
        source_intent_id TEXT,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        expires_at TIMESTAMPTZ,
        activated_at TIMESTAMPTZ,
        notified_at TIMESTAMPTZ,
        CONSTRAINT cards_custom_url_key UNIQUE (custom_url),
        CONSTRAINT cards_source_intent_id_key UNIQUE (source_intent_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_plans (
        user_id TEXT PRIMARY KEY,
        package_type VARCHAR(20) NOT NULL,
        purchase_date TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS processed_events (
        key TEXT PRIMARY KEY,
        status VARCHAR(20) NOT NULL,
        holder TEXT,
        result TEXT,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_cards_user ON cards(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_cards_status ON cards(status)",
]


class Database:
    """Async database connection pool manager"""

    _pool: Optional[asyncpg.Pool] = None
    _initialized: bool = False

    @classmethod
    async def initialize(cls, dsn: str, min_size: int = 1, max_size: int = 10):
        """Create the pool and run migrations. Safe to call twice."""
        if cls._initialized:
            return

        try:
            cls._pool = await asyncpg.create_pool(dsn, min_size=min_size, max_size=max_size)
            cls._initialized = True
            logger.info("pool_initialized", min_size=min_size, max_size=max_size)

            await cls._run_migrations()

        except Exception as e:
            logger.error("pool_initialization_failed", error=str(e))
            raise

    @classmethod
    async def close(cls):
        """Close the connection pool"""
        if cls._pool:
            await cls._pool.close()
            cls._pool = None
            cls._initialized = False
            logger.info("pool_closed")

    @classmethod
    @asynccontextmanager
    async def acquire(cls):
        """Acquire a connection from the pool"""
        if not cls._pool:
            raise RuntimeError("Database not initialized")

        async with cls._pool.acquire() as conn:
            yield conn

    @classmethod
    async def execute(cls, query: str, *args) -> str:
        async with cls.acquire() as conn:
            return await conn.execute(query, *args)

    @classmethod
    async def fetch_one(cls, query: str, *args) -> Optional[asyncpg.Record]:
        async with cls.acquire() as conn:
            return await conn.fetchrow(query, *args)

    @classmethod
    async def fetch_all(cls, query: str, *args) -> List[asyncpg.Record]:
        async with cls.acquire() as conn:
            return await conn.fetch(query, *args)

    @classmethod
    async def _run_migrations(cls):
        async with cls.acquire() as conn:
            for migration in MIGRATIONS:
                try:
                    await conn.execute(migration)
                except asyncpg.DuplicateObjectError as e:
                    logger.warning("migration_skipped", error=str(e))

        logger.info("migrations_complete", count=len(MIGRATIONS))
