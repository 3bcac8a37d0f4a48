import asyncpg
from contextlib import asynccontextmanager
from pathlib import Path
from app.config import settings
import logging

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

class DatabasePool:
    _pool = None

    @classmethod
    async def create_pool(cls):
        if cls._pool is None:
            try:
                cls._pool = await asyncpg.create_pool(
                    **settings.db_connection_params,
                    min_size=5,
                    max_size=30,
                    max_queries=50000,
                    max_inactive_connection_lifetime=300,
                    command_timeout=60,
                    timeout=30
                )
                logger.info(f"Database pool created: {settings.db_name}@{settings.db_host}")
            except Exception as e:
                logger.error(f"Failed to create database pool: {e}")
                raise
        return cls._pool

    @classmethod
    async def close_pool(cls):
        if cls._pool:
            await cls._pool.close()
            cls._pool = None
            logger.info("Database pool closed")

@asynccontextmanager
async def get_db_connection(use_transaction: bool = True):
    """
    Get database connection from pool.

    Args:
        use_transaction: If True, wraps operations in a transaction.
                        Set to False for read-only operations.

    Usage:
    async with get_db_connection() as conn:
        result = await conn.fetchrow("SELECT * FROM tickets WHERE ticket_id = $1", ticket_id)

    Read-only usage:
    async with get_db_connection(use_transaction=False) as conn:
        result = await conn.fetchrow("SELECT * FROM tickets WHERE ticket_id = $1", ticket_id)
    """
    pool = await DatabasePool.create_pool()
    async with pool.acquire() as connection:
        if use_transaction:
            async with connection.transaction():
                yield connection
        else:
            yield connection


async def apply_schema() -> None:
    """Create tables and indexes from schema.sql (idempotent)"""
    sql = SCHEMA_PATH.read_text(encoding="utf-8")
    async with get_db_connection() as conn:
        await conn.execute(sql)
    logger.info("Database schema applied")


async def ping() -> bool:
    async with get_db_connection(use_transaction=False) as conn:
        return await conn.fetchval("SELECT 1") == 1
