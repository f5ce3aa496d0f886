import asyncpg
import os
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DB_POOL = None # Пул соединений процесса воркера

SAVE_QUEUE_SCHEMA = """
    CREATE TABLE IF NOT EXISTS product_save_queue (
        id TEXT PRIMARY KEY,
        barcode TEXT NOT NULL DEFAULT '',
        name TEXT NOT NULL DEFAULT '',
        payload JSONB NOT NULL,
        status TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        last_attempt DOUBLE PRECISION,
        error_message TEXT,
        created_at DOUBLE PRECISION NOT NULL,
        owner TEXT,
        lease_until DOUBLE PRECISION
    );
    ALTER TABLE product_save_queue ADD COLUMN IF NOT EXISTS owner TEXT;
    ALTER TABLE product_save_queue ADD COLUMN IF NOT EXISTS lease_until DOUBLE PRECISION;
    CREATE INDEX IF NOT EXISTS idx_product_save_queue_claim ON product_save_queue (status, lease_until);
"""

async def init_db_pool(dsn: str | None = None):
    """Создаёт пул asyncpg и таблицу очереди, если её ещё нет."""
    global DB_POOL
    dsn = dsn or DATABASE_URL
    if not dsn:
        logger.error("DATABASE_URL is not set. Save queue will not be persisted.")
        return None
    try:
        DB_POOL = await asyncpg.create_pool(dsn=dsn, min_size=1, max_size=5)
        async with DB_POOL.acquire() as conn:
            await conn.execute(SAVE_QUEUE_SCHEMA)
        logger.info("Database connection pool initialized, product_save_queue table ready.")
    except Exception:
        logger.exception("Failed to initialize database connection pool")
        DB_POOL = None
    return DB_POOL

async def close_db_pool():
    global DB_POOL
    if DB_POOL:
        await DB_POOL.close()
        logger.info("Database connection pool closed.")
        DB_POOL = None

@asynccontextmanager
async def db_pool(dsn: str | None = None):
    """Пул на время одного asyncio.run (задачи Celery)."""
    pool = await init_db_pool(dsn)
    try:
        yield pool
    finally:
        await close_db_pool()

def get_connection():
    """async with get_connection() as conn: ..."""
    if not DB_POOL:
        logger.error("DB Pool is not initialized. Cannot get connection.")
        raise ConnectionError("Database pool not available")
    return DB_POOL.acquire()
