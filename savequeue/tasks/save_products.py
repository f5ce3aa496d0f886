import asyncio
import logging
from typing import Any

from savequeue.backoff import backoff_from_env
from savequeue.db import db_pool
from savequeue.intake import add_product_to_save_queue
from savequeue.persist import ProductPersister
from savequeue.price_cache import PriceCache
from savequeue.queue import SaveQueue
from savequeue.storage import PostgresQueueStore
from savequeue.worker import celery_app

logger = logging.getLogger(__name__)

_price_cache: PriceCache | None = None


def get_price_cache() -> PriceCache:
    global _price_cache
    if _price_cache is None:
        _price_cache = PriceCache.load()
    return _price_cache


def build_queue(pool) -> SaveQueue:
    """Очередь для одного запуска задачи. Без БД - только память (с предупреждением)."""
    store = PostgresQueueStore() if pool is not None else None
    if store is None:
        logger.warning("Database pool unavailable: save queue runs in memory only, items are lost on worker crash.")
    return SaveQueue(ProductPersister(), store=store, backoff=backoff_from_env())


def _describe(queue: SaveQueue, item_id: str) -> dict[str, Any]:
    item = queue.get_item(item_id)
    if item is None:
        return {"id": item_id, "status": None}
    return {"id": item.id, "status": item.status.value, "attempts": item.attempts, "error": item.error}


# --- Основная логика (асинхронная) ---

async def _save_product(product: dict[str, Any]) -> dict[str, Any]:
    async with db_pool() as pool:
        queue = build_queue(pool)
        try:
            await queue.start()
            result = add_product_to_save_queue(queue, product, get_price_cache())
            await queue.join()
            logger.info(f"Save queue after save_product: {queue.get_stats().model_dump()}")
            return _describe(queue, result["id"])
        finally:
            await queue.close()


async def _drain_save_queue() -> dict[str, int]:
    async with db_pool() as pool:
        if pool is None:
            logger.error("Cannot drain save queue: database pool unavailable.")
            return {}
        queue = build_queue(pool)
        try:
            await queue.start()
            await queue.join()
        finally:
            await queue.close()
        stats = queue.get_stats()
        if stats.failed:
            logger.warning(f"{stats.failed} products in save queue require manual retry")
        return stats.model_dump()


async def _retry_failed_product(item_id: str) -> dict[str, Any]:
    async with db_pool() as pool:
        if pool is None:
            logger.error("Cannot retry item: database pool unavailable.")
            return {"id": item_id, "status": None}
        queue = build_queue(pool)
        try:
            await queue.start()
            if queue.retry_failed(item_id):
                await queue.join()
            return _describe(queue, item_id)
        finally:
            await queue.close()


# --- Задачи Celery ---

@celery_app.task(name="save_product")
def save_product_task(product: dict[str, Any]) -> dict[str, Any]:
    """Сохраняет отсканированный товар через очередь с повторами."""
    return asyncio.run(_save_product(product))


@celery_app.task(name="drain_save_queue")
def drain_save_queue_task() -> dict[str, int]:
    """Периодически дообрабатывает pending товары из product_save_queue."""
    logger.info("Running drain_save_queue task")
    return asyncio.run(_drain_save_queue())


@celery_app.task(name="retry_failed_product")
def retry_failed_product_task(item_id: str) -> dict[str, Any]:
    """Ручной повтор failed товара по запросу оператора."""
    return asyncio.run(_retry_failed_product(item_id))
