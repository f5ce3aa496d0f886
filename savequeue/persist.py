import logging
from typing import Any, Awaitable, Callable

from savequeue.models import ItemStatus
from savequeue.utils import backend

logger = logging.getLogger(__name__)

DEFAULT_UNIT = "шт"


def catalogue_record(payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "barcode": payload["barcode"],
        "name": payload.get("name"),
        "category": payload.get("category") or "",
        "purchase_price": payload.get("purchase_price") or 0,
        "sale_price": payload.get("sale_price") or 0,
        "quantity": payload.get("quantity") or 1,
        "unit": payload.get("unit") or DEFAULT_UNIT,
        "expiry_date": payload.get("expiry_date"),
        "created_by": payload.get("scanned_by"),
    }


def pending_record(payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "barcode": payload["barcode"],
        "name": payload.get("name"),
        "purchase_price": payload.get("purchase_price") or 0,
        "sale_price": payload.get("sale_price") or 0,
        "quantity": payload.get("quantity") or 1,
        "category": payload.get("category") or "",
        "expiry_date": payload.get("expiry_date"),
        "front_photo": payload.get("front_photo_url"),
        "barcode_photo": payload.get("barcode_photo_url"),
        "image_url": payload.get("front_photo_url"),
        "added_by": payload.get("scanned_by"),
    }


class ProductPersister:
    """save(payload) для SaveQueue.

    Товар с ценой идёт сразу в каталог (saved), без цены - в pending_products
    на ручную проверку (queued). Перед вставкой в каталог проверяем штрихкод:
    если прошлая попытка вставила товар, но ответ потерялся, второй раз не вставляем.
    """

    def __init__(
        self,
        insert: Callable[[dict[str, Any]], Awaitable[Any]] = backend.insert_product,
        create_pending: Callable[[dict[str, Any]], Awaitable[Any]] = backend.create_pending_product,
        lookup: Callable[[str], Awaitable[dict[str, Any] | None]] = backend.get_product_by_barcode,
    ):
        self._insert = insert
        self._lookup = lookup
        self._create_pending = create_pending

    async def __call__(self, payload: dict[str, Any]) -> ItemStatus:
        if payload.get("has_price"):
            existing = await self._lookup(payload["barcode"])
            if existing:
                logger.info(f"Product {payload['barcode']} already in catalogue (id={existing.get('id')}), not inserting again")
                return ItemStatus.SAVED
            record_id = await self._insert(catalogue_record(payload))
            logger.info(f"Product {payload['barcode']} inserted into catalogue (id={record_id})")
            return ItemStatus.SAVED
        record_id = await self._create_pending(pending_record(payload))
        logger.info(f"Product {payload['barcode']} staged in pending_products (id={record_id})")
        return ItemStatus.QUEUED
