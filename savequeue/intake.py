import logging
from typing import Any

from savequeue.models import ProductDraft
from savequeue.price_cache import PriceCache, sale_price_for
from savequeue.queue import SaveQueue

logger = logging.getLogger(__name__)

UNKNOWN_PRODUCT_NAME = "Неизвестный товар"


def prepare_product(draft: ProductDraft, price_cache: PriceCache | None = None) -> dict[str, Any]:
    """Дополняет товар ценой, названием и категорией из прайса, если их нет."""
    purchase_price = draft.purchase_price or 0
    sale_price = draft.sale_price or 0
    name = draft.name or ""
    category = draft.category or ""

    if price_cache is not None and (not purchase_price or not sale_price):
        entry = price_cache.find_by_barcode(draft.barcode)
        if entry:
            if not purchase_price:
                purchase_price = entry.purchase_price
            if not sale_price:
                sale_price = sale_price_for(entry.purchase_price)
            name = name or entry.name
            category = category or entry.category
            logger.debug(f"Price for {draft.barcode} taken from price list entry {entry.code}")

    product = draft.model_dump()
    product.update(
        name=name or UNKNOWN_PRODUCT_NAME,
        category=category,
        purchase_price=purchase_price,
        sale_price=sale_price,
        quantity=draft.quantity or 1,
        has_price=purchase_price > 0 and sale_price > 0 and bool(name),
    )
    return product


def add_product_to_save_queue(
    queue: SaveQueue,
    draft: ProductDraft | dict[str, Any],
    price_cache: PriceCache | None = None,
) -> dict[str, Any]:
    """Вместо прямого сохранения: товар уходит в очередь, ответ сразу."""
    if not isinstance(draft, ProductDraft):
        draft = ProductDraft.model_validate(draft)
    product = prepare_product(draft, price_cache)
    item_id = queue.enqueue(product)
    if not product["has_price"]:
        logger.info(f"Product {draft.barcode} has no price, it will be staged for review")
    return {"success": True, "id": item_id, "has_price": product["has_price"]}
