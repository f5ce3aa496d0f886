# Модели данных очереди сохранения товаров (Pydantic)

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ItemStatus(str, Enum):
    PENDING = "pending"
    SAVING = "saving"
    SAVED = "saved"      # товар записан в основной каталог
    QUEUED = "queued"    # товар записан в pending_products (ждёт проверки цены)
    FAILED = "failed"    # лимит попыток исчерпан, нужен оператор


class SaveQueueItem(BaseModel):
    id: str
    barcode: str = ""
    name: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)
    status: ItemStatus = ItemStatus.PENDING
    attempts: int = 0
    last_attempt: float | None = None
    error: str | None = None
    created_at: float = Field(default_factory=time.time)


class QueueStats(BaseModel):
    pending: int = 0
    saving: int = 0
    saved: int = 0
    queued: int = 0
    failed: int = 0
    total: int = 0


class ProductDraft(BaseModel):
    """Товар, полученный со сканера или из формы ввода."""
    barcode: str
    scanned_by: str
    name: str | None = None
    category: str | None = None
    purchase_price: float = 0
    sale_price: float = 0
    quantity: int = 1
    expiry_date: str | None = None
    front_photo_url: str | None = None
    barcode_photo_url: str | None = None
