# Очередь гарантированного сохранения товаров.
# Каждый товар пытаемся сохранить до успеха, не блокируя новые сканирования.
# После MAX_ATTEMPTS неудач товар становится failed и оператор получает
# обязательное уведомление (on_failed).

import asyncio
import logging
import os
import time
import uuid
from typing import Any, Awaitable, Callable

from savequeue.backoff import BackoffPolicy, default_backoff
from savequeue.exceptions import PermanentSaveError
from savequeue.models import ItemStatus, QueueStats, SaveQueueItem

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = int(os.getenv("SAVE_QUEUE_MAX_ATTEMPTS", "10"))
# Сколько разных товаров сохраняем параллельно
CONCURRENCY = int(os.getenv("SAVE_QUEUE_CONCURRENCY", "3"))
# Минимальная пауза между попытками, даже если политика вернула 0
MIN_RETRY_DELAY = 0.01

SaveCallable = Callable[[dict[str, Any]], Awaitable[ItemStatus | None]]
Listener = Callable[[SaveQueueItem], None]
FailedCallback = Callable[[SaveQueueItem], None]


def escalate_to_log(item: SaveQueueItem) -> None:
    """Уведомление по умолчанию, если UI не зарегистрировал свой callback."""
    logger.critical(
        f"Product {item.barcode} ({item.name}) was NOT saved after {item.attempts} attempts: "
        f"{item.error}. Manual retry required for item {item.id}."
    )


class SaveQueue:
    def __init__(
        self,
        save: SaveCallable,
        *,
        max_attempts: int = MAX_ATTEMPTS,
        backoff: BackoffPolicy = default_backoff,
        on_failed: FailedCallback | None = None,
        store=None,
        concurrency: int = CONCURRENCY,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._save = save
        self.max_attempts = max_attempts
        self._backoff = backoff
        self._on_failed = on_failed
        self._store = store
        self._concurrency = concurrency

        self._items: dict[str, SaveQueueItem] = {}
        self._listeners: dict[object, Listener] = {}
        self._drivers: dict[str, asyncio.Task] = {}
        self._semaphore: asyncio.Semaphore | None = None
        self._semaphore_loop = None

        # Несохранённые в хранилище изменения: последний снимок на товар
        self._dirty: dict[str, SaveQueueItem] = {}
        self._removed: set[str] = set()
        self._writer: asyncio.Task | None = None

    # --- Публичный API ---

    def enqueue(self, item_data: dict[str, Any]) -> str:
        """Добавляет товар в очередь и сразу возвращает id. Сеть не трогает."""
        item = SaveQueueItem(
            id=f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:12]}",
            barcode=str(item_data.get("barcode") or ""),
            name=str(item_data.get("name") or ""),
            payload=dict(item_data),
        )
        self._items[item.id] = item
        logger.info(f"Enqueued product {item.barcode} ({item.name}) as {item.id}")
        self._persist(item)
        self._notify(item)
        self._schedule(item)
        return item.id

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        token = object()
        self._listeners[token] = listener

        def unsubscribe() -> None:
            self._listeners.pop(token, None)

        return unsubscribe

    def set_on_failed(self, callback: FailedCallback | None) -> None:
        self._on_failed = callback

    def get_stats(self) -> QueueStats:
        counts = {status: 0 for status in ItemStatus}
        for item in self._items.values():
            counts[item.status] += 1
        return QueueStats(
            pending=counts[ItemStatus.PENDING],
            saving=counts[ItemStatus.SAVING],
            saved=counts[ItemStatus.SAVED],
            queued=counts[ItemStatus.QUEUED],
            failed=counts[ItemStatus.FAILED],
            total=len(self._items),
        )

    def get_item(self, item_id: str) -> SaveQueueItem | None:
        item = self._items.get(item_id)
        return item.model_copy(deep=True) if item else None

    def get_items(self) -> list[SaveQueueItem]:
        return [item.model_copy(deep=True) for item in self._items.values()]

    def get_failed_items(self) -> list[SaveQueueItem]:
        return [
            item.model_copy(deep=True)
            for item in self._items.values()
            if item.status is ItemStatus.FAILED
        ]

    def retry_failed(self, item_id: str) -> bool:
        """Ручной повтор failed товара: полный бюджет попыток заново."""
        item = self._items.get(item_id)
        if item is None or item.status is not ItemStatus.FAILED:
            logger.warning(f"Retry requested for item {item_id}, but it is not in failed state. Ignoring.")
            return False
        item.attempts = 0
        self._set_status(item, ItemStatus.PENDING, error=None)
        logger.info(f"Item {item_id} ({item.barcode}) returned to pending by manual retry")
        self._schedule(item)
        return True

    def clear_completed(self) -> int:
        """Убирает saved/queued товары. failed и pending остаются."""
        done = [
            item_id for item_id, item in self._items.items()
            if item.status in (ItemStatus.SAVED, ItemStatus.QUEUED)
        ]
        for item_id in done:
            del self._items[item_id]
            self._dirty.pop(item_id, None)
            if self._store is not None:
                self._removed.add(item_id)
        if done:
            logger.info(f"Cleared {len(done)} completed items from save queue")
            self._ensure_writer()
        return len(done)

    async def start(self) -> None:
        """Забирает свободные товары из хранилища и запускает обработку pending.

        Хранилище отдаёт только товары, которые никто не держит (или чья аренда
        истекла), поэтому saving здесь - след упавшего процесса, а не живой попытки.
        """
        if self._store is not None:
            restored = 0
            for item in await self._store.load():
                if item.id in self._items:
                    continue
                if item.status is ItemStatus.SAVING:
                    # Попытка прервалась вместе с процессом и не считается
                    item.status = ItemStatus.PENDING
                    item.attempts = max(item.attempts - 1, 0)
                    self._dirty[item.id] = item.model_copy(deep=True)
                self._items[item.id] = item
                restored += 1
            logger.info(f"Restored {restored} items from save queue store")
        for item in self._items.values():
            if item.status is ItemStatus.PENDING:
                self._schedule(item)
        self._ensure_writer()

    async def join(self) -> None:
        """Ждёт, пока ни один товар не обрабатывается, и сбрасывает хранилище."""
        while True:
            active = [task for task in self._drivers.values() if not task.done()]
            if not active:
                break
            await asyncio.gather(*active)
        await self.flush()

    async def flush(self) -> None:
        self._ensure_writer()
        if self._writer is not None and not self._writer.done():
            await self._writer

    async def close(self) -> None:
        active = [task for task in self._drivers.values() if not task.done()]
        for task in active:
            task.cancel()
        if active:
            await asyncio.gather(*active, return_exceptions=True)
        await self.flush()
        if self._store is not None:
            # Отдаём товары другим воркерам, не дожидаясь истечения аренды
            try:
                await self._store.release(list(self._items))
            except Exception:
                logger.exception(f"Failed to release {len(self._items)} save queue items")

    # --- Обработка ---

    def _schedule(self, item: SaveQueueItem) -> None:
        existing = self._drivers.get(item.id)
        if existing is not None and not existing.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Нет event loop - товар подхватит start()
            logger.debug(f"No running event loop, item {item.id} waits for start()")
            return
        task = loop.create_task(self._drive(item.id), name=f"save-queue-{item.id}")
        self._drivers[item.id] = task
        task.add_done_callback(lambda t, item_id=item.id: self._forget_driver(item_id, t))

    def _forget_driver(self, item_id: str, task: asyncio.Task) -> None:
        if self._drivers.get(item_id) is task:
            del self._drivers[item_id]

    def _get_semaphore(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._semaphore_loop is not loop:
            self._semaphore = asyncio.Semaphore(self._concurrency)
            self._semaphore_loop = loop
        return self._semaphore

    def _retry_delay(self, item: SaveQueueItem) -> float:
        if item.attempts == 0:
            return 0
        return max(self._backoff(item.attempts), MIN_RETRY_DELAY)

    async def _drive(self, item_id: str) -> None:
        # Один драйвер на товар - значит одна попытка в полёте на товар
        item = self._items.get(item_id)
        while item is not None and item.status is ItemStatus.PENDING:
            delay = self._retry_delay(item)
            if delay:
                await asyncio.sleep(delay)
            if item.status is not ItemStatus.PENDING:
                break
            if item.attempts >= self.max_attempts:
                # Бюджет уже исчерпан (например, восстановлен из хранилища)
                logger.error(f"Item {item.id} ({item.barcode}) has no attempts left ({item.attempts}/{self.max_attempts})")
                self._set_status(item, ItemStatus.FAILED, error=item.error or "Retry limit reached")
                break
            async with self._get_semaphore():
                await self._attempt(item)

    async def _attempt(self, item: SaveQueueItem) -> None:
        item.attempts += 1
        item.last_attempt = time.time()
        self._set_status(item, ItemStatus.SAVING)
        try:
            result = await self._save(item.payload)
        except asyncio.CancelledError:
            item.attempts -= 1
            self._set_status(item, ItemStatus.PENDING, error="Save interrupted")
            raise
        except PermanentSaveError as e:
            logger.error(f"Backend rejected product {item.barcode} (item {item.id}): {e}")
            self._set_status(item, ItemStatus.FAILED, error=str(e) or type(e).__name__)
            return
        except Exception as e:
            error = str(e) or type(e).__name__
            if item.attempts >= self.max_attempts:
                logger.error(f"Item {item.id} ({item.barcode}) failed after {item.attempts} attempts: {error}")
                self._set_status(item, ItemStatus.FAILED, error=error)
            else:
                logger.warning(
                    f"Attempt {item.attempts}/{self.max_attempts} to save item {item.id} ({item.barcode}) failed: {error}"
                )
                self._set_status(item, ItemStatus.PENDING, error=error)
            return

        status = ItemStatus.QUEUED if result is ItemStatus.QUEUED else ItemStatus.SAVED
        logger.info(f"Item {item.id} ({item.barcode}) {status.value} on attempt {item.attempts}")
        self._set_status(item, status, error=None)

    def _set_status(self, item: SaveQueueItem, status: ItemStatus, **changes: Any) -> None:
        for field, value in changes.items():
            setattr(item, field, value)
        item.status = status
        self._persist(item)
        self._notify(item)
        if status is ItemStatus.FAILED:
            self._escalate(item)

    def _notify(self, item: SaveQueueItem) -> None:
        snapshot = item.model_copy(deep=True)
        for listener in list(self._listeners.values()):
            try:
                listener(snapshot)
            except Exception:
                logger.exception(f"Save queue listener failed for item {item.id}")

    def _escalate(self, item: SaveQueueItem) -> None:
        callback = self._on_failed or escalate_to_log
        try:
            callback(item.model_copy(deep=True))
        except Exception:
            logger.exception(f"on_failed callback raised for item {item.id}")
            escalate_to_log(item)

    # --- Хранилище ---

    def _persist(self, item: SaveQueueItem) -> None:
        if self._store is None:
            return
        self._dirty[item.id] = item.model_copy(deep=True)
        self._ensure_writer()

    def _ensure_writer(self) -> None:
        if self._store is None or not (self._dirty or self._removed):
            return
        if self._writer is not None and not self._writer.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._writer = loop.create_task(self._write_changes(), name="save-queue-writer")

    async def _write_changes(self) -> None:
        # Единственный писатель: снимки одного товара пишутся по порядку
        while self._dirty or self._removed:
            removed = set(self._removed)
            self._removed.clear()
            batch = list(self._dirty.values())
            self._dirty.clear()
            try:
                if removed:
                    await self._store.delete(removed)
                if batch:
                    await self._store.save(batch)
            except Exception:
                logger.exception(f"Failed to persist {len(batch)} save queue items")
                self._removed |= removed
                for snapshot in batch:
                    # Удалённые clear_completed() обратно не пишем
                    if snapshot.id in self._items:
                        self._dirty.setdefault(snapshot.id, snapshot)
                return
