# Долговременное хранение очереди, чтобы перезапуск не терял товары.
# Хранилище передаётся в SaveQueue(store=...); без него очередь живёт только в памяти.
#
# Несколько очередей (воркеров Celery) могут работать с одним хранилищем.
# load() забирает товары в аренду (owner + lease_until): товар, который держит
# живая очередь, другой не достаётся, пока аренда не истечёт или не будет
# отпущена release(). Каждая запись продлевает аренду.

import asyncio
import json
import logging
import os
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Iterable

from pydantic import ValidationError

from savequeue.db import get_connection
from savequeue.models import ItemStatus, SaveQueueItem

logger = logging.getLogger(__name__)

LEASE_SECONDS = float(os.getenv("SAVE_QUEUE_LEASE_SECONDS", "600"))
# saved/queued товары обрабатывать не нужно, их не забираем
CLAIMABLE_STATUSES = (ItemStatus.PENDING.value, ItemStatus.SAVING.value, ItemStatus.FAILED.value)

_file_locks: dict[Path, threading.Lock] = {}
_file_locks_guard = threading.Lock()


def _lock_for(path: Path) -> threading.Lock:
    with _file_locks_guard:
        return _file_locks.setdefault(path.resolve(), threading.Lock())


def _new_owner() -> str:
    return f"{os.getpid()}-{uuid.uuid4().hex[:8]}"


class JsonFileQueueStore:
    """Вся очередь одним JSON документом (аналог localStorage).

    Чтение-изменение-запись идут под блокировкой файла внутри процесса;
    для нескольких процессов используйте PostgresQueueStore.
    """

    def __init__(self, path: str | Path, owner: str | None = None, lease_seconds: float = LEASE_SECONDS):
        self.path = Path(path)
        self.owner = owner or _new_owner()
        self.lease_seconds = lease_seconds
        self._lock = _lock_for(self.path)

    async def load(self) -> list[SaveQueueItem]:
        return await asyncio.to_thread(self._claim)

    async def save(self, items: Iterable[SaveQueueItem]) -> None:
        await asyncio.to_thread(self._upsert, list(items))

    async def delete(self, item_ids: Iterable[str]) -> None:
        await asyncio.to_thread(self._remove, set(item_ids))

    async def release(self, item_ids: Iterable[str]) -> None:
        await asyncio.to_thread(self._release, set(item_ids))

    def _is_free(self, entry: dict[str, Any], now: float) -> bool:
        owner = entry.get("owner")
        return owner is None or owner == self.owner or (entry.get("lease_until") or 0) < now

    def _claim(self) -> list[SaveQueueItem]:
        now = time.time()
        claimed = []
        with self._lock:
            entries = self._read()
            for entry in entries:
                if entry["status"] in CLAIMABLE_STATUSES and self._is_free(entry, now):
                    entry["owner"] = self.owner
                    entry["lease_until"] = now + self.lease_seconds
                    claimed.append(SaveQueueItem.model_validate(entry))
            if claimed:
                self._write(entries)
        return sorted(claimed, key=lambda item: item.created_at)

    def _upsert(self, items: list[SaveQueueItem]) -> None:
        now = time.time()
        with self._lock:
            entries = {entry["id"]: entry for entry in self._read()}
            for item in items:
                existing = entries.get(item.id)
                if existing is not None and not self._is_free(existing, now):
                    logger.warning(f"Item {item.id} is leased by {existing['owner']}, skipping write")
                    continue
                entry = item.model_dump(mode="json")
                entry["owner"] = self.owner
                entry["lease_until"] = now + self.lease_seconds
                entries[item.id] = entry
            self._write(list(entries.values()))

    def _remove(self, item_ids: set[str]) -> None:
        now = time.time()
        with self._lock:
            entries = self._read()
            kept = [e for e in entries if e["id"] not in item_ids or not self._is_free(e, now)]
            self._write(kept)

    def _release(self, item_ids: set[str]) -> None:
        with self._lock:
            entries = self._read()
            for entry in entries:
                if entry["id"] in item_ids and entry.get("owner") == self.owner:
                    entry["owner"] = None
                    entry["lease_until"] = None
            self._write(entries)

    def _read(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.exception(f"Cannot read save queue file {self.path}, starting with empty queue")
            return []
        entries = []
        for record in raw:
            try:
                item = SaveQueueItem.model_validate(record)
            except ValidationError:
                logger.error(f"Skipping malformed save queue entry in {self.path}: {record}")
                continue
            entry = item.model_dump(mode="json")
            entry["owner"] = record.get("owner")
            entry["lease_until"] = record.get("lease_until")
            entries.append(entry)
        return entries

    def _write(self, entries: list[dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(entries, ensure_ascii=False), encoding="utf-8")
        tmp.replace(self.path)


ROW_COLUMNS = "id, barcode, name, payload, status, attempts, last_attempt, error_message, created_at"


class PostgresQueueStore:
    """Таблица product_save_queue через пул asyncpg (см. savequeue.db)."""

    def __init__(self, connection_factory=get_connection, owner: str | None = None,
                 lease_seconds: float = LEASE_SECONDS):
        self._connection = connection_factory
        self.owner = owner or _new_owner()
        self.lease_seconds = lease_seconds

    async def load(self) -> list[SaveQueueItem]:
        now = time.time()
        async with self._connection() as conn:
            # SKIP LOCKED: параллельный воркер не ждёт и не получает те же строки
            rows = await conn.fetch("""
                WITH claimable AS (
                    SELECT id FROM product_save_queue
                    WHERE status = ANY($4::text[])
                      AND (owner IS NULL OR owner = $1 OR lease_until < $3)
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE product_save_queue q
                SET owner = $1, lease_until = $2
                FROM claimable c
                WHERE q.id = c.id
                RETURNING q.id, q.barcode, q.name, q.payload, q.status, q.attempts,
                          q.last_attempt, q.error_message, q.created_at
            """, self.owner, now + self.lease_seconds, now, list(CLAIMABLE_STATUSES))
        items = [self._to_item(row) for row in rows]
        logger.info(f"Claimed {len(items)} save queue items for {self.owner}")
        return sorted(items, key=lambda item: item.created_at)

    @staticmethod
    def _to_item(row) -> SaveQueueItem:
        payload = row["payload"]
        if isinstance(payload, str):
            payload = json.loads(payload)
        return SaveQueueItem(
            id=row["id"],
            barcode=row["barcode"],
            name=row["name"],
            payload=payload,
            status=ItemStatus(row["status"]),
            attempts=row["attempts"],
            last_attempt=row["last_attempt"],
            error=row["error_message"],
            created_at=row["created_at"],
        )

    async def save(self, items: Iterable[SaveQueueItem]) -> None:
        now = time.time()
        records = [
            (item.id, item.barcode, item.name, json.dumps(item.payload, ensure_ascii=False),
             item.status.value, item.attempts, item.last_attempt, item.error, item.created_at,
             self.owner, now + self.lease_seconds, now)
            for item in items
        ]
        if not records:
            return
        async with self._connection() as conn:
            # Строку, которую держит другой воркер, не перезаписываем
            await conn.executemany(f"""
                INSERT INTO product_save_queue ({ROW_COLUMNS}, owner, lease_until)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                ON CONFLICT (id) DO UPDATE SET
                    payload = EXCLUDED.payload,
                    status = EXCLUDED.status,
                    attempts = EXCLUDED.attempts,
                    last_attempt = EXCLUDED.last_attempt,
                    error_message = EXCLUDED.error_message,
                    owner = EXCLUDED.owner,
                    lease_until = EXCLUDED.lease_until
                WHERE product_save_queue.owner IS NULL
                   OR product_save_queue.owner = EXCLUDED.owner
                   OR product_save_queue.lease_until < $12
            """, records)
        logger.debug(f"Persisted {len(records)} save queue items to product_save_queue")

    async def delete(self, item_ids: Iterable[str]) -> None:
        ids = list(item_ids)
        if not ids:
            return
        async with self._connection() as conn:
            await conn.execute(
                "DELETE FROM product_save_queue WHERE id = ANY($1::text[]) AND (owner IS NULL OR owner = $2)",
                ids, self.owner,
            )

    async def release(self, item_ids: Iterable[str]) -> None:
        ids = list(item_ids)
        if not ids:
            return
        async with self._connection() as conn:
            await conn.execute(
                "UPDATE product_save_queue SET owner = NULL, lease_until = NULL "
                "WHERE id = ANY($1::text[]) AND owner = $2",
                ids, self.owner,
            )
