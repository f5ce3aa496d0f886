# Локальный кэш цен из CSV прайсов.
# Нужен, чтобы при сканировании подставить закупочную цену без запроса к базе.

import csv
import logging
import os
import re
from pathlib import Path
from typing import Iterable

from pydantic import BaseModel

logger = logging.getLogger(__name__)

# Список файлов через запятую
PRICE_CSV_FILES = [p for p in os.getenv("PRICE_CSV_FILES", "").split(",") if p.strip()]
HEADER_LINES = 3
MARKUP = 1.3  # наценка 30%


class PriceEntry(BaseModel):
    code: str
    name: str
    category: str = ""
    unit: str = "шт"
    purchase_price: float = 0
    quantity: float = 0

    @property
    def sale_price(self) -> float:
        return sale_price_for(self.purchase_price)


def sale_price_for(purchase_price: float) -> float:
    return round(purchase_price * MARKUP)


def parse_number(value: str | None) -> float:
    """'1 234,50' -> 1234.5; мусор -> 0."""
    if not value:
        return 0
    cleaned = re.sub(r"[^\d.-]", "", value.replace(",", "."))
    try:
        return float(cleaned)
    except ValueError:
        return 0


def _normalize_name(name: str) -> str:
    return re.sub(r"\s+", " ", name.strip().lower())


class PriceCache:
    def __init__(self, entries: Iterable[PriceEntry] = ()):
        self._by_code: dict[str, PriceEntry] = {}
        self._by_name: dict[str, PriceEntry] = {}
        for entry in entries:
            self.add(entry)

    def __len__(self) -> int:
        return len(self._by_code)

    def add(self, entry: PriceEntry) -> None:
        self._by_code[entry.code] = entry
        self._by_name[_normalize_name(entry.name)] = entry

    @classmethod
    def load(cls, paths: Iterable[str | Path] | None = None) -> "PriceCache":
        cache = cls()
        for path in paths if paths is not None else PRICE_CSV_FILES:
            try:
                entries = read_price_file(path)
            except OSError as e:
                logger.warning(f"Cannot load price file {path}: {e}")
                continue
            for entry in entries:
                cache.add(entry)
            logger.info(f"Loaded {len(entries)} prices from {path}")
        logger.info(f"Price cache contains {len(cache)} products")
        return cache

    def find_by_code(self, code: str) -> PriceEntry | None:
        return self._by_code.get(code)

    def find_by_barcode(self, barcode: str) -> PriceEntry | None:
        """Точное совпадение, иначе по последним 6, 5 или 4 цифрам кода."""
        if not barcode:
            return None
        if barcode in self._by_code:
            return self._by_code[barcode]
        suffixes = (barcode[-6:], barcode[-5:], barcode[-4:])
        for code, entry in self._by_code.items():
            if code.endswith(suffixes):
                return entry
        return None

    def find_by_name(self, name: str) -> PriceEntry | None:
        if not name:
            return None
        needle = _normalize_name(name)
        if needle in self._by_name:
            return self._by_name[needle]
        for stored, entry in self._by_name.items():
            if needle in stored or stored in needle:
                return entry
        return None


def read_price_file(path: str | Path) -> list[PriceEntry]:
    # Структура строки: ;;;код;группа;название;ед.изм.;количество;закупочная цена;сумма
    entries = []
    with open(path, encoding="utf-8", newline="") as f:
        for line_no, cells in enumerate(csv.reader(f, delimiter=";")):
            if line_no < HEADER_LINES:
                continue
            cells = [cell.strip() for cell in cells] + [""] * 10
            code, category, name, unit = cells[3], cells[4], cells[5], cells[6]
            if not code or not name:
                continue
            entries.append(PriceEntry(
                code=code,
                name=name,
                category=category,
                unit=unit or "шт",
                quantity=parse_number(cells[7]),
                purchase_price=parse_number(cells[8]),
            ))
    return entries
