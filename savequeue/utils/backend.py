import asyncio
import httpx
import os
import logging
from typing import Any

from savequeue.exceptions import PermanentSaveError, SaveQueueError

logger = logging.getLogger(__name__)

# Серверная функция бэкенда: POST {"action": ..., "data": {...}}
BACKEND_FUNCTION_URL = os.getenv("BACKEND_FUNCTION_URL")
BACKEND_API_KEY = os.getenv("BACKEND_API_KEY")
HTTP_TIMEOUT = float(os.getenv("BACKEND_TIMEOUT", "8.0"))
# Повторы внутри одного запроса (помимо повторов очереди)
MAX_RETRIES = 2
RETRY_PAUSE = 0.5

# Эти коды означают "попробуй позже", остальные 4xx - окончательный отказ
RETRYABLE_CLIENT_STATUSES = {408, 425, 429}


class BackendError(SaveQueueError):
    """Бэкенд недоступен или вернул success: false."""


class BackendRejected(BackendError, PermanentSaveError):
    """Бэкенд отклонил запрос (4xx)."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


def _headers() -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if BACKEND_API_KEY:
        headers["Authorization"] = f"Bearer {BACKEND_API_KEY}"
        headers["apikey"] = BACKEND_API_KEY
    return headers


async def backend_request(
    action: str,
    data: dict[str, Any] | None = None,
    *,
    url: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    retry_pause: float = RETRY_PAUSE,
) -> dict[str, Any]:
    """Вызывает действие на бэкенде, повторяя при сбоях до MAX_RETRIES раз.
    Возвращает разобранный ответ ({"success": True, "data": ...}).
    """
    url = url or BACKEND_FUNCTION_URL
    if not url:
        logger.error("BACKEND_FUNCTION_URL is not set.")
        raise ValueError("Missing BACKEND_FUNCTION_URL configuration.")

    last_error = "Unknown error"
    for attempt in range(MAX_RETRIES + 1):
        if attempt:
            await asyncio.sleep(retry_pause * attempt)
        try:
            async with httpx.AsyncClient(timeout=HTTP_TIMEOUT, transport=transport) as client:
                response = await client.post(url, json={"action": action, "data": data or {}}, headers=_headers())
                response.raise_for_status()
            result = response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if 400 <= status < 500 and status not in RETRYABLE_CLIENT_STATUSES:
                logger.error(f"Backend rejected action '{action}': {status} - {e.response.text}")
                raise BackendRejected(f"HTTP {status}: {e.response.text}", status) from e
            last_error = f"HTTP Error: {status}"
            logger.warning(f"Backend action '{action}' attempt {attempt + 1} failed: {last_error}")
            continue
        except httpx.TimeoutException:
            last_error = "Timeout - backend did not respond"
            logger.warning(f"Backend action '{action}' attempt {attempt + 1} timed out")
            continue
        except httpx.RequestError as e:
            last_error = f"Network Error: {e}"
            logger.warning(f"Backend action '{action}' attempt {attempt + 1} failed: {last_error}")
            continue
        except ValueError as e:
            last_error = f"Invalid JSON from backend: {e}"
            logger.warning(f"Backend action '{action}' attempt {attempt + 1}: {last_error}")
            continue

        if isinstance(result, dict) and result.get("success"):
            return result
        last_error = (result.get("error") or result.get("message") or "success: false") if isinstance(result, dict) else "Invalid response format"
        logger.warning(f"Backend action '{action}' attempt {attempt + 1} unsuccessful: {last_error}")

    raise BackendError(f"Backend action '{action}' failed after {MAX_RETRIES + 1} tries: {last_error}")


async def insert_product(product: dict[str, Any], **kwargs) -> str | None:
    """Записывает товар в основной каталог. Возвращает id новой записи."""
    result = await backend_request("insert_product", {"product": product}, **kwargs)
    return (result.get("data") or {}).get("insertId")


async def create_pending_product(product: dict[str, Any], **kwargs) -> str | None:
    """Записывает товар в pending_products (ждёт проверки цены)."""
    result = await backend_request("create_pending_product", {"product": product}, **kwargs)
    return (result.get("data") or {}).get("insertId")


async def get_product_by_barcode(barcode: str, **kwargs) -> dict[str, Any] | None:
    try:
        result = await backend_request("get_product_by_barcode", {"barcode": barcode}, **kwargs)
    except BackendError as e:
        logger.error(f"Error fetching product {barcode}: {e}")
        return None
    return result.get("data") or None
