"""Primary-store uploads with exponential backoff and cooperative cancellation."""
from __future__ import annotations

import asyncio
import logging
import random
import re
from typing import Optional

import httpx

from receiptdesk.services.errors import StorageError, UploadCancelledError
from receiptdesk.services.object_store import ObjectStore

logger = logging.getLogger(__name__)

TRANSIENT_STATUSES = frozenset({425, 500, 502, 503, 504})
_TRANSIENT_MESSAGE = re.compile(r"timeout|network", re.IGNORECASE)
JITTER_MS = 150


def is_transient_storage_error(error: BaseException) -> bool:
    """Whether retrying the same upload has a chance of succeeding."""
    if isinstance(error, UploadCancelledError):
        return False
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    status = getattr(error, "status", None)
    if isinstance(status, int) and status in TRANSIENT_STATUSES:
        return True
    code = getattr(error, "error_code", None) or getattr(error, "code", None)
    if isinstance(code, str) and any(str(s) in code for s in TRANSIENT_STATUSES):
        return True
    message = str(error) or ""
    return bool(_TRANSIENT_MESSAGE.search(message))


def backoff_ms(attempt: int, retry_delay_ms: int) -> float:
    return retry_delay_ms * (2 ** attempt) + random.uniform(0, JITTER_MS)


async def _sleep(delay_seconds: float, signal: Optional[asyncio.Event], path: str) -> None:
    if signal is None:
        await asyncio.sleep(delay_seconds)
        return
    try:
        await asyncio.wait_for(signal.wait(), timeout=delay_seconds)
    except asyncio.TimeoutError:
        return
    raise UploadCancelledError(path)


async def upload_with_retry(
    store: ObjectStore,
    bucket: str,
    path: str,
    data: bytes,
    *,
    signal: Optional[asyncio.Event] = None,
    max_retries: int = 3,
    retry_delay_ms: int = 400,
    content_type: Optional[str] = None,
) -> str:
    """Upload ``data`` and return its public URL.

    Transient failures are retried up to ``max_retries`` attempts in total with
    a delay of ``retry_delay_ms * 2**attempt`` plus up to 150 ms of jitter.
    Setting ``signal`` aborts before the next attempt or during a backoff
    sleep with :class:`UploadCancelledError`.
    """
    for attempt in range(max_retries):
        if signal is not None and signal.is_set():
            raise UploadCancelledError(path)
        try:
            return await store.upload(bucket, path, data, content_type)
        except UploadCancelledError:
            raise
        except Exception as exc:
            last_attempt = attempt >= max_retries - 1
            if last_attempt or not is_transient_storage_error(exc):
                raise
            delay = backoff_ms(attempt, retry_delay_ms)
            logger.warning(
                "Transient upload failure for %s (attempt %d/%d), retrying in %.0f ms: %s",
                path, attempt + 1, max_retries, delay, exc,
            )
            await _sleep(delay / 1000, signal, path)
    raise StorageError(f"Upload of {path} exhausted {max_retries} attempts")
