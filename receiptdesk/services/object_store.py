"""Object store adapters.

``SupabaseObjectStore`` wraps the synchronous supabase-py storage client and
runs each call in a worker thread. Backend failures are re-raised as
:class:`StorageError` carrying whatever status and code the client reported,
which is what the upload executor inspects to decide on a retry.
"""
from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, List, Optional, Protocol

from receiptdesk.models.storage import ObjectMeta
from receiptdesk.services.errors import ConfigError, StorageError

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


class ObjectStore(Protocol):
    async def upload(
        self, bucket: str, path: str, data: bytes, content_type: Optional[str] = None
    ) -> str: ...

    async def list_objects(self, bucket: str, page: int, page_size: int) -> List[ObjectMeta]: ...

    def public_url(self, bucket: str, path: str) -> str: ...


def _status_of(exc: BaseException) -> Optional[int]:
    for attr in ("status", "status_code", "statusCode"):
        value = getattr(exc, attr, None)
        if value is None:
            continue
        try:
            return int(value)
        except (TypeError, ValueError):
            continue
    return None


def _code_of(exc: BaseException) -> Optional[str]:
    value = getattr(exc, "code", None)
    if value is None:
        return None
    return str(value)


def storage_error_from(exc: BaseException, provider: str) -> StorageError:
    if isinstance(exc, StorageError):
        return exc
    return StorageError(str(exc) or exc.__class__.__name__, status=_status_of(exc),
                        error_code=_code_of(exc), provider=provider)


def _object_size(item: Any) -> Optional[int]:
    metadata = item.get("metadata") if isinstance(item, dict) else getattr(item, "metadata", None)
    size = metadata.get("size") if isinstance(metadata, dict) else None
    if size is None:
        return None
    try:
        return int(size)
    except (TypeError, ValueError):
        return None


def _object_name(item: Any) -> str:
    if isinstance(item, dict):
        return str(item.get("name") or "")
    return str(getattr(item, "name", "") or "")


class SupabaseObjectStore:
    """Primary backend on Supabase Storage."""

    provider = "primary"

    def __init__(self, client: Any = None, url: Optional[str] = None, key: Optional[str] = None) -> None:
        self._client = client
        self.url = url or os.getenv("SUPABASE_URL")
        self.key = key or os.getenv("SUPABASE_SERVICE_ROLE_KEY")

    @property
    def client(self):
        if self._client is None:
            if not self.url or not self.key:
                raise ConfigError("SUPABASE_URL", "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required")
            from supabase import create_client

            self._client = create_client(self.url, self.key)
        return self._client

    def _upload_sync(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        storage = self.client.storage.from_(bucket)
        response = storage.upload(path, data, file_options={"content-type": content_type, "upsert": "false"})
        error = getattr(response, "error", None)
        if error:
            raise StorageError(str(error), status=_status_of(response), provider=self.provider)
        return storage.get_public_url(path)

    def _list_sync(self, bucket: str, page: int, page_size: int) -> List[ObjectMeta]:
        items = self.client.storage.from_(bucket).list(
            "", {"limit": page_size, "offset": page * page_size, "sortBy": {"column": "name", "order": "asc"}}
        )
        return [ObjectMeta(name=_object_name(item), size=_object_size(item)) for item in items or []]

    async def upload(
        self, bucket: str, path: str, data: bytes, content_type: Optional[str] = None
    ) -> str:
        try:
            return await asyncio.to_thread(
                self._upload_sync, bucket, path, data, content_type or DEFAULT_CONTENT_TYPE
            )
        except ConfigError:
            raise
        except Exception as exc:
            raise storage_error_from(exc, self.provider) from exc

    async def list_objects(self, bucket: str, page: int, page_size: int) -> List[ObjectMeta]:
        try:
            return await asyncio.to_thread(self._list_sync, bucket, page, page_size)
        except ConfigError:
            raise
        except Exception as exc:
            raise storage_error_from(exc, self.provider) from exc

    def public_url(self, bucket: str, path: str) -> str:
        return self.client.storage.from_(bucket).get_public_url(path)
