"""Quota-aware routing between the primary and the overflow object store.

The primary bucket's usage is estimated by listing it (at most 1000 objects)
and comparing the summed sizes against a fixed reference capacity. The
estimate is cached per router for ``usage_cache_seconds``. When the estimate
reaches the threshold and overflow is enabled, uploads go to the overflow
bucket through a signed PUT.
"""
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from receiptdesk.core.config import PipelineConfig
from receiptdesk.models.documents import IncomingFile, StorageProvider
from receiptdesk.models.storage import HybridUploadResult, UploadDecision
from receiptdesk.services.errors import SignerNotConfiguredError
from receiptdesk.services.object_store import ObjectStore
from receiptdesk.services.upload_signer import UploadSigner, put_signed

logger = logging.getLogger(__name__)

LIST_PAGE_SIZE = 100
LIST_MAX_PAGES = 10
DEFAULT_EXTENSION = "dat"


@dataclass
class _Reading:
    at: float
    fraction: float


class UsageCache:
    """Last usage reading with a TTL. The clock is injectable for tests."""

    def __init__(self, ttl_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._reading: Optional[_Reading] = None

    def get(self) -> Optional[float]:
        if self._reading is None:
            return None
        if self.clock() - self._reading.at >= self.ttl_seconds:
            return None
        return self._reading.fraction

    def put(self, fraction: float) -> None:
        self._reading = _Reading(at=self.clock(), fraction=fraction)

    def clear(self) -> None:
        self._reading = None


def normalize_prefix(prefix: Optional[str]) -> str:
    if not prefix:
        return ""
    return prefix.replace("\\", "/").strip("/")


def object_path(filename: str, prefix: Optional[str] = None) -> str:
    """``<prefix>/<uuid4>.<ext>`` with ``dat`` for files without an extension."""
    ext = filename.rsplit(".", 1)[-1] if "." in filename else DEFAULT_EXTENSION
    unique_name = f"{uuid.uuid4()}.{ext}"
    normalized = normalize_prefix(prefix)
    return f"{normalized}/{unique_name}" if normalized else unique_name


def _percent(fraction: float) -> str:
    return f"{fraction * 100:.1f}%"


class StorageRouter:
    def __init__(
        self,
        store: ObjectStore,
        config: Optional[PipelineConfig] = None,
        signer: Optional[UploadSigner] = None,
        cache: Optional[UsageCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.store = store
        self.config = config or PipelineConfig()
        self.signer = signer
        self.cache = cache or UsageCache(ttl_seconds=self.config.usage_cache_seconds)
        self._transport = transport

    async def estimate_usage_fraction(self) -> float:
        cached = self.cache.get()
        if cached is not None:
            return cached
        total = 0
        try:
            for page in range(LIST_MAX_PAGES):
                objects = await self.store.list_objects(self.config.primary_bucket, page, LIST_PAGE_SIZE)
                if not objects:
                    break
                total += sum(obj.size for obj in objects if obj.size is not None)
                if len(objects) < LIST_PAGE_SIZE:
                    break
        except Exception as exc:
            logger.warning("Usage estimate for bucket '%s' failed, assuming empty: %s",
                           self.config.primary_bucket, exc)
            return 0.0
        fraction = total / self.config.reference_capacity_bytes
        self.cache.put(fraction)
        return fraction

    async def decide_provider(self) -> UploadDecision:
        fraction = await self.estimate_usage_fraction()
        if fraction >= self.config.usage_threshold and self.config.overflow_enabled:
            return UploadDecision(provider=StorageProvider.OVERFLOW, reason=f"primary at {_percent(fraction)}")
        return UploadDecision(
            provider=StorageProvider.PRIMARY,
            reason=f"primary under threshold ({_percent(fraction)})",
        )

    async def hybrid_upload(self, file: IncomingFile, prefix: Optional[str] = None) -> HybridUploadResult:
        decision = await self.decide_provider()
        path = object_path(file.filename, prefix)
        logger.info("Routing %s to %s: %s", file.filename, decision.provider.value, decision.reason)

        if decision.provider == StorageProvider.PRIMARY:
            public_url = await self.store.upload(self.config.primary_bucket, path, file.content, file.content_type)
            return HybridUploadResult(provider=StorageProvider.PRIMARY, public_url=public_url,
                                      path=path, size=file.size)

        if self.signer is None:
            raise SignerNotConfiguredError("No upload signer is configured for the overflow bucket")
        signed = await self.signer.sign(path, file.content_type)
        await put_signed(signed, file.content, file.content_type, transport=self._transport)
        return HybridUploadResult(provider=StorageProvider.OVERFLOW, public_url=signed.public_url,
                                  path=path, size=file.size)
