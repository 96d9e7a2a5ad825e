"""Signed PUT uploads for the S3-compatible overflow bucket.

Two signers are provided. ``R2Presigner`` builds presigned URLs in process
with boto3 and backs the ``/api/r2-sign-upload`` endpoint. ``HttpUploadSigner``
asks a remote signing endpoint, which is how a deployment without the overflow
credentials reaches the bucket.
"""
from __future__ import annotations

import logging
import re
from typing import Optional, Protocol

import httpx

from receiptdesk.core.config import OverflowCredentials
from receiptdesk.models.storage import SignedUpload
from receiptdesk.services.errors import SignerNotConfiguredError, SigningError, StorageError

logger = logging.getLogger(__name__)

SIGNED_URL_TTL_SECONDS = 60 * 5
DEFAULT_CONTENT_TYPE = "application/octet-stream"
_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


class UploadSigner(Protocol):
    async def sign(self, path: str, content_type: Optional[str] = None) -> SignedUpload: ...


def safe_object_key(filename: str) -> str:
    """Replace every character outside ``[A-Za-z0-9._-]`` with ``_``.

    >>> safe_object_key("2024/q1/rechnung 1.pdf")
    '2024_q1_rechnung_1.pdf'
    """
    return _UNSAFE_KEY_CHARS.sub("_", filename)


class R2Presigner:
    """Presigns PUT requests against Cloudflare R2 through its S3 API."""

    def __init__(self, credentials: Optional[OverflowCredentials] = None, client=None) -> None:
        self.credentials = credentials or OverflowCredentials.from_env()
        self._client = client

    @property
    def configured(self) -> bool:
        return self.credentials.configured

    @property
    def client(self):
        if self._client is None:
            import boto3

            self._client = boto3.client(
                "s3",
                region_name="auto",
                endpoint_url=self.credentials.endpoint_url,
                aws_access_key_id=self.credentials.access_key_id,
                aws_secret_access_key=self.credentials.secret_access_key,
            )
        return self._client

    def public_url_for(self, key: str) -> str:
        base = (self.credentials.public_base_url or "").rstrip("/")
        return f"{base}/{key}"

    def presign(self, filename: str, content_type: Optional[str] = None) -> SignedUpload:
        if not self.configured:
            raise SignerNotConfiguredError()
        key = safe_object_key(filename)
        try:
            upload_url = self.client.generate_presigned_url(
                "put_object",
                Params={
                    "Bucket": self.credentials.bucket,
                    "Key": key,
                    "ContentType": content_type or DEFAULT_CONTENT_TYPE,
                },
                ExpiresIn=SIGNED_URL_TTL_SECONDS,
            )
        except Exception as exc:
            logger.error("R2 sign error for %s: %s", key, exc)
            raise SigningError(str(exc)) from exc
        return SignedUpload(
            upload_url=upload_url,
            public_url=self.public_url_for(key),
            expires_in=SIGNED_URL_TTL_SECONDS,
        )

    async def sign(self, path: str, content_type: Optional[str] = None) -> SignedUpload:
        return self.presign(path, content_type)


class HttpUploadSigner:
    """Client for a remote ``/api/r2-sign-upload`` endpoint."""

    def __init__(self, endpoint: str, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.endpoint = endpoint
        self.timeout = timeout
        self._transport = transport

    async def sign(self, path: str, content_type: Optional[str] = None) -> SignedUpload:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(
                self.endpoint,
                json={"filename": path, "contentType": content_type or DEFAULT_CONTENT_TYPE},
            )
        if response.status_code == 503:
            raise SignerNotConfiguredError()
        if response.status_code >= 400:
            raise SigningError(f"Signing endpoint returned {response.status_code}", status=response.status_code)
        payload = response.json()
        return SignedUpload(
            upload_url=payload["uploadUrl"],
            public_url=payload["publicUrl"],
            expires_in=int(payload.get("expiresIn") or SIGNED_URL_TTL_SECONDS),
        )


async def put_signed(
    signed: SignedUpload,
    data: bytes,
    content_type: Optional[str] = None,
    timeout: float = 60.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> None:
    """PUT the bytes to a presigned URL. Non-2xx answers raise StorageError."""
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        response = await client.put(
            signed.upload_url,
            content=data,
            headers={"Content-Type": content_type or DEFAULT_CONTENT_TYPE},
        )
    if response.is_error:
        raise StorageError(
            f"Overflow upload failed with status {response.status_code}",
            status=response.status_code,
            provider="overflow",
        )
