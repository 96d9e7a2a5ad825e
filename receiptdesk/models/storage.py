"""Storage routing and upload models."""
from __future__ import annotations

from typing import Optional

from pydantic import Field

from receiptdesk.models.base import RDBaseModel
from receiptdesk.models.documents import StorageProvider


class UploadDecision(RDBaseModel):
    provider: StorageProvider
    reason: str


class HybridUploadResult(RDBaseModel):
    provider: StorageProvider
    public_url: str
    path: str
    size: int = Field(..., ge=0)


class ObjectMeta(RDBaseModel):
    name: str
    size: Optional[int] = None


class SignedUpload(RDBaseModel):
    upload_url: str
    public_url: str
    expires_in: int = Field(..., gt=0)
