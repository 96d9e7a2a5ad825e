"""Document, analysis and ingest update models."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import Field, computed_field

from receiptdesk.models.base import RDBaseModel


class SourceChannel(str, Enum):
    MANUAL = "manual"
    LOCAL_FOLDER = "local-folder"
    EMAIL = "email"
    MESSAGING = "messaging"


class DocumentStatus(str, Enum):
    ANALYZING = "analyzing"
    OK = "ok"
    MISSING_INVOICE = "missing-invoice"
    SCREENSHOT = "screenshot"
    POTENTIAL_DUPLICATE = "potential-duplicate"
    ERROR = "error"


class StorageProvider(str, Enum):
    PRIMARY = "primary"
    OVERFLOW = "overflow"


class InvoiceDirection(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class IngestStage(str, Enum):
    """Per-file pipeline stages, in execution order."""

    QUEUED = "queued"
    ANALYZING = "analyzing"
    DUPLICATE_CHECK = "duplicate-check"
    UPLOADING = "uploading"
    CLASSIFYING = "classifying"
    EMBEDDING = "embedding"
    PERSISTING = "persisting"
    CONTACT_EXTRACTION = "contact-extraction"
    DONE = "done"
    ERROR = "error"


TERMINAL_STATUSES = frozenset(
    {
        DocumentStatus.OK,
        DocumentStatus.MISSING_INVOICE,
        DocumentStatus.SCREENSHOT,
        DocumentStatus.POTENTIAL_DUPLICATE,
        DocumentStatus.ERROR,
    }
)


class InvalidStatusTransition(ValueError):
    def __init__(self, current: DocumentStatus, requested: DocumentStatus):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move document from '{current.value}' to '{requested.value}'")


class StorageProviderAlreadySet(ValueError):
    pass


def quarter_of(moment: datetime) -> int:
    return (moment.month - 1) // 3 + 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Document(RDBaseModel):
    """One ingested artifact.

    ``year`` and ``quarter`` are computed from ``date`` so they can never drift
    apart from it. Status changes go through :meth:`transition` and the storage
    provider through :meth:`record_upload`.
    """

    id: str = Field(default_factory=lambda: f"doc-{uuid.uuid4().hex[:12]}")
    name: str
    date: datetime = Field(default_factory=_utcnow)
    source_channel: SourceChannel = SourceChannel.MANUAL
    status: DocumentStatus = DocumentStatus.ANALYZING
    storage_provider: Optional[StorageProvider] = None
    storage_path: Optional[str] = None
    file_url: Optional[str] = None
    raw_text: Optional[str] = None
    vendor: Optional[str] = None
    total_amount: Optional[float] = None
    vat_amount: Optional[float] = None
    invoice_number: Optional[str] = None
    invoice_direction: InvoiceDirection = InvoiceDirection.INCOMING
    tax_category: Optional[str] = None
    ai_suggested_tax_category: Optional[str] = None
    embedding: Optional[List[float]] = None
    error_message: Optional[str] = None

    @computed_field  # type: ignore[misc]
    @property
    def year(self) -> int:
        return self.date.year

    @computed_field  # type: ignore[misc]
    @property
    def quarter(self) -> int:
        return quarter_of(self.date)

    def transition(self, status: DocumentStatus, error_message: Optional[str] = None) -> None:
        """Move the document forward. ``error`` is reachable from every state."""
        if status == self.status and status != DocumentStatus.ANALYZING:
            if error_message:
                self.error_message = error_message
            return
        if status == DocumentStatus.ERROR:
            self.status = status
            self.error_message = error_message or self.error_message
            return
        if self.status != DocumentStatus.ANALYZING or status not in TERMINAL_STATUSES:
            raise InvalidStatusTransition(self.status, status)
        self.status = status

    def record_upload(self, provider: StorageProvider, file_url: str, path: Optional[str] = None) -> None:
        if self.storage_provider is not None:
            raise StorageProviderAlreadySet(
                f"Document {self.id} already stored on '{self.storage_provider.value}'"
            )
        self.storage_provider = provider
        self.file_url = file_url
        if path:
            self.storage_path = path


class AnalysisResult(RDBaseModel):
    """What the AI analyzer reports about a single file."""

    is_invoice: bool = True
    is_order_confirmation: bool = False
    is_email_body: bool = False
    document_date: Optional[datetime] = None
    raw_text: str = ""
    vendor: Optional[str] = None
    total_amount: Optional[float] = None
    vat_amount: Optional[float] = None
    invoice_number: Optional[str] = None
    invoice_direction: Optional[InvoiceDirection] = None
    tax_category: Optional[str] = None


class IncomingFile(RDBaseModel):
    filename: str = Field(..., min_length=1)
    content: bytes
    content_type: str = "application/octet-stream"
    source_channel: SourceChannel = SourceChannel.MANUAL

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def extension(self) -> str:
        if "." not in self.filename:
            return ""
        return self.filename.rsplit(".", 1)[-1].lower()


class IngestUpdate(RDBaseModel):
    placeholder_id: str
    stage: IngestStage = IngestStage.DONE
    document: Optional[Document] = None
    error_message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error_message is None
