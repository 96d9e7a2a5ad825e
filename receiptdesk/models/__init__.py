from receiptdesk.models.base import RDBaseModel
from receiptdesk.models.documents import (
    AnalysisResult,
    Document,
    DocumentStatus,
    IncomingFile,
    IngestStage,
    IngestUpdate,
    InvalidStatusTransition,
    InvoiceDirection,
    SourceChannel,
    StorageProvider,
    StorageProviderAlreadySet,
)
from receiptdesk.models.rules import ConditionType, Rule, RuleSuggestion
from receiptdesk.models.contacts import Contact, ContactType
from receiptdesk.models.storage import HybridUploadResult, ObjectMeta, SignedUpload, UploadDecision

__all__ = [
    "AnalysisResult",
    "ConditionType",
    "Contact",
    "ContactType",
    "Document",
    "DocumentStatus",
    "HybridUploadResult",
    "IncomingFile",
    "IngestStage",
    "IngestUpdate",
    "InvalidStatusTransition",
    "InvoiceDirection",
    "ObjectMeta",
    "RDBaseModel",
    "Rule",
    "RuleSuggestion",
    "SignedUpload",
    "SourceChannel",
    "StorageProvider",
    "StorageProviderAlreadySet",
    "UploadDecision",
]
