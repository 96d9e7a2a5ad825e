"""
receiptdesk Error Handling

Specific error types with user-friendly messages and debugging context.
"""
import asyncio
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import HTTPException


class ErrorCode(str, Enum):
    """Standardized error codes for client handling."""
    INVALID_CONFIG = "INVALID_CONFIG"

    # Pipeline errors
    ANALYSIS_FAILED = "ANALYSIS_FAILED"
    STORAGE_FAILED = "STORAGE_FAILED"
    UPLOAD_CANCELLED = "UPLOAD_CANCELLED"
    PERSISTENCE_FAILED = "PERSISTENCE_FAILED"
    CONTACT_EXTRACTION_FAILED = "CONTACT_EXTRACTION_FAILED"

    # External service errors
    SIGNER_UNAVAILABLE = "SIGNER_UNAVAILABLE"
    SIGNING_FAILED = "SIGNING_FAILED"
    LLM_UNAVAILABLE = "LLM_UNAVAILABLE"


class ReceiptDeskError(Exception):
    """Base exception with structured error info."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.detail = detail
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        result = {
            "error": self.code.value,
            "message": self.message
        }
        if self.detail:
            result["detail"] = self.detail
        if self.context:
            result["context"] = self.context
        return result


class ConfigError(ReceiptDeskError):
    """Error in configuration."""

    def __init__(self, field: str, detail: str):
        super().__init__(
            code=ErrorCode.INVALID_CONFIG,
            message=f"Invalid configuration for '{field}'",
            detail=detail,
            context={"field": field}
        )


class AnalysisError(ReceiptDeskError):
    """The AI analyzer was unreachable or returned something unusable."""

    def __init__(self, filename: str, detail: str):
        super().__init__(
            code=ErrorCode.ANALYSIS_FAILED,
            message=f"Analysis failed for {filename}: {detail}",
            detail=detail,
            context={"filename": filename}
        )


class StorageError(ReceiptDeskError):
    """Upload or listing failure on an object store.

    ``status`` and ``error_code`` carry whatever the backend reported so the
    upload executor can decide whether a retry makes sense.
    """

    def __init__(
        self,
        detail: str,
        status: Optional[int] = None,
        error_code: Optional[str] = None,
        provider: Optional[str] = None,
    ):
        self.status = status
        self.error_code = error_code
        context: Dict[str, Any] = {}
        if status is not None:
            context["status"] = status
        if provider:
            context["provider"] = provider
        super().__init__(
            code=ErrorCode.STORAGE_FAILED,
            message=f"Storage operation failed: {detail}",
            detail=detail,
            context=context
        )


class UploadCancelledError(ReceiptDeskError):
    """Raised when the caller's cancellation signal fired. Never retried."""

    def __init__(self, path: str):
        super().__init__(
            code=ErrorCode.UPLOAD_CANCELLED,
            message=f"Upload of {path} was cancelled",
            context={"path": path}
        )


class PersistenceError(ReceiptDeskError):
    """Error writing a document or contact row."""

    def __init__(self, entity: str, detail: str):
        super().__init__(
            code=ErrorCode.PERSISTENCE_FAILED,
            message=f"Could not persist {entity}",
            detail=detail,
            context={"entity": entity}
        )


class ContactExtractionError(ReceiptDeskError):
    def __init__(self, document_id: str, detail: str):
        super().__init__(
            code=ErrorCode.CONTACT_EXTRACTION_FAILED,
            message="Contact extraction failed",
            detail=detail,
            context={"document_id": document_id}
        )


class SignerNotConfiguredError(ReceiptDeskError):
    """Overflow backend credentials are missing."""

    def __init__(self, detail: str = "R2 not configured"):
        super().__init__(
            code=ErrorCode.SIGNER_UNAVAILABLE,
            message="Overflow storage is not configured",
            detail=detail
        )


class SigningError(ReceiptDeskError):
    def __init__(self, detail: str, status: Optional[int] = None):
        self.status = status
        super().__init__(
            code=ErrorCode.SIGNING_FAILED,
            message="Signing the overflow upload failed",
            detail=detail,
            context={"status": status} if status is not None else None
        )


class LLMError(ReceiptDeskError):
    """Error calling LLM service."""

    def __init__(self, detail: str):
        super().__init__(
            code=ErrorCode.LLM_UNAVAILABLE,
            message="AI analysis service unavailable",
            detail=detail
        )


def is_cancellation(error: BaseException) -> bool:
    return isinstance(error, (UploadCancelledError, asyncio.CancelledError))


def to_http_exception(error: ReceiptDeskError) -> HTTPException:
    """Convert ReceiptDeskError to HTTPException."""
    # Map error codes to HTTP status codes
    status_map = {
        ErrorCode.INVALID_CONFIG: 500,
        ErrorCode.ANALYSIS_FAILED: 502,
        ErrorCode.STORAGE_FAILED: 502,
        ErrorCode.UPLOAD_CANCELLED: 499,
        ErrorCode.PERSISTENCE_FAILED: 500,
        ErrorCode.CONTACT_EXTRACTION_FAILED: 500,
        ErrorCode.SIGNER_UNAVAILABLE: 503,
        ErrorCode.SIGNING_FAILED: 500,
        ErrorCode.LLM_UNAVAILABLE: 503,
    }

    return HTTPException(
        status_code=status_map.get(error.code, 500),
        detail=error.to_dict()
    )
