from receiptdesk.api.ingest import router as ingest_router
from receiptdesk.api.upload_signing import router as upload_signing_router

__all__ = ["ingest_router", "upload_signing_router"]
