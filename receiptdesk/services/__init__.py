# Lazy imports to avoid dependency chains at startup
def __getattr__(name):
    if name == "AuditTrailService":
        from receiptdesk.services.audit import AuditTrailService
        return AuditTrailService
    elif name == "IngestionService":
        from receiptdesk.services.ingestion import IngestionService
        return IngestionService
    elif name == "StorageRouter":
        from receiptdesk.services.storage_router import StorageRouter
        return StorageRouter
    elif name == "upload_with_retry":
        from receiptdesk.services.upload_executor import upload_with_retry
        return upload_with_retry
    elif name == "apply_rules":
        from receiptdesk.services.classification import apply_rules
        return apply_rules
    elif name == "resolve_status":
        from receiptdesk.services.duplicates import resolve_status
        return resolve_status
    elif name == "upsert_contact_dedupe":
        from receiptdesk.services.contact_dedupe import upsert_contact_dedupe
        return upsert_contact_dedupe
    raise AttributeError(f"module 'receiptdesk.services' has no attribute '{name}'")

__all__ = [
    "AuditTrailService",
    "IngestionService",
    "StorageRouter",
    "upload_with_retry",
    "apply_rules",
    "resolve_status",
    "upsert_contact_dedupe",
]
