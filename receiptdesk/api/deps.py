"""FastAPI dependencies for receiptdesk services."""
from receiptdesk.di.container import container


def get_presigner():
    return container.presigner()


def get_ingestion_service():
    return container.ingestion()


def get_audit_service():
    return container.audit()
