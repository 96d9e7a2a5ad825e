"""Dependency injection container for core services."""
from typing import Optional

from receiptdesk.core.config import PipelineConfig
from receiptdesk.core.event_bus import EventBus, get_event_bus
from receiptdesk.services.analyzer import DocumentAnalyzer, LLMDocumentAnalyzer, default_analyzer
from receiptdesk.services.audit import AuditTrailService
from receiptdesk.services.contact_extraction import ContactExtractionService
from receiptdesk.services.db import DB
from receiptdesk.services.ingestion import IngestionService
from receiptdesk.services.object_store import SupabaseObjectStore
from receiptdesk.services.repository import SqlContactRepository, SqlDocumentRepository
from receiptdesk.services.storage_router import StorageRouter
from receiptdesk.services.upload_signer import HttpUploadSigner, R2Presigner, UploadSigner


class ServiceContainer:
    def __init__(self) -> None:
        self._config = None
        self._db = None
        self._audit = None
        self._presigner = None
        self._router = None
        self._documents = None
        self._contacts = None
        self._analyzer = None
        self._ingestion = None

    def config(self) -> PipelineConfig:
        if not self._config:
            self._config = PipelineConfig.from_env()
        return self._config

    def db(self) -> DB:
        if not self._db:
            self._db = DB()
        return self._db

    def audit(self) -> AuditTrailService:
        if not self._audit:
            self._audit = AuditTrailService(db=self.db())
        return self._audit

    def bus(self) -> EventBus:
        return get_event_bus()

    def presigner(self) -> R2Presigner:
        if not self._presigner:
            self._presigner = R2Presigner()
        return self._presigner

    def signer(self) -> Optional[UploadSigner]:
        if self.config().signer_url:
            return HttpUploadSigner(self.config().signer_url)
        if self.presigner().configured:
            return self.presigner()
        return None

    def router(self) -> StorageRouter:
        if not self._router:
            self._router = StorageRouter(SupabaseObjectStore(), config=self.config(), signer=self.signer())
        return self._router

    def documents(self) -> SqlDocumentRepository:
        if not self._documents:
            self._documents = SqlDocumentRepository(self.db())
        return self._documents

    def contacts(self) -> SqlContactRepository:
        if not self._contacts:
            self._contacts = SqlContactRepository(self.db())
        return self._contacts

    def analyzer(self) -> DocumentAnalyzer:
        if not self._analyzer:
            self._analyzer = default_analyzer()
        return self._analyzer

    def ingestion(self) -> IngestionService:
        if not self._ingestion:
            analyzer = self.analyzer()
            llm = analyzer if isinstance(analyzer, LLMDocumentAnalyzer) else None
            self._ingestion = IngestionService(
                analyzer=analyzer,
                router=self.router(),
                documents=self.documents(),
                contact_extractor=ContactExtractionService(self.contacts(), llm=llm),
                audit=self.audit(),
                bus=self.bus(),
                config=self.config(),
            )
        return self._ingestion


container = ServiceContainer()
