"""Batch ingestion: analyze, check duplicates, upload, classify, persist.

Each file runs its stages strictly in order; files of one batch run
concurrently up to ``PipelineConfig.ingest_concurrency``. Updates are yielded
in completion order, one per file. A failure only affects its own file.

Duplicate checks see the documents that existed when the batch started plus
the batch's own placeholders, never the finalized siblings. Contact
extraction is started after a successful persist and is not awaited.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import AsyncIterator, Callable, List, Optional, Protocol, Sequence, Set

from receiptdesk.core.config import PipelineConfig
from receiptdesk.core.event_bus import Event, EventBus, EventType
from receiptdesk.models.documents import (
    AnalysisResult,
    Document,
    DocumentStatus,
    IncomingFile,
    IngestStage,
    IngestUpdate,
    SourceChannel,
    StorageProvider,
)
from receiptdesk.models.rules import Rule, RuleSuggestion
from receiptdesk.services.analyzer import DocumentAnalyzer
from receiptdesk.services.audit import AuditTrailService
from receiptdesk.services.classification import UNCATEGORIZED, apply_rules, rule_exists_for
from receiptdesk.services.contact_extraction import ContactExtractionService, summarize
from receiptdesk.services.duplicates import resolve_status
from receiptdesk.services.errors import UploadCancelledError, is_cancellation
from receiptdesk.services.logging import log_error, log_stage
from receiptdesk.services.naming import suggested_file_name
from receiptdesk.services.repository import DocumentRepository
from receiptdesk.services.storage_router import StorageRouter, object_path
from receiptdesk.services.upload_executor import upload_with_retry

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    async def embed(self, text: str) -> List[float]: ...


RuleSuggestedCallback = Callable[[RuleSuggestion], object]


class _FileFailed(Exception):
    """Stops one file's pipeline; carries the message shown to the user."""


class IngestionService:
    def __init__(
        self,
        analyzer: DocumentAnalyzer,
        router: StorageRouter,
        documents: DocumentRepository,
        contact_extractor: Optional[ContactExtractionService] = None,
        audit: Optional[AuditTrailService] = None,
        bus: Optional[EventBus] = None,
        config: Optional[PipelineConfig] = None,
        embedder: Optional[Embedder] = None,
    ) -> None:
        self.analyzer = analyzer
        self.router = router
        self.documents = documents
        self.contact_extractor = contact_extractor
        self.audit = audit or AuditTrailService()
        self.bus = bus or EventBus()
        self.config = config or router.config
        self.embedder = embedder
        self._background: Set[asyncio.Task] = set()

    def create_placeholders(
        self, files: Sequence[IncomingFile], source_channel: Optional[SourceChannel] = None
    ) -> List[Document]:
        """One ``analyzing`` document per file, ids assigned up front."""
        return [
            Document(name=file.filename, source_channel=source_channel or file.source_channel)
            for file in files
        ]

    async def ingest_batch(
        self,
        files: Sequence[IncomingFile],
        rules: Sequence[Rule],
        user_id: str,
        placeholders: Optional[Sequence[Document]] = None,
        on_rule_suggested: Optional[RuleSuggestedCallback] = None,
        signal: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[IngestUpdate]:
        """Run every file through the pipeline and yield one update per file.

        ``signal`` is the batch's cancel switch: the same event is handed to
        each file's upload call, so setting it stops every upload that has
        not finished yet. Files already past their upload are unaffected.

        ``on_rule_suggested`` is notified at most once. A plain callable runs
        inline; an awaitable it returns is detached. Either way its failures
        are logged and never reach the batch.
        """
        if placeholders is None:
            placeholders = self.create_placeholders(files)
        if len(placeholders) != len(files):
            raise ValueError("Expected exactly one placeholder per file")

        try:
            existing = await self.documents.list_existing(user_id)
        except Exception as exc:
            log_error("snapshot_failed", "Could not load existing documents, checking batch only",
                      context={"user_id": user_id}, exception=exc)
            existing = []
        snapshot = list(existing) + list(placeholders)

        semaphore = asyncio.Semaphore(self.config.ingest_concurrency)

        async def run(file: IncomingFile, placeholder: Document) -> IngestUpdate:
            async with semaphore:
                return await self._ingest_guarded(file, placeholder, rules, user_id, snapshot, signal)

        tasks = [asyncio.create_task(run(f, p)) for f, p in zip(files, placeholders)]
        suggested = False
        try:
            for next_done in asyncio.as_completed(tasks):
                update = await next_done
                if not suggested and self._qualifies_for_suggestion(update):
                    suggested = True
                    await self._suggest_rule(update.document, rules, user_id, on_rule_suggested)
                yield update
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

    async def wait_for_background(self) -> None:
        """Wait for detached contact extraction tasks; used on shutdown and in tests."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _ingest_guarded(
        self,
        file: IncomingFile,
        placeholder: Document,
        rules: Sequence[Rule],
        user_id: str,
        snapshot: Sequence[Document],
        signal: Optional[asyncio.Event],
    ) -> IngestUpdate:
        document = placeholder.model_copy(deep=True)
        await self._stage(document, IngestStage.QUEUED, user_id, f"Accepted {file.filename}", size=file.size)
        try:
            return await self._ingest_file(file, document, rules, user_id, snapshot, signal)
        except _FileFailed as exc:
            return await self._fail(document, user_id, str(exc))
        except Exception as exc:
            log_error("ingest_failed", f"Unexpected failure ingesting {file.filename}",
                      context={"placeholder_id": document.id}, exception=exc)
            return await self._fail(document, user_id, f"Unexpected error: {exc}")

    async def _ingest_file(
        self,
        file: IncomingFile,
        document: Document,
        rules: Sequence[Rule],
        user_id: str,
        snapshot: Sequence[Document],
        signal: Optional[asyncio.Event],
    ) -> IngestUpdate:
        await self._stage(document, IngestStage.ANALYZING, user_id, f"Analyzing {file.filename}")
        try:
            analysis = await self.analyzer.analyze(file, rules)
        except Exception as exc:
            raise _FileFailed(f"Analysis failed: {exc}") from exc

        status = resolve_status(analysis, snapshot)
        await self._stage(document, IngestStage.DUPLICATE_CHECK, user_id, f"Resolved status {status.value}",
                    status=status.value)

        await self._stage(document, IngestStage.UPLOADING, user_id, f"Uploading {file.filename}")
        await self._upload(file, document, user_id, signal)

        classified = apply_rules(analysis, rules)
        self._apply_analysis(document, file, analysis, classified)
        document.transition(status)
        await self._stage(document, IngestStage.CLASSIFYING, user_id,
                    f"Categorized as {document.tax_category}", tax_category=document.tax_category,
                    invoice_direction=document.invoice_direction.value, name=document.name)

        if self.embedder is not None and document.raw_text:
            await self._stage(document, IngestStage.EMBEDDING, user_id, "Embedding text")
            try:
                document.embedding = await self.embedder.embed(document.raw_text)
            except Exception as exc:
                logger.warning("Embedding failed for %s, continuing without: %s", document.id, exc)

        await self._stage(document, IngestStage.PERSISTING, user_id, "Persisting document")
        persisted = True
        try:
            await self.documents.insert(user_id, document)
        except Exception as exc:
            persisted = False
            # the uploaded object stays where it is
            log_error("persist_failed", f"Could not persist {document.id}",
                      context={"placeholder_id": document.id, "file_url": document.file_url}, exception=exc)

        if persisted and self.contact_extractor is not None:
            await self._stage(document, IngestStage.CONTACT_EXTRACTION, user_id, "Contact extraction started")
            self._spawn_contact_extraction(user_id, document.model_copy(deep=True))

        await self._stage(document, IngestStage.DONE, user_id, f"Ingested as {document.status.value}",
                    persisted=persisted)
        await self.bus.publish(Event(
            type=EventType.DOCUMENT_INGESTED,
            data={"document_id": document.id, "status": document.status.value, "persisted": persisted},
            user_id=user_id,
        ))
        return IngestUpdate(placeholder_id=document.id, stage=IngestStage.DONE, document=document)

    async def _upload(
        self, file: IncomingFile, document: Document, user_id: str, signal: Optional[asyncio.Event]
    ) -> None:
        try:
            if signal is not None and signal.is_set():
                raise UploadCancelledError(file.filename)
            result = await self.router.hybrid_upload(file, prefix=user_id)
            document.record_upload(result.provider, result.public_url, result.path)
            return
        except Exception as exc:
            if is_cancellation(exc):
                raise _FileFailed("Upload cancelled") from exc
            logger.warning("Routed upload of %s failed, falling back to primary: %s", file.filename, exc)

        path = object_path(file.filename, user_id)
        try:
            url = await upload_with_retry(
                self.router.store,
                self.config.primary_bucket,
                path,
                file.content,
                signal=signal,
                max_retries=self.config.upload_max_retries,
                retry_delay_ms=self.config.upload_retry_delay_ms,
                content_type=file.content_type,
            )
        except UploadCancelledError as exc:
            raise _FileFailed("Upload cancelled") from exc
        except Exception as exc:
            if document.file_url:
                logger.warning("Fallback upload of %s failed, keeping %s: %s", file.filename, document.file_url, exc)
                return
            raise _FileFailed(f"Upload failed: {exc}") from exc
        document.record_upload(StorageProvider.PRIMARY, url, path)

    @staticmethod
    def _apply_analysis(
        document: Document, file: IncomingFile, analysis: AnalysisResult, classified: AnalysisResult
    ) -> None:
        if analysis.document_date is not None:
            document.date = analysis.document_date
        document.name = suggested_file_name(classified, file.extension or "dat", fallback_date=document.date)
        document.raw_text = analysis.raw_text or None
        document.vendor = analysis.vendor
        document.total_amount = analysis.total_amount
        document.vat_amount = analysis.vat_amount
        document.invoice_number = analysis.invoice_number
        document.invoice_direction = classified.invoice_direction
        document.tax_category = classified.tax_category
        document.ai_suggested_tax_category = analysis.tax_category

    async def _fail(self, document: Document, user_id: str, message: str) -> IngestUpdate:
        document.transition(DocumentStatus.ERROR, message)
        await self._stage(document, IngestStage.ERROR, user_id, message, level=logging.WARNING)
        await self.bus.publish(Event(
            type=EventType.DOCUMENT_FAILED,
            data={"document_id": document.id, "error": message},
            user_id=user_id,
        ))
        return IngestUpdate(placeholder_id=document.id, stage=IngestStage.ERROR, document=document,
                            error_message=message)

    async def _stage(
        self, document: Document, stage: IngestStage, user_id: str, summary: str,
        level: int = logging.INFO, **details
    ) -> None:
        log_stage(document.id, stage.value, summary, level=level, user_id=user_id, **details)
        await self.audit.record_event(document.id, stage, summary, user_id=user_id, details=details)

    @staticmethod
    def _qualifies_for_suggestion(update: IngestUpdate) -> bool:
        document = update.document
        if not update.ok or document is None:
            return False
        return bool(document.vendor) and (document.tax_category or UNCATEGORIZED) != UNCATEGORIZED

    async def _suggest_rule(
        self,
        document: Document,
        rules: Sequence[Rule],
        user_id: str,
        callback: Optional[RuleSuggestedCallback],
    ) -> None:
        suggestion = RuleSuggestion(
            vendor=document.vendor,
            tax_category=document.tax_category,
            invoice_direction=document.invoice_direction,
        )
        if rule_exists_for(rules, suggestion):
            logger.debug("Rule for %s -> %s already exists", suggestion.vendor, suggestion.tax_category)
            return
        await self.bus.publish(Event(type=EventType.RULE_SUGGESTED, data=suggestion.model_dump(mode="json"),
                                     user_id=user_id))
        if callback is None:
            return
        try:
            result = callback(suggestion)
        except Exception as exc:
            log_error("rule_suggestion_callback_failed", f"Rule suggestion callback failed for {suggestion.vendor}",
                      context={"user_id": user_id}, exception=exc)
            return
        if inspect.isawaitable(result):
            self._spawn(self._await_suggestion_callback(result, suggestion, user_id))

    async def _await_suggestion_callback(self, pending, suggestion: RuleSuggestion, user_id: str) -> None:
        try:
            await pending
        except Exception as exc:
            log_error("rule_suggestion_callback_failed", f"Rule suggestion callback failed for {suggestion.vendor}",
                      context={"user_id": user_id}, exception=exc)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _spawn_contact_extraction(self, user_id: str, document: Document) -> None:
        self._spawn(self._extract_contacts(user_id, document))

    async def _extract_contacts(self, user_id: str, document: Document) -> None:
        try:
            contacts = await self.contact_extractor.extract(user_id, document)
        except Exception as exc:
            log_error("contact_extraction_failed", f"Contact extraction failed for {document.id}",
                      context={"document_id": document.id}, exception=exc)
            await self.audit.record_event(document.id, IngestStage.CONTACT_EXTRACTION, f"Failed: {exc}",
                                    user_id=user_id)
            await self.bus.publish(Event(type=EventType.CONTACT_EXTRACTION_FAILED,
                                         data={"document_id": document.id, "error": str(exc)}, user_id=user_id))
            return
        await self.audit.record_event(document.id, IngestStage.CONTACT_EXTRACTION,
                                f"Merged contacts: {summarize(contacts) or 'none'}", user_id=user_id,
                                details={"contact_ids": [c.id for c in contacts]})
        if contacts:
            await self.bus.publish(Event(
                type=EventType.CONTACT_UPSERTED,
                data={"document_id": document.id, "contact_ids": [c.id for c in contacts]},
                user_id=user_id,
            ))
